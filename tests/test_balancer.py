import random
import threading
from collections import Counter

import pytest

from src.gateway.balancer import Balancer
from src.gateway.config import EndpointDescriptor


def _endpoint(name: str, weight: int = 1) -> EndpointDescriptor:
    return EndpointDescriptor(name=name, base_url=f"https://{name}.example", api_key=f"key-{name}", weight=weight)


def test_select_returns_none_without_candidates() -> None:
    assert Balancer().select("gpt-4", []) is None


def test_single_candidate_is_returned_without_touching_counter() -> None:
    class _ExplodingRandom(random.Random):
        def randrange(self, *args, **kwargs):  # type: ignore[override]
            raise AssertionError("single candidate must not draw")

    only = _endpoint("alpha", weight=0)
    balancer = Balancer(rand=_ExplodingRandom())

    for _ in range(5):
        assert balancer.select("gpt-4", [only]) is only
    assert balancer.counter("gpt-4") == 0


def test_select_always_returns_a_candidate() -> None:
    candidates = [_endpoint("alpha", 5), _endpoint("beta", 0), _endpoint("gamma", -3), _endpoint("delta", 1)]
    balancer = Balancer(rand=random.Random(7))

    for _ in range(2000):
        assert balancer.select("gpt-4", candidates) in candidates


def test_weighted_distribution_matches_weights() -> None:
    candidates = [_endpoint("alpha", 1), _endpoint("beta", 3), _endpoint("gamma", 6)]
    balancer = Balancer(rand=random.Random(1234))
    draws = 20000

    counts = Counter(balancer.select("gpt-4", candidates).name for _ in range(draws))

    total_weight = sum(c.weight for c in candidates)
    chi_squared = 0.0
    for candidate in candidates:
        expected = draws * candidate.weight / total_weight
        chi_squared += (counts[candidate.name] - expected) ** 2 / expected
    # 2 degrees of freedom, p = 0.001
    assert chi_squared < 13.82


def test_non_positive_weight_counts_as_one_next_to_weighted_peers() -> None:
    candidates = [_endpoint("alpha", 0), _endpoint("beta", 1)]
    balancer = Balancer(rand=random.Random(99))
    draws = 10000

    counts = Counter(balancer.select("gpt-4", candidates).name for _ in range(draws))

    assert counts["alpha"] / draws == pytest.approx(0.5, abs=0.03)
    assert balancer.counter("gpt-4") == 0


def test_weighted_selection_is_reproducible_with_seeded_generator() -> None:
    candidates = [_endpoint("alpha", 2), _endpoint("beta", 5)]
    first = Balancer(rand=random.Random(42))
    second = Balancer(rand=random.Random(42))

    picks_first = [first.select("m", candidates).name for _ in range(50)]
    picks_second = [second.select("m", candidates).name for _ in range(50)]

    assert picks_first == picks_second


def test_unweighted_candidates_rotate_in_order() -> None:
    candidates = [_endpoint("alpha", 0), _endpoint("beta", -1), _endpoint("gamma", 0)]
    balancer = Balancer()

    picks = [balancer.select("gpt-4", candidates).name for _ in range(7)]

    assert picks == ["alpha", "beta", "gamma", "alpha", "beta", "gamma", "alpha"]
    assert balancer.counter("gpt-4") == 7


def test_rotation_counters_are_tracked_per_model() -> None:
    candidates = [_endpoint("alpha", 0), _endpoint("beta", 0)]
    balancer = Balancer()

    assert balancer.select("model-a", candidates).name == "alpha"
    assert balancer.select("model-b", candidates).name == "alpha"
    assert balancer.select("model-a", candidates).name == "beta"
    assert balancer.counter("model-a") == 2
    assert balancer.counter("model-b") == 1


def test_concurrent_rotation_keeps_counter_consistent() -> None:
    candidates = [_endpoint("alpha", 0), _endpoint("beta", 0), _endpoint("gamma", 0)]
    balancer = Balancer()
    per_thread = 500
    threads = 8
    results: list[str] = []
    results_lock = threading.Lock()

    def worker() -> None:
        local = [balancer.select("gpt-4", candidates).name for _ in range(per_thread)]
        with results_lock:
            results.extend(local)

    pool = [threading.Thread(target=worker) for _ in range(threads)]
    for thread in pool:
        thread.start()
    for thread in pool:
        thread.join()

    total = per_thread * threads
    assert balancer.counter("gpt-4") == total
    counts = Counter(results)
    assert set(counts) == {"alpha", "beta", "gamma"}
    # every counter value is handed out exactly once, so the split is exact
    assert max(counts.values()) - min(counts.values()) <= 1


def test_concurrent_weighted_selection_only_returns_candidates() -> None:
    candidates = [_endpoint("alpha", 2), _endpoint("beta", 1)]
    balancer = Balancer(rand=random.Random(5))
    invalid: list[object] = []

    def worker() -> None:
        for _ in range(1000):
            picked = balancer.select("gpt-4", candidates)
            if picked not in candidates:
                invalid.append(picked)

    pool = [threading.Thread(target=worker) for _ in range(8)]
    for thread in pool:
        thread.start()
    for thread in pool:
        thread.join()

    assert invalid == []
