import random
import threading
from collections import defaultdict
from typing import Sequence

from .config import EndpointDescriptor


class Balancer:
    """Weighted random endpoint selection.

    Each call draws independently with probability proportional to the
    endpoint weight. Candidates that declare no positive weight at all are
    served in strict per-model rotation instead.
    """

    def __init__(self, rand: random.Random | None = None) -> None:
        self._rand = rand if rand is not None else random.Random()
        self._counters: defaultdict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def counter(self, model: str) -> int:
        with self._lock:
            return self._counters.get(model, 0)

    def select(
        self, model: str, candidates: Sequence[EndpointDescriptor]
    ) -> EndpointDescriptor | None:
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]
        declared = sum(max(endpoint.weight, 0) for endpoint in candidates)
        if declared <= 0:
            return self._round_robin(model, candidates)
        total = sum(endpoint.effective_weight for endpoint in candidates)
        with self._lock:
            draw = self._rand.randrange(total)
        for endpoint in candidates:
            weight = endpoint.effective_weight
            if draw < weight:
                return endpoint
            draw -= weight
        return candidates[-1]

    def _round_robin(
        self, model: str, candidates: Sequence[EndpointDescriptor]
    ) -> EndpointDescriptor:
        with self._lock:
            count = self._counters[model]
            self._counters[model] = count + 1
        return candidates[count % len(candidates)]
