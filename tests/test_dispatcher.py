import random

import pytest

from src.gateway.balancer import Balancer
from src.gateway.config import EndpointDescriptor
from src.gateway.dispatcher import Dispatcher, RoutingError, parse_routing_fields
from src.gateway.proxy import build_forwarding_targets
from src.gateway.registry import ModelRegistry

ALPHA = EndpointDescriptor(name="alpha", base_url="https://alpha.example", api_key="sk-alpha", weight=2)
BETA = EndpointDescriptor(name="beta", base_url="https://beta.example", api_key="sk-beta", weight=1)


def make_dispatcher(balancer: Balancer | None = None) -> Dispatcher:
    registry = ModelRegistry({"gpt-4": [ALPHA, BETA], "solo": [BETA], "empty": []})
    return Dispatcher(
        registry,
        balancer or Balancer(rand=random.Random(3)),
        build_forwarding_targets([ALPHA, BETA]),
        owner="unit",
    )


def test_parse_routing_fields_keeps_extra_fields() -> None:
    fields = parse_routing_fields(b'{"model": "gpt-4", "stream": true, "messages": [], "n": 2}')

    assert fields.model == "gpt-4"
    assert fields.stream is True
    assert fields.model_extra == {"messages": [], "n": 2}


def test_parse_routing_fields_defaults_stream_to_false() -> None:
    assert parse_routing_fields(b'{"model": "gpt-4"}').stream is False


def test_parse_routing_fields_rejects_missing_model() -> None:
    with pytest.raises(RoutingError) as excinfo:
        parse_routing_fields(b'{"messages": []}')

    assert excinfo.value.status_code == 400
    assert "model" in excinfo.value.message


def test_list_models_is_sorted_catalog() -> None:
    listing = make_dispatcher().list_models()

    assert [item.id for item in listing.data] == ["empty", "gpt-4", "solo"]
    assert {item.owned_by for item in listing.data} == {"unit"}


def test_resolve_picks_candidate_and_its_target() -> None:
    dispatcher = make_dispatcher()

    decision = dispatcher.resolve(parse_routing_fields(b'{"model": "gpt-4", "stream": true}'))

    assert decision.endpoint in (ALPHA, BETA)
    assert decision.target.endpoint is decision.endpoint
    assert decision.stream is True


def test_resolve_single_candidate() -> None:
    decision = make_dispatcher().resolve(parse_routing_fields(b'{"model": "solo"}'))

    assert decision.endpoint is BETA


@pytest.mark.parametrize("model", ["missing", "empty"])
def test_resolve_unknown_or_empty_model_is_404(model: str) -> None:
    with pytest.raises(RoutingError) as excinfo:
        make_dispatcher().resolve(parse_routing_fields(f'{{"model": "{model}"}}'.encode()))

    assert excinfo.value.status_code == 404
    assert excinfo.value.code == "model_not_found"


def test_resolve_reports_500_when_balancer_selects_nothing() -> None:
    class _NullBalancer(Balancer):
        def select(self, model, candidates):  # type: ignore[override]
            return None

    with pytest.raises(RoutingError) as excinfo:
        make_dispatcher(_NullBalancer()).resolve(parse_routing_fields(b'{"model": "gpt-4"}'))

    assert excinfo.value.status_code == 500
    assert excinfo.value.code == "no_endpoint_selected"


def test_resolve_reports_500_without_forwarding_target() -> None:
    dispatcher = make_dispatcher()
    dispatcher.targets.pop("beta")

    with pytest.raises(RoutingError) as excinfo:
        dispatcher.resolve(parse_routing_fields(b'{"model": "solo"}'))

    assert excinfo.value.status_code == 500
    assert excinfo.value.code == "no_forwarding_target"
