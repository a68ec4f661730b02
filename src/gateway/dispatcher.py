import logging
from dataclasses import dataclass
from typing import Mapping

from pydantic import ValidationError

from .balancer import Balancer
from .config import DEFAULT_OWNER, EndpointDescriptor
from .proxy import ForwardingTarget
from .registry import ModelRegistry
from .types import ChatRoutingFields, ModelInfo, ModelListResponse

logger = logging.getLogger(__name__)


class RoutingError(Exception):
    """A request that cannot be routed; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str, *, error_type: str, code: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.code = code


@dataclass(frozen=True)
class RouteDecision:
    model: str
    endpoint: EndpointDescriptor
    target: ForwardingTarget
    stream: bool = False


def parse_routing_fields(body: bytes) -> ChatRoutingFields:
    try:
        return ChatRoutingFields.model_validate_json(body or b"")
    except ValidationError as exc:
        detail = "; ".join(
            f"{' -> '.join(str(item) for item in error.get('loc', ())) or '<root>'}: {error.get('msg', 'invalid value')}"
            for error in exc.errors()
        )
        raise RoutingError(
            400,
            f"invalid request body: {detail}",
            error_type="invalid_request_error",
            code="invalid_request",
        ) from exc


class Dispatcher:
    def __init__(
        self,
        registry: ModelRegistry,
        balancer: Balancer,
        targets: Mapping[str, ForwardingTarget],
        *,
        owner: str = DEFAULT_OWNER,
    ) -> None:
        self.registry = registry
        self.balancer = balancer
        self.targets = dict(targets)
        self.owner = owner

    def list_models(self) -> ModelListResponse:
        return ModelListResponse(
            data=[ModelInfo(id=name, owned_by=self.owner) for name in sorted(self.registry)]
        )

    def resolve(self, fields: ChatRoutingFields) -> RouteDecision:
        model = fields.model
        candidates = self.registry.candidates(model)
        if not candidates:
            raise RoutingError(
                404,
                f"model '{model}' does not exist",
                error_type="invalid_request_error",
                code="model_not_found",
            )
        selected = self.balancer.select(model, candidates)
        if selected is None:
            logger.error("balancer returned no endpoint model=%s candidates=%d", model, len(candidates))
            raise RoutingError(
                500,
                f"no endpoint could be selected for model '{model}'",
                error_type="routing_error",
                code="no_endpoint_selected",
            )
        target = self.targets.get(selected.name)
        if target is None:
            logger.error(
                "invariant violation: endpoint '%s' serves model '%s' but has no forwarding target",
                selected.name,
                model,
            )
            raise RoutingError(
                500,
                f"no forwarding target for endpoint '{selected.name}'",
                error_type="routing_error",
                code="no_forwarding_target",
            )
        return RouteDecision(model=model, endpoint=selected, target=target, stream=bool(fields.stream))
