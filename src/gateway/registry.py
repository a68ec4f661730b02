"""Model registry construction.

The registry maps every public model name to the endpoints able to serve it.
It is assembled once at startup: all endpoints are discovered concurrently,
their model identifiers are registered under the configured namespace policy,
manual override rules are folded in when the merge policy is active, and the
result is frozen into an immutable :class:`ModelRegistry` snapshot that the
request path reads without locking.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType

from .config import DISCOVERY_TIMEOUT_SECONDS, EndpointDescriptor, NamespacePolicy
from .discovery import list_models

logger = logging.getLogger(__name__)

DiscoverFn = Callable[[EndpointDescriptor, float], Awaitable[list[str]]]


@dataclass(frozen=True)
class ProviderRef:
    provider: str
    model: str

    @classmethod
    def parse(cls, raw: str) -> "ProviderRef | None":
        parts = raw.split("/", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return cls(provider=parts[0], model=parts[1])


def registry_key(endpoint: EndpointDescriptor, model_id: str, policy: NamespacePolicy) -> str:
    if policy == "prefix":
        return f"{endpoint.name}/{model_id}"
    return model_id


class ModelRegistry(Mapping[str, tuple[EndpointDescriptor, ...]]):
    """Read-only snapshot of ``model name -> endpoints``."""

    __slots__ = ("_models",)

    def __init__(self, models: Mapping[str, Sequence[EndpointDescriptor]]) -> None:
        self._models = MappingProxyType(
            {name: tuple(endpoints) for name, endpoints in models.items()}
        )

    def __getitem__(self, name: str) -> tuple[EndpointDescriptor, ...]:
        return self._models[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def candidates(self, name: str) -> tuple[EndpointDescriptor, ...]:
        return self._models.get(name, ())

    def endpoint_names(self, name: str) -> list[str]:
        return [endpoint.name for endpoint in self.candidates(name)]


class RegistryBuilder:
    """Mutable staging area used only while the registry is being assembled."""

    def __init__(self) -> None:
        self._models: dict[str, list[EndpointDescriptor]] = {}
        self._lock = threading.Lock()

    @property
    def models(self) -> dict[str, list[EndpointDescriptor]]:
        return self._models

    def register(self, name: str, endpoint: EndpointDescriptor) -> None:
        with self._lock:
            self._models.setdefault(name, []).append(endpoint)

    def register_discovered(
        self,
        endpoint: EndpointDescriptor,
        model_ids: Sequence[str],
        policy: NamespacePolicy,
    ) -> None:
        for model_id in model_ids:
            self.register(registry_key(endpoint, model_id, policy), endpoint)

    def apply_overrides(self, overrides: Mapping[str, Sequence[str]]) -> None:
        with self._lock:
            for unified_name, raw_refs in overrides.items():
                self._apply_override_locked(unified_name, raw_refs)

    def _apply_override_locked(self, unified_name: str, raw_refs: Sequence[str]) -> None:
        merged: list[tuple[ProviderRef, EndpointDescriptor]] = []
        for raw in raw_refs:
            ref = ProviderRef.parse(raw)
            if ref is None:
                logger.warning("ignoring malformed override ref %r for %s", raw, unified_name)
                continue
            if any(seen == ref for seen, _ in merged):
                continue
            match = next(
                (ep for ep in self._models.get(ref.model, ()) if ep.name == ref.provider),
                None,
            )
            if match is None:
                logger.info("override ref %s for %s did not resolve", raw, unified_name)
                continue
            merged.append((ref, match))
        if not merged:
            return
        self._models.setdefault(unified_name, []).extend(endpoint for _, endpoint in merged)
        for ref, endpoint in merged:
            if ref.model == unified_name:
                continue
            remaining = self._models.get(ref.model)
            if remaining is None:
                continue
            position = next(
                (index for index, candidate in enumerate(remaining) if candidate is endpoint),
                None,
            )
            if position is None:
                continue
            del remaining[position]
            # The original name keeps serving its other providers.
            if not remaining:
                del self._models[ref.model]

    def freeze(self) -> ModelRegistry:
        with self._lock:
            return ModelRegistry(self._models)


async def _discover_endpoint(
    builder: RegistryBuilder,
    endpoint: EndpointDescriptor,
    *,
    discover: DiscoverFn,
    timeout: float,
    policy: NamespacePolicy,
) -> int:
    model_ids = await discover(endpoint, timeout)
    builder.register_discovered(endpoint, model_ids, policy)
    logger.info("discovered endpoint=%s models=%d", endpoint.name, len(model_ids))
    return len(model_ids)


async def build_registry(
    endpoints: Sequence[EndpointDescriptor],
    *,
    policy: NamespacePolicy = "raw",
    overrides: Mapping[str, Sequence[str]] | None = None,
    discover: DiscoverFn | None = None,
    timeout: float = DISCOVERY_TIMEOUT_SECONDS,
) -> ModelRegistry:
    """Discover every endpoint concurrently and return the frozen registry.

    Discovery calls are joined before the override pass runs, so the snapshot
    returned here is complete.
    """
    discover_fn = discover or list_models
    builder = RegistryBuilder()
    await asyncio.gather(
        *(
            _discover_endpoint(
                builder, endpoint, discover=discover_fn, timeout=timeout, policy=policy
            )
            for endpoint in endpoints
        )
    )
    if policy == "merge" and overrides:
        builder.apply_overrides(overrides)
    registry = builder.freeze()
    logger.info("model registry ready policy=%s models=%d", policy, len(registry))
    return registry
