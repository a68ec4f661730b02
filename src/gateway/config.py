import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, ValidationError, model_validator

logger = logging.getLogger(__name__)

NamespacePolicy = Literal["raw", "prefix", "merge"]

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_OWNER = "oai-gateway"
DISCOVERY_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class EndpointDescriptor:
    name: str
    base_url: str
    api_key: str = ""
    weight: int = 1
    models: tuple[str, ...] | None = None

    @property
    def effective_weight(self) -> int:
        return self.weight if self.weight > 0 else 1

    @property
    def api_root(self) -> str:
        """Base address without a trailing ``/v1`` so API paths can be appended verbatim."""
        root = self.base_url.strip().rstrip("/")
        if root.lower().endswith("/v1"):
            root = root[:-3]
        return root


@dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: str | None = None
    owner: str = DEFAULT_OWNER
    request_timeout: float = 300.0
    connect_timeout: float = 10.0
    metrics_dir: str | None = None


@dataclass(frozen=True)
class RoutingSettings:
    mode: NamespacePolicy = "raw"
    discovery_timeout: float = DISCOVERY_TIMEOUT_SECONDS
    model_overrides: Dict[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayConfig:
    server: ServerSettings
    endpoints: tuple[EndpointDescriptor, ...]
    routing: RoutingSettings
    source_path: str | None = None


class _ServerModel(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=0, le=65535)
    api_key: str | None = None
    owner: str = Field(default=DEFAULT_OWNER)
    request_timeout: PositiveFloat = Field(default=300.0)
    connect_timeout: PositiveFloat = Field(default=10.0)
    metrics_dir: str | None = None

    model_config = ConfigDict(extra="forbid")


class _EndpointModel(BaseModel):
    name: str = Field(min_length=1)
    base_url: str
    api_key: str = ""
    api_key_env: str | None = None
    weight: int = 1
    models: list[str] | None = None

    model_config = ConfigDict(extra="forbid")


class _RoutingModel(BaseModel):
    mode: str = ""
    discovery_timeout: PositiveFloat = Field(default=DISCOVERY_TIMEOUT_SECONDS)
    model_overrides: Dict[str, list[str]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        overrides = normalized.get("model_overrides")
        if overrides is None:
            normalized["model_overrides"] = {}
        elif isinstance(overrides, dict):
            coerced: dict[str, list[str]] = {}
            for unified, refs in overrides.items():
                if refs is None:
                    coerced[str(unified)] = []
                elif isinstance(refs, list):
                    coerced[str(unified)] = [str(item) for item in refs]
                else:
                    coerced[str(unified)] = [str(refs)]
            normalized["model_overrides"] = coerced
        return normalized


class _GatewayModel(BaseModel):
    server: _ServerModel = Field(default_factory=_ServerModel)
    endpoints: list[_EndpointModel] = Field(default_factory=list)
    routing: _RoutingModel = Field(default_factory=_RoutingModel)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _unique_names(self) -> "_GatewayModel":
        seen: set[str] = set()
        duplicates: list[str] = []
        for endpoint in self.endpoints:
            if endpoint.name in seen and endpoint.name not in duplicates:
                duplicates.append(endpoint.name)
            seen.add(endpoint.name)
        if duplicates:
            raise ValueError(
                "endpoint names must be unique; duplicated: {names}".format(
                    names=", ".join(duplicates)
                )
            )
        return self


def normalize_mode(raw: str | None) -> NamespacePolicy:
    normalized = (raw or "").strip().lower()
    if normalized == "prefix":
        return "prefix"
    if normalized == "merge":
        return "merge"
    if normalized and normalized not in ("raw", "default"):
        logger.warning("unknown routing mode %r; falling back to raw model names", raw)
    return "raw"


def _resolve_credential(endpoint: _EndpointModel) -> str:
    if endpoint.api_key:
        return endpoint.api_key
    if endpoint.api_key_env:
        value = os.environ.get(endpoint.api_key_env)
        if value is None:
            logger.warning(
                "endpoint '%s' references unset credential variable %s",
                endpoint.name,
                endpoint.api_key_env,
            )
            return ""
        return value
    return ""


def _read_raw(path: str) -> object:
    if path.endswith(".toml"):
        with open(path, "rb") as f:
            return tomllib.load(f)
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_config(data: object, *, source_path: str | None = None) -> GatewayConfig:
    try:
        parsed = _GatewayModel.model_validate(data)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc
    srv = parsed.server
    endpoints = tuple(
        EndpointDescriptor(
            name=endpoint.name,
            base_url=endpoint.base_url.strip(),
            api_key=_resolve_credential(endpoint),
            weight=int(endpoint.weight),
            models=tuple(endpoint.models) if endpoint.models is not None else None,
        )
        for endpoint in parsed.endpoints
    )
    routing = RoutingSettings(
        mode=normalize_mode(parsed.routing.mode),
        discovery_timeout=float(parsed.routing.discovery_timeout),
        model_overrides={
            unified: tuple(refs) for unified, refs in parsed.routing.model_overrides.items()
        },
    )
    return GatewayConfig(
        server=ServerSettings(
            host=srv.host,
            port=int(srv.port),
            api_key=srv.api_key,
            owner=srv.owner,
            request_timeout=float(srv.request_timeout),
            connect_timeout=float(srv.connect_timeout),
            metrics_dir=srv.metrics_dir,
        ),
        endpoints=endpoints,
        routing=routing,
        source_path=source_path,
    )


def load_config(path: str | None = None) -> GatewayConfig:
    config_path = path or os.environ.get("GATEWAY_CONFIG", DEFAULT_CONFIG_PATH)
    data = _read_raw(config_path)
    return parse_config(data, source_path=config_path)
