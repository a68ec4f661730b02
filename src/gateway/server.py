import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from .balancer import Balancer
from .config import GatewayConfig
from .dispatcher import Dispatcher, RouteDecision, RoutingError, parse_routing_fields
from .metrics import PROM_CONTENT_TYPE, MetricsLogger
from .proxy import UpstreamUnavailableError, build_forwarding_targets
from .registry import DiscoverFn, build_registry
from .types import ModelListResponse

logger = logging.getLogger(__name__)

BAD_GATEWAY_STATUS = 502

router = APIRouter()


def _make_response_headers(*, req_id: str, endpoint: str | None) -> dict[str, str]:
    return {
        "x-gateway-request-id": req_id,
        "x-gateway-endpoint": endpoint or "none",
    }


def _make_error_body(*, message: str, error_type: str, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "code": code}}


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    model: str | None,
    endpoint: str | None,
    detail: str | None = None,
) -> None:
    message = f"{event} req_id={req_id} model={model or 'unknown'} endpoint={endpoint or 'none'}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _metrics_record(
    decision: RouteDecision, *, req_id: str, status: int, start: float
) -> dict[str, Any]:
    return {
        "req_id": req_id,
        "ts": time.time(),
        "model": decision.model,
        "endpoint": decision.endpoint.name,
        "status": status,
        "ok": 200 <= status < 400,
        "latency_ms": int((time.perf_counter() - start) * 1000),
        "stream": decision.stream,
    }


@router.get("/v1/models", response_model=ModelListResponse)
async def list_models(request: Request) -> ModelListResponse:
    dispatcher: Dispatcher = request.app.state.dispatcher
    return dispatcher.list_models()


@router.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    req_id = str(uuid.uuid4())
    dispatcher: Dispatcher = request.app.state.dispatcher
    body = await request.body()
    model: str | None = None
    try:
        fields = parse_routing_fields(body)
        model = fields.model
        decision = dispatcher.resolve(fields)
    except RoutingError as exc:
        _log_request_event(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            event="route_rejected",
            req_id=req_id,
            model=model,
            endpoint=None,
            detail=f"{exc.status_code} {exc.code}",
        )
        return JSONResponse(
            _make_error_body(message=exc.message, error_type=exc.error_type, code=exc.code),
            status_code=exc.status_code,
            headers=_make_response_headers(req_id=req_id, endpoint=None),
        )

    endpoint_name = decision.endpoint.name
    _log_request_event(
        logging.INFO, event="route", req_id=req_id, model=decision.model, endpoint=endpoint_name
    )
    headers = _make_response_headers(req_id=req_id, endpoint=endpoint_name)
    metrics: MetricsLogger = request.app.state.metrics
    client: httpx.AsyncClient = request.app.state.http_client
    start = time.perf_counter()
    try:
        upstream = await decision.target.open(client, request, body)
    except UpstreamUnavailableError as exc:
        _log_request_event(
            logging.WARNING,
            event="upstream_unavailable",
            req_id=req_id,
            model=decision.model,
            endpoint=endpoint_name,
            detail=exc.detail,
        )
        await metrics.write(
            _metrics_record(decision, req_id=req_id, status=BAD_GATEWAY_STATUS, start=start)
        )
        return JSONResponse(
            _make_error_body(
                message=f"endpoint '{endpoint_name}' is unavailable",
                error_type="provider_error",
                code="bad_gateway",
            ),
            status_code=BAD_GATEWAY_STATUS,
            headers=headers,
        )
    try:
        await metrics.write(
            _metrics_record(decision, req_id=req_id, status=upstream.status_code, start=start)
        )
    except BaseException:
        await upstream.aclose()
        raise
    return decision.target.stream_response(upstream, extra_headers=headers)


@router.get("/healthz")
async def healthz(request: Request) -> dict[str, Any]:
    cfg: GatewayConfig = request.app.state.config
    dispatcher: Dispatcher = request.app.state.dispatcher
    return {
        "status": "ok",
        "endpoints": [endpoint.name for endpoint in cfg.endpoints],
        "models": len(dispatcher.registry),
    }


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics: MetricsLogger = request.app.state.metrics
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


def create_app(
    cfg: GatewayConfig,
    *,
    discover: DiscoverFn | None = None,
    balancer: Balancer | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    metrics: MetricsLogger | None = None,
) -> FastAPI:
    """Build the gateway application.

    The model registry is discovered inside the lifespan handler, so no
    request is served until every endpoint has answered or timed out.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        registry = await build_registry(
            cfg.endpoints,
            policy=cfg.routing.mode,
            overrides=cfg.routing.model_overrides,
            discover=discover,
            timeout=cfg.routing.discovery_timeout,
        )
        targets = build_forwarding_targets(cfg.endpoints)
        app.state.dispatcher = Dispatcher(
            registry, balancer or Balancer(), targets, owner=cfg.server.owner
        )
        timeout = httpx.Timeout(cfg.server.request_timeout, connect=cfg.server.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            app.state.http_client = client
            yield

    app = FastAPI(title="oai-gateway", lifespan=lifespan)
    app.state.config = cfg
    app.state.metrics = metrics or MetricsLogger(cfg.server.metrics_dir)
    app.include_router(router)
    return app
