import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .config import EndpointDescriptor

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "authorization"}
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}


class UpstreamUnavailableError(RuntimeError):
    """Raised when a backend cannot be reached before its response headers arrive."""

    def __init__(self, endpoint: str, detail: str):
        super().__init__(f"endpoint '{endpoint}' unavailable: {detail}")
        self.endpoint = endpoint
        self.detail = detail


def _filter_headers(headers: Iterable[tuple[str, str]], dropped: frozenset[str]) -> list[tuple[str, str]]:
    return [(key, value) for key, value in headers if key.lower() not in dropped]


def parse_target_url(raw: str) -> httpx.URL | None:
    try:
        url = httpx.URL(raw)
    except (httpx.InvalidURL, TypeError):
        return None
    if url.scheme not in ("http", "https") or not url.host:
        return None
    return url


@dataclass(frozen=True)
class ForwardingTarget:
    endpoint: EndpointDescriptor
    base_url: httpx.URL

    def upstream_url(self, path: str, query: bytes = b"") -> httpx.URL:
        prefix = self.base_url.path.rstrip("/")
        if prefix.lower().endswith("/v1"):
            prefix = prefix[:-3]
        return self.base_url.copy_with(path=f"{prefix}{path}", query=query or None)

    def upstream_headers(self, headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
        forwarded = _filter_headers(headers, _DROPPED_REQUEST_HEADERS)
        if self.endpoint.api_key:
            forwarded.append(("authorization", f"Bearer {self.endpoint.api_key}"))
        return forwarded

    async def open(self, client: httpx.AsyncClient, request: Request, body: bytes) -> httpx.Response:
        upstream_request = client.build_request(
            request.method,
            self.upstream_url(request.url.path, request.url.query.encode("latin-1")),
            headers=self.upstream_headers(request.headers.items()),
            content=body,
        )
        try:
            return await client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(self.endpoint.name, str(exc) or type(exc).__name__) from exc

    def stream_response(
        self,
        upstream: httpx.Response,
        *,
        extra_headers: Mapping[str, str] | None = None,
    ) -> StreamingResponse:
        headers = dict(_filter_headers(upstream.headers.multi_items(), _DROPPED_RESPONSE_HEADERS))
        if extra_headers:
            headers.update(extra_headers)
        return StreamingResponse(
            relay(upstream, self.endpoint.name),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )


async def relay(upstream: httpx.Response, endpoint: str) -> AsyncIterator[bytes]:
    try:
        if upstream.is_stream_consumed:
            # Already read into memory by the transport.
            if upstream.content:
                yield upstream.content
        else:
            async for chunk in upstream.aiter_raw():
                if chunk:
                    yield chunk
    except httpx.HTTPError as exc:
        logger.warning("upstream stream interrupted endpoint=%s error=%s", endpoint, exc)
    finally:
        await upstream.aclose()


def build_forwarding_targets(endpoints: Iterable[EndpointDescriptor]) -> dict[str, ForwardingTarget]:
    targets: dict[str, ForwardingTarget] = {}
    for endpoint in endpoints:
        url = parse_target_url(endpoint.base_url)
        if url is None:
            logger.warning(
                "skipping forwarding target endpoint=%s base_url=%r: not an http(s) URL",
                endpoint.name,
                endpoint.base_url,
            )
            continue
        targets[endpoint.name] = ForwardingTarget(endpoint=endpoint, base_url=url)
    return targets
