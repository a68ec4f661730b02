import asyncio
import logging
from typing import Any

import httpx

from .config import DISCOVERY_TIMEOUT_SECONDS, EndpointDescriptor

logger = logging.getLogger(__name__)

MODELS_PATH = "/v1/models"


def _extract_model_ids(payload: Any) -> list[str]:
    if isinstance(payload, dict):
        entries = payload.get("data")
    else:
        entries = payload
    if not isinstance(entries, list):
        raise ValueError("model listing must contain a 'data' array")
    model_ids: list[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            model_id = entry.get("id")
        else:
            model_id = entry
        if isinstance(model_id, str) and model_id:
            model_ids.append(model_id)
    return model_ids


async def _fetch_models(
    endpoint: EndpointDescriptor,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
) -> list[str]:
    headers = {"Accept": "application/json"}
    if endpoint.api_key:
        headers["Authorization"] = f"Bearer {endpoint.api_key}"
    url = f"{endpoint.api_root}{MODELS_PATH}"
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.get(url, headers=headers)
        response.raise_for_status()
        return _extract_model_ids(response.json())


async def list_models(
    endpoint: EndpointDescriptor,
    timeout: float = DISCOVERY_TIMEOUT_SECONDS,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """Return the model identifiers served by ``endpoint``.

    Endpoints that declare a static ``models`` catalogue are answered without a
    network call. Every failure degrades to an empty list so a broken backend
    only withdraws its own models.
    """
    if endpoint.models is not None:
        return list(endpoint.models)
    try:
        return await asyncio.wait_for(_fetch_models(endpoint, timeout, transport), timeout)
    except asyncio.TimeoutError:
        logger.warning("discovery timed out endpoint=%s timeout=%.1fs", endpoint.name, timeout)
    except httpx.HTTPStatusError as exc:
        logger.warning(
            "discovery failed endpoint=%s status=%s", endpoint.name, exc.response.status_code
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("discovery failed endpoint=%s error=%s", endpoint.name, exc)
    except ValueError as exc:
        logger.warning("discovery returned malformed listing endpoint=%s detail=%s", endpoint.name, exc)
    return []
