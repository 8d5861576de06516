"""
REST client for the admin metrics endpoints.

Blocking requests calls, wrapped as async producers for the coordinator
and the polling fallback.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import requests

from config.settings import settings
from swrsync.errors import ApiError

logger = logging.getLogger("api_client")

HEALTH_ENDPOINT = "admin/health/detailed"
METRICS_ENDPOINT = "admin/metrics/realtime"


def _get_headers() -> dict:
    """Get API authentication headers."""
    headers = {"Accept": "application/json"}
    if settings.api_token:
        headers["Authorization"] = f"Bearer {settings.api_token}"
    return headers


def _make_request(
    endpoint: str,
    params: Optional[Dict[str, Any]] = None,
    base_url: Optional[str] = None,
) -> Any:
    """
    GET an endpoint and decode the JSON body.

    Args:
        endpoint: Path relative to the API base URL
        params: Query parameters
        base_url: Override for settings.api_base_url

    Returns:
        Decoded JSON response

    Raises:
        ApiError: On connection failure or a non-2xx status
    """
    url = f"{(base_url or settings.api_base_url).rstrip('/')}/{endpoint}"
    try:
        response = requests.get(
            url,
            headers=_get_headers(),
            params=params,
            timeout=settings.http_timeout_seconds,
        )
    except requests.RequestException as e:
        logger.warning(f"Request to {endpoint} failed: {e}")
        raise ApiError(f"Request to {endpoint} failed: {e}") from e

    if not response.ok:
        logger.warning(f"{endpoint} returned HTTP {response.status_code}")
        raise ApiError(
            f"{endpoint} returned HTTP {response.status_code}",
            status_code=response.status_code,
        )
    return response.json()


def get_detailed_health(base_url: Optional[str] = None) -> Dict[str, Any]:
    """Get the detailed health report (services, database, cache)."""
    return _make_request(HEALTH_ENDPOINT, base_url=base_url)


def get_realtime_metrics(base_url: Optional[str] = None) -> Dict[str, Any]:
    """Get the realtime metrics sample (cpu, memory, application)."""
    return _make_request(METRICS_ENDPOINT, base_url=base_url)


def json_producer(
    endpoint: str,
    params: Optional[Dict[str, Any]] = None,
    base_url: Optional[str] = None,
) -> Callable[[], Awaitable[Any]]:
    """
    Build a zero-argument async producer for an endpoint.

    The blocking call runs in a worker thread so the event loop keeps
    serving other keys.
    """
    async def produce() -> Any:
        return await asyncio.to_thread(_make_request, endpoint, params, base_url)

    return produce
