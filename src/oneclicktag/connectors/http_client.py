"""Shared httpx client for all Google API calls."""

import logging
from typing import Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Return the process-wide pooled client, creating it on first use."""
    global _client
    if _client is None or _client.is_closed:
        settings = get_settings()
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            headers={"User-Agent": f"{settings.app_name}/{settings.app_version}"},
        )
        logger.debug("Created shared HTTP client")
    return _client


async def close_http_client():
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
