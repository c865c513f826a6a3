"""Iteration over Google list endpoints (``pageToken`` / ``nextPageToken``)."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


async def collect_pages(
    fetch_page: Callable[[Optional[str]], Awaitable[Dict[str, Any]]],
    *,
    results_key: str,
    max_pages: int = 50,
) -> List[Dict[str, Any]]:
    """Fetch every page and return the concatenated items.

    Args:
        fetch_page: Async callable(page_token) -> decoded response JSON.
        results_key: Key holding the items in each page.
        max_pages: Safety limit on total pages fetched.
    """
    items: List[Dict[str, Any]] = []
    page_token: Optional[str] = None
    for _ in range(max_pages):
        data = await fetch_page(page_token)
        items.extend(data.get(results_key) or [])
        page_token = data.get("nextPageToken")
        if not page_token:
            return items
    logger.warning("Stopped paginating %s after %d pages", results_key, max_pages)
    return items
