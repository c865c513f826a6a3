"""The two retry policies used for Google calls.

Token refresh is retried with exponential backoff on transient failures.
Conversion label lookups are polled with a fixed delay. Every other remote
call fails fast and is re-invoked by the user.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import RemoteTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 10.0


async def retry_with_backoff(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs: Any,
) -> T:
    """Execute an async function, retrying on RemoteTransientError.

    Uses full jitter: delay = random(0, min(max_delay, base_delay * 2^attempt)).
    A ``retry_after`` hint on the error takes precedence when present.

    Raises:
        RemoteTransientError: after ``max_retries`` retries are exhausted.
        Any other exception raised by ``fn`` immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except RemoteTransientError as exc:
            if attempt >= max_retries:
                raise
            delay = _compute_delay(attempt, base_delay, max_delay, exc)
            logger.warning(
                "Transient %s failure (attempt %d/%d), waiting %.1fs: %s",
                exc.api or "remote",
                attempt + 1,
                max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


async def poll_with_fixed_delay(
    fn: Callable[[], Awaitable[Optional[T]]],
    *,
    attempts: int,
    delay: float,
    retry_on: tuple = (),
) -> Optional[T]:
    """Call ``fn`` until it returns a value, at most ``attempts`` times.

    ``None`` and exceptions listed in ``retry_on`` count as "not yet". The
    delay is only slept between attempts. Returns ``None`` once attempts
    are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            result = await fn()
        except retry_on as exc:
            logger.info("Poll attempt %d/%d failed: %s", attempt, attempts, exc)
            result = None
        if result is not None:
            return result
        if attempt < attempts:
            await asyncio.sleep(delay)
    return None


def _compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exc: Optional[Exception] = None,
) -> float:
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        return min(retry_after, max_delay)

    exp_delay = base_delay * (2**attempt)
    return random.uniform(0, min(exp_delay, max_delay))


def parse_retry_after(headers) -> Optional[float]:
    """Parse a Retry-After header (seconds only, not HTTP-date)."""
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None
