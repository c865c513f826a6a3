"""Tests for the backoff and fixed-delay retry policies."""

import pytest
from unittest.mock import AsyncMock, patch

from oneclicktag.connectors.exceptions import RemoteRejectedError, RemoteTransientError
from oneclicktag.connectors.retry import (
    _compute_delay,
    parse_retry_after,
    poll_with_fixed_delay,
    retry_with_backoff,
)

pytestmark = pytest.mark.asyncio


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_backoff_success_no_retry(mock_sleep):
    fn = AsyncMock(return_value="ok")

    assert await retry_with_backoff(fn, max_retries=3) == "ok"
    assert fn.await_count == 1
    mock_sleep.assert_not_awaited()


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_backoff_retries_transient_then_succeeds(mock_sleep):
    fn = AsyncMock(side_effect=[RemoteTransientError("503", api="oauth"), "ok"])

    assert await retry_with_backoff(fn, "arg", max_retries=2) == "ok"
    fn.assert_awaited_with("arg")
    assert mock_sleep.await_count == 1


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_backoff_exhaustion_raises_last_error(mock_sleep):
    fn = AsyncMock(side_effect=RemoteTransientError("down", api="oauth"))

    with pytest.raises(RemoteTransientError):
        await retry_with_backoff(fn, max_retries=2)
    assert fn.await_count == 3
    assert mock_sleep.await_count == 2


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_backoff_does_not_retry_rejections(mock_sleep):
    fn = AsyncMock(side_effect=RemoteRejectedError("bad request", status_code=400))

    with pytest.raises(RemoteRejectedError):
        await retry_with_backoff(fn, max_retries=3)
    assert fn.await_count == 1
    mock_sleep.assert_not_awaited()


def test_compute_delay_honors_retry_after():
    exc = RemoteTransientError("busy", retry_after=4.0)
    assert _compute_delay(0, 0.5, 10.0, exc) == 4.0
    assert _compute_delay(0, 0.5, 2.0, exc) == 2.0


def test_compute_delay_is_capped():
    for attempt in range(10):
        assert 0 <= _compute_delay(attempt, 0.5, 3.0) <= 3.0


def test_parse_retry_after():
    assert parse_retry_after({"Retry-After": "7"}) == 7.0
    assert parse_retry_after({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
    assert parse_retry_after({}) is None


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_poll_returns_first_value(mock_sleep):
    fn = AsyncMock(side_effect=[None, RemoteTransientError("503"), "label"])

    result = await poll_with_fixed_delay(fn, attempts=3, delay=2.0, retry_on=(RemoteTransientError,))

    assert result == "label"
    assert [call.args for call in mock_sleep.await_args_list] == [(2.0,), (2.0,)]


@patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_poll_exhaustion_returns_none_without_trailing_sleep(mock_sleep):
    fn = AsyncMock(return_value=None)

    assert await poll_with_fixed_delay(fn, attempts=3, delay=2.0) is None
    assert fn.await_count == 3
    assert mock_sleep.await_count == 2


async def test_poll_propagates_unlisted_errors():
    fn = AsyncMock(side_effect=RemoteRejectedError("forbidden", status_code=403))

    with pytest.raises(RemoteRejectedError):
        await poll_with_fixed_delay(fn, attempts=3, delay=0, retry_on=(RemoteTransientError,))
    assert fn.await_count == 1
