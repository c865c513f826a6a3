"""Authenticated transport for Google REST APIs.

``GoogleApiSession`` holds the credential for one orchestrator call. Before
each request it refreshes an expired token and waits for the rotated tokens
to be persisted; a 401 triggers exactly one refresh and one replay.
"""

import asyncio
import logging
import re
from typing import Any, Dict, Optional, Protocol

import httpx

from ..credentials.types import LiveCredential
from ..observability import metrics
from .exceptions import (
    CredentialInvalidError,
    ProvisioningError,
    RemoteConflictError,
    RemoteNotFoundError,
    RemoteRejectedError,
    RemoteTransientError,
)
from .retry import parse_retry_after

logger = logging.getLogger(__name__)

# Ads errorCode values that mean "name already taken"
DUPLICATE_ERROR_CODES = {"DUPLICATE_NAME", "RESOURCE_ALREADY_EXISTS", "DUPLICATE_LABEL_NAME"}
_DUPLICATE_MESSAGE = re.compile(r"duplicate name|already exists", re.IGNORECASE)


class CredentialRefresher(Protocol):
    async def refresh_and_persist(self, credential: LiveCredential) -> LiveCredential:
        ...

    async def mark_invalid(self, credential: LiveCredential):
        ...


def _provider_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def _error_codes(payload: Any):
    """Yield every Ads ``errorCode`` value found in a GoogleAdsFailure payload."""
    if not isinstance(payload, dict):
        return
    for detail in payload.get("error", {}).get("details", []) or []:
        for error in detail.get("errors", []) or []:
            for value in (error.get("errorCode") or {}).values():
                yield value


def classify_error_response(response: httpx.Response, api: str) -> ProvisioningError:
    """Map an error response from any Google API onto the error taxonomy."""
    status = response.status_code
    payload = _provider_payload(response)
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    message = error.get("message") or f"HTTP {status}"
    detail = f"{api} API error: {message}"

    if (
        status == 409
        or error.get("status") == "ALREADY_EXISTS"
        or any(code in DUPLICATE_ERROR_CODES for code in _error_codes(payload))
        or (status == 400 and _DUPLICATE_MESSAGE.search(message))
    ):
        return RemoteConflictError(detail, api=api, provider_error=payload)
    if status == 404:
        return RemoteNotFoundError(detail, api=api, provider_error=payload)
    if status == 401:
        return CredentialInvalidError(detail, provider_error=payload)
    if status >= 500:
        return RemoteTransientError(
            detail,
            api=api,
            status_code=status,
            provider_error=payload,
            retry_after=parse_retry_after(response.headers),
        )
    return RemoteRejectedError(detail, api=api, status_code=status, provider_error=payload)


class GoogleApiSession:
    """Bearer-token session bound to one credential and one Google API."""

    def __init__(
        self,
        credential: LiveCredential,
        refresher: CredentialRefresher,
        *,
        api: str,
        headers: Optional[Dict[str, str]] = None,
        refresh_skew_seconds: int = 60,
    ):
        self._credential = credential
        self._refresher = refresher
        self._headers = dict(headers or {})
        self._skew = refresh_skew_seconds
        self._refresh_lock = asyncio.Lock()
        self.api = api

    @property
    def credential(self) -> LiveCredential:
        return self._credential

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            CredentialInvalidError: the token was rejected after one refresh.
            RemoteTransientError, RemoteConflictError, RemoteRejectedError:
                classified provider failures.
        """
        if self._credential.can_refresh and self._credential.is_expired(self._skew):
            await self._refresh(self._credential)

        used = self._credential
        response = await self._send(method, url, used, params, json, headers)

        if response.status_code == 401:
            logger.info("%s API answered 401, refreshing access token", self.api)
            await self._refresh(used)
            response = await self._send(method, url, self._credential, params, json, headers)
            if response.status_code == 401:
                metrics.remote_errors_total().labels(api=self.api, kind="credential_invalid").inc()
                await self._refresher.mark_invalid(used)
                raise CredentialInvalidError(
                    f"{self.api} API rejected a freshly refreshed token",
                    scope=used.scope.value,
                    provider_error=_provider_payload(response),
                )

        return self._decode(response)

    async def _refresh(self, stale: LiveCredential):
        if not stale.can_refresh:
            await self._refresher.mark_invalid(stale)
            raise CredentialInvalidError(
                "Access token expired and no refresh token is stored",
                scope=stale.scope.value,
            )
        async with self._refresh_lock:
            # A concurrent request on this session already rotated the token
            if self._credential.access_token != stale.access_token:
                return
            self._credential = await self._refresher.refresh_and_persist(stale)

    async def _send(self, method, url, credential, params, json, headers) -> httpx.Response:
        from .http_client import get_http_client

        request_headers = {"Authorization": f"Bearer {credential.access_token}"}
        request_headers.update(self._headers)
        request_headers.update(headers or {})

        client = get_http_client()
        try:
            return await client.request(
                method, url, params=params, json=json, headers=request_headers
            )
        except httpx.TransportError as exc:
            metrics.remote_errors_total().labels(api=self.api, kind="remote_transient").inc()
            raise RemoteTransientError(
                f"{self.api} API unreachable: {type(exc).__name__}", api=self.api
            ) from exc

    def _decode(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            error = classify_error_response(response, self.api)
            metrics.remote_errors_total().labels(api=self.api, kind=error.kind).inc()
            raise error
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            metrics.remote_errors_total().labels(api=self.api, kind="remote_transient").inc()
            raise RemoteTransientError(
                f"{self.api} API returned a non-JSON body",
                api=self.api,
                status_code=response.status_code,
                provider_error=response.text[:500],
            ) from exc
