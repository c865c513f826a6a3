"""Google OAuth 2.0 endpoints: consent URL, code exchange, refresh, revoke."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from urllib.parse import urlencode

import httpx

from ..config import Settings, get_settings
from ..credentials.types import TokenBundle
from ..models.oauth_credential import CredentialScope
from .exceptions import (
    ConfigurationError,
    CredentialInvalidError,
    RemoteRejectedError,
    RemoteTransientError,
)
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

IDENTITY_SCOPES = (
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

SCOPE_GRANTS = {
    CredentialScope.TAG_MANAGER: (
        "https://www.googleapis.com/auth/tagmanager.manage.accounts",
        "https://www.googleapis.com/auth/tagmanager.edit.containers",
        "https://www.googleapis.com/auth/tagmanager.edit.containerversions",
        "https://www.googleapis.com/auth/tagmanager.publish",
    ),
    CredentialScope.ADS: ("https://www.googleapis.com/auth/adwords",),
    CredentialScope.ANALYTICS: (
        "https://www.googleapis.com/auth/analytics.edit",
        "https://www.googleapis.com/auth/analytics.readonly",
    ),
}

DEFAULT_EXPIRES_IN = 3600


def requested_scopes(scopes: Optional[Iterable[CredentialScope]] = None) -> list:
    scopes = list(scopes) if scopes is not None else list(CredentialScope)
    requested = list(IDENTITY_SCOPES)
    for scope in scopes:
        requested.extend(SCOPE_GRANTS[scope])
    return requested


class GoogleOAuthClient:
    """Thin client over Google's OAuth token endpoints."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _require_client(self):
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            raise ConfigurationError(
                "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be configured", api="oauth"
            )

    def get_auth_url(self, state: str, scopes: Optional[Iterable[CredentialScope]] = None) -> str:
        """Build the consent URL. ``prompt=consent`` forces a refresh token."""
        self._require_client()
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(requested_scopes(scopes)),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenBundle:
        """Exchange an authorization code for tokens."""
        self._require_client()
        data = {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": self.settings.google_redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            payload = await self._post_token(data)
        except CredentialInvalidError as exc:
            raise RemoteRejectedError(
                "Authorization code is invalid, expired or already used",
                api="oauth",
                status_code=400,
                provider_error=exc.provider_error,
            ) from exc
        return self._bundle(payload)

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        """Exchange a refresh token, retrying transient failures.

        Raises:
            CredentialInvalidError: Google answered ``invalid_grant``.
        """
        self._require_client()
        data = {
            "refresh_token": refresh_token,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "grant_type": "refresh_token",
        }
        payload = await retry_with_backoff(
            self._post_token, data, max_retries=self.settings.token_refresh_max_retries
        )
        return self._bundle(payload)

    async def revoke_token(self, token: str):
        """Revoke a token at Google. Raises on any failure."""
        from .http_client import get_http_client

        client = get_http_client()
        try:
            response = await client.post(
                REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as exc:
            raise RemoteTransientError("OAuth revoke endpoint unreachable", api="oauth") from exc
        if response.status_code >= 400:
            raise RemoteRejectedError(
                f"Token revocation failed: HTTP {response.status_code}",
                api="oauth",
                status_code=response.status_code,
                provider_error=response.text[:500],
            )

    async def _post_token(self, data: dict) -> dict:
        from .http_client import get_http_client

        client = get_http_client()
        try:
            response = await client.post(
                TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        except httpx.TransportError as exc:
            raise RemoteTransientError(
                f"OAuth token endpoint unreachable: {type(exc).__name__}", api="oauth"
            ) from exc

        if response.status_code >= 500:
            raise RemoteTransientError(
                f"OAuth token endpoint error: HTTP {response.status_code}",
                api="oauth",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text[:500]}
        if response.status_code >= 400 or "error" in payload:
            error = payload.get("error")
            if error in ("invalid_grant", "unauthorized_client") or response.status_code == 401:
                raise CredentialInvalidError(
                    f"Google rejected the grant: {error}", provider_error=payload
                )
            raise RemoteRejectedError(
                f"OAuth token request failed: {error}",
                api="oauth",
                status_code=response.status_code,
                provider_error=payload,
            )
        return payload

    @staticmethod
    def _bundle(payload: dict) -> TokenBundle:
        if not payload.get("access_token"):
            raise RemoteRejectedError(
                "OAuth token response has no access_token", api="oauth", provider_error=payload
            )
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            token_type=payload.get("token_type", "Bearer"),
            scope=payload.get("scope"),
        )
