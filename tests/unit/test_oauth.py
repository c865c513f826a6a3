"""Tests for the Google OAuth client."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oneclicktag.config import Settings
from oneclicktag.connectors.exceptions import (
    ConfigurationError,
    CredentialInvalidError,
    RemoteRejectedError,
    RemoteTransientError,
)
from oneclicktag.connectors.oauth import DEFAULT_EXPIRES_IN, GoogleOAuthClient, requested_scopes
from oneclicktag.models.oauth_credential import CredentialScope

pytestmark = pytest.mark.asyncio


@pytest.fixture
def oauth():
    return GoogleOAuthClient(
        Settings(
            secret_key="x",
            google_client_id="cid",
            google_client_secret="csecret",
            google_redirect_uri="https://app.example/callback",
            token_refresh_max_retries=2,
        )
    )


def _client(*responses):
    client = MagicMock()
    client.post = AsyncMock(side_effect=list(responses))
    return client


class TestAuthUrl:
    def test_requests_offline_access_with_consent(self, oauth):
        url = urlparse(oauth.get_auth_url("csrf-state"))
        params = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert url.netloc == "accounts.google.com"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["include_granted_scopes"] == "true"
        assert params["state"] == "csrf-state"
        assert params["redirect_uri"] == "https://app.example/callback"
        scopes = params["scope"].split(" ")
        assert "https://www.googleapis.com/auth/adwords" in scopes
        assert "https://www.googleapis.com/auth/tagmanager.publish" in scopes
        assert "https://www.googleapis.com/auth/analytics.edit" in scopes

    def test_subset_of_scopes(self):
        scopes = requested_scopes([CredentialScope.ADS])
        assert "https://www.googleapis.com/auth/adwords" in scopes
        assert not any("tagmanager" in s for s in scopes)

    def test_missing_client_is_misconfigured(self):
        client = GoogleOAuthClient(Settings(secret_key="x", google_client_id="", google_client_secret=""))
        with pytest.raises(ConfigurationError):
            client.get_auth_url("state")


class TestTokenEndpoint:
    async def test_exchange_code(self, oauth):
        client = _client(httpx.Response(200, json={
            "access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3599,
            "token_type": "Bearer", "scope": "openid",
        }))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            bundle = await oauth.exchange_code("auth-code")

        assert bundle.access_token == "ya29.a"
        assert bundle.refresh_token == "1//r"
        assert bundle.expires_at > datetime.now(timezone.utc) + timedelta(seconds=3500)
        data = client.post.await_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code"

    async def test_missing_expires_in_defaults_to_one_hour(self, oauth):
        client = _client(httpx.Response(200, json={"access_token": "ya29.a"}))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            bundle = await oauth.exchange_code("auth-code")

        remaining = bundle.expires_at - datetime.now(timezone.utc)
        assert timedelta(seconds=DEFAULT_EXPIRES_IN - 60) < remaining <= timedelta(seconds=DEFAULT_EXPIRES_IN)
        assert bundle.refresh_token is None

    async def test_used_code_is_rejected(self, oauth):
        client = _client(httpx.Response(400, json={"error": "invalid_grant"}))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            with pytest.raises(RemoteRejectedError):
                await oauth.exchange_code("used-code")

    async def test_refresh_invalid_grant(self, oauth):
        client = _client(httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            with pytest.raises(CredentialInvalidError):
                await oauth.refresh_access_token("1//r")
        assert client.post.await_count == 1

    @patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_refresh_retries_server_errors(self, mock_sleep, oauth):
        client = _client(
            httpx.Response(503, text="backend error"),
            httpx.Response(200, json={"access_token": "ya29.b", "expires_in": 3600}),
        )
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            bundle = await oauth.refresh_access_token("1//r")

        assert bundle.access_token == "ya29.b"
        assert bundle.refresh_token is None
        assert client.post.await_count == 2
        assert mock_sleep.await_count == 1

    @patch("oneclicktag.connectors.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_refresh_gives_up_after_retries(self, mock_sleep, oauth):
        client = _client(*[httpx.Response(500, text="err") for _ in range(3)])
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            with pytest.raises(RemoteTransientError):
                await oauth.refresh_access_token("1//r")
        assert client.post.await_count == 3

    async def test_revoke_sends_token(self, oauth):
        client = _client(httpx.Response(200))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            await oauth.revoke_token("1//r")
        assert client.post.await_args.kwargs["params"] == {"token": "1//r"}

    async def test_revoke_failure_raises(self, oauth):
        client = _client(httpx.Response(400, text="invalid_token"))
        with patch("oneclicktag.connectors.http_client.get_http_client", return_value=client):
            with pytest.raises(RemoteRejectedError):
                await oauth.revoke_token("1//r")
