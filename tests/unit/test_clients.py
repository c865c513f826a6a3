"""Tests for GoogleClientFactory and the Ads client request shapes."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from oneclicktag.config import Settings
from oneclicktag.connectors.exceptions import ConfigurationError
from oneclicktag.connectors.google_ads import GoogleAdsClient, gaql_string, normalize_customer_id
from oneclicktag.credentials.types import LiveCredential
from oneclicktag.models.oauth_credential import CredentialScope
from oneclicktag.provisioning.clients import GoogleClientFactory

pytestmark = pytest.mark.asyncio


def _credential():
    return LiveCredential(user_id="u", tenant_id=uuid.uuid4(), scope=CredentialScope.ADS, access_token="t")


def test_ads_requires_developer_token():
    factory = GoogleClientFactory(MagicMock(), Settings(secret_key="x", google_ads_developer_token=""))
    with pytest.raises(ConfigurationError):
        factory.ads(_credential())


def test_ads_session_headers():
    settings = Settings(
        secret_key="x",
        google_ads_developer_token="dev",
        google_ads_login_customer_id="123-456-7890",
        google_ads_api_version="v18",
    )
    ads = GoogleClientFactory(MagicMock(), settings).ads(_credential())

    assert ads.session._headers == {"developer-token": "dev", "login-customer-id": "1234567890"}
    assert ads.base_url == "https://googleads.googleapis.com/v18"


def test_sessions_are_not_shared():
    factory = GoogleClientFactory(MagicMock(), Settings(secret_key="x"))
    first = factory.tag_manager(_credential())
    second = factory.tag_manager(_credential())
    assert first.session is not second.session


def test_gaql_quoting():
    assert gaql_string("Bob's \\ Lead") == "'Bob\\'s \\\\ Lead'"
    assert normalize_customer_id("123-456-7890") == "1234567890"


async def test_search_stream_batches_are_flattened():
    session = MagicMock()
    session.request = AsyncMock(return_value=[
        {"results": [{"customer": {"id": "1"}}]},
        {"results": [{"customer": {"id": "2"}}]},
    ])

    rows = await GoogleAdsClient(session).search("123-456-7890", "SELECT customer.id FROM customer")

    assert [r["customer"]["id"] for r in rows] == ["1", "2"]
    assert session.request.await_args.args[1].endswith("/customers/1234567890/googleAds:searchStream")


async def test_create_conversion_action_returns_resource_name():
    session = MagicMock()
    session.request = AsyncMock(return_value={"results": [{"resourceName": "customers/1/conversionActions/9"}]})

    name = await GoogleAdsClient(session).create_conversion_action("1", {"name": "Lead"})

    assert name == "customers/1/conversionActions/9"
    assert session.request.await_args.kwargs["json"] == {"operations": [{"create": {"name": "Lead"}}]}
