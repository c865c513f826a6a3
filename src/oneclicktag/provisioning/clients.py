"""Builds API clients bound to one credential."""

from typing import Optional

from ..config import Settings, get_settings
from ..connectors.analytics_admin import AnalyticsAdminClient
from ..connectors.exceptions import ConfigurationError
from ..connectors.google_ads import GoogleAdsClient, normalize_customer_id
from ..connectors.tag_manager import TagManagerClient
from ..connectors.transport import CredentialRefresher, GoogleApiSession
from ..credentials.types import LiveCredential


class GoogleClientFactory:
    """Creates a fresh session per call so no token is shared across tenants."""

    def __init__(self, refresher: CredentialRefresher, settings: Optional[Settings] = None):
        self.refresher = refresher
        self.settings = settings or get_settings()

    def _session(self, credential: LiveCredential, api: str, headers=None) -> GoogleApiSession:
        return GoogleApiSession(
            credential,
            self.refresher,
            api=api,
            headers=headers,
            refresh_skew_seconds=self.settings.token_refresh_skew_seconds,
        )

    def tag_manager(self, credential: LiveCredential) -> TagManagerClient:
        return TagManagerClient(self._session(credential, "tagmanager"))

    def analytics(self, credential: LiveCredential) -> AnalyticsAdminClient:
        return AnalyticsAdminClient(self._session(credential, "analyticsadmin"))

    def ads(self, credential: LiveCredential) -> GoogleAdsClient:
        if not self.settings.google_ads_developer_token:
            raise ConfigurationError("GOOGLE_ADS_DEVELOPER_TOKEN must be configured", api="googleads")
        headers = {"developer-token": self.settings.google_ads_developer_token}
        if self.settings.google_ads_login_customer_id:
            headers["login-customer-id"] = normalize_customer_id(
                self.settings.google_ads_login_customer_id
            )
        return GoogleAdsClient(
            self._session(credential, "googleads", headers),
            api_version=self.settings.google_ads_api_version,
        )
