"""Google Analytics Admin API v1beta client."""

from typing import Any, Dict, List, Optional

from .pagination import collect_pages
from .transport import GoogleApiSession

BASE_URL = "https://analyticsadmin.googleapis.com/v1beta"


class AnalyticsAdminClient:
    def __init__(self, session: GoogleApiSession):
        self.session = session

    async def _list(self, path: str, results_key: str, params: Optional[Dict[str, Any]] = None):
        async def fetch(page_token):
            query = dict(params or {})
            if page_token:
                query["pageToken"] = page_token
            return await self.session.request("GET", f"{BASE_URL}/{path}", params=query or None)

        return await collect_pages(fetch, results_key=results_key)

    async def list_account_summaries(self) -> List[Dict[str, Any]]:
        return await self._list("accountSummaries", "accountSummaries", {"pageSize": 200})

    async def list_properties(self, account: str) -> List[Dict[str, Any]]:
        """List properties under ``accounts/<id>``."""
        return await self._list("properties", "properties", {"filter": f"parent:{account}"})

    async def create_property(
        self, account: str, display_name: str, time_zone: str, currency_code: str
    ) -> Dict[str, Any]:
        return await self.session.request(
            "POST",
            f"{BASE_URL}/properties",
            json={
                "parent": account,
                "displayName": display_name,
                "timeZone": time_zone,
                "currencyCode": currency_code,
            },
        )

    async def list_data_streams(self, property_name: str) -> List[Dict[str, Any]]:
        return await self._list(f"{property_name}/dataStreams", "dataStreams")

    async def create_web_data_stream(
        self, property_name: str, display_name: str, default_uri: str
    ) -> Dict[str, Any]:
        return await self.session.request(
            "POST",
            f"{BASE_URL}/{property_name}/dataStreams",
            json={
                "type": "WEB_DATA_STREAM",
                "displayName": display_name,
                "webStreamData": {"defaultUri": default_uri},
            },
        )
