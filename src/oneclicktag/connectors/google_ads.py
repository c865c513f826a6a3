"""Google Ads REST API client.

Requests go through the same bearer session as every other Google API; the
``developer-token`` and optional ``login-customer-id`` headers are set on the
session by the caller.
"""

from typing import Any, Dict, List, Optional

from .transport import GoogleApiSession

BASE_URL = "https://googleads.googleapis.com"

CUSTOMER_QUERY = (
    "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
    "customer.time_zone, customer.manager, customer.status FROM customer LIMIT 1"
)
CONVERSION_ACTION_FIELDS = (
    "conversion_action.id, conversion_action.name, conversion_action.resource_name, "
    "conversion_action.status, conversion_action.category, conversion_action.tag_snippets"
)


def normalize_customer_id(customer_id: str) -> str:
    return str(customer_id).replace("-", "").strip()


def gaql_string(value: str) -> str:
    """Quote a string literal for the Google Ads query language."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class GoogleAdsClient:
    def __init__(self, session: GoogleApiSession, api_version: str = "v18"):
        self.session = session
        self.base_url = f"{BASE_URL}/{api_version}"

    async def list_accessible_customers(self) -> List[str]:
        """Customer ids the authenticated user can access directly."""
        data = await self.session.request("GET", f"{self.base_url}/customers:listAccessibleCustomers")
        return [name.split("/")[-1] for name in data.get("resourceNames", [])]

    async def search(self, customer_id: str, query: str) -> List[Dict[str, Any]]:
        """Run a query through searchStream and flatten the result batches."""
        customer_id = normalize_customer_id(customer_id)
        batches = await self.session.request(
            "POST",
            f"{self.base_url}/customers/{customer_id}/googleAds:searchStream",
            json={"query": query},
        )
        if isinstance(batches, dict):
            batches = [batches]
        rows: List[Dict[str, Any]] = []
        for batch in batches or []:
            rows.extend(batch.get("results", []))
        return rows

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.search(customer_id, CUSTOMER_QUERY)
        return rows[0].get("customer") if rows else None

    async def find_conversion_action(self, customer_id: str, name: str) -> Optional[Dict[str, Any]]:
        rows = await self.search(
            customer_id,
            f"SELECT {CONVERSION_ACTION_FIELDS} FROM conversion_action "
            f"WHERE conversion_action.name = {gaql_string(name)} "
            "AND conversion_action.status != 'REMOVED'",
        )
        return rows[0].get("conversionAction") if rows else None

    async def get_conversion_action(
        self, customer_id: str, conversion_action_id: str
    ) -> Optional[Dict[str, Any]]:
        rows = await self.search(
            customer_id,
            f"SELECT {CONVERSION_ACTION_FIELDS} FROM conversion_action "
            f"WHERE conversion_action.id = {int(conversion_action_id)}",
        )
        return rows[0].get("conversionAction") if rows else None

    async def _mutate(self, customer_id: str, collection: str, operation: Dict[str, Any]) -> str:
        customer_id = normalize_customer_id(customer_id)
        data = await self.session.request(
            "POST",
            f"{self.base_url}/customers/{customer_id}/{collection}:mutate",
            json={"operations": [operation]},
        )
        return data["results"][0]["resourceName"]

    async def create_conversion_action(self, customer_id: str, resource: Dict[str, Any]) -> str:
        """Create a conversion action and return its resource name."""
        return await self._mutate(customer_id, "conversionActions", {"create": resource})

    async def remove_conversion_action(self, customer_id: str, resource_name: str):
        await self._mutate(customer_id, "conversionActions", {"remove": resource_name})

    async def find_label(self, customer_id: str, name: str) -> Optional[Dict[str, Any]]:
        rows = await self.search(
            customer_id,
            "SELECT label.resource_name, label.name, label.status FROM label "
            f"WHERE label.name = {gaql_string(name)} AND label.status != 'REMOVED'",
        )
        return rows[0].get("label") if rows else None

    async def create_label(self, customer_id: str, name: str, description: str = "") -> str:
        label = {"name": name, "status": "ENABLED"}
        if description:
            label["textLabel"] = {"description": description}
        return await self._mutate(customer_id, "labels", {"create": label})
