"""AccountAggregator: lists the Google accounts a credential can reach."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence, TypeVar

from ..connectors.exceptions import CredentialInvalidError
from ..credentials.types import LiveCredential
from ..models.oauth_credential import CredentialScope

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class AccountSummary:
    scope: CredentialScope
    account_id: str
    display_name: str
    attributes: Dict[str, Any] = field(default_factory=dict)


async def gather_fulfilled(
    items: Sequence[T],
    fetch: Callable[[T], Awaitable[R]],
    what: str,
) -> List[R]:
    """Run ``fetch`` for every item concurrently and keep the successes.

    Failures are logged and dropped. Credential failures and cancellation
    concern the whole call and are re-raised.
    """
    results = await asyncio.gather(*(fetch(item) for item in items), return_exceptions=True)
    fulfilled = []
    for item, result in zip(items, results):
        if isinstance(result, CredentialInvalidError) or (
            isinstance(result, BaseException) and not isinstance(result, Exception)
        ):
            raise result
        if isinstance(result, Exception):
            logger.warning("Skipping %s %s: %s: %s", what, item, type(result).__name__, result)
            continue
        fulfilled.append(result)
    if len(fulfilled) < len(items):
        logger.info("Resolved %d of %d %s", len(fulfilled), len(items), what)
    return fulfilled


class AccountAggregator:
    """Lists top-level accounts, then fetches each account's details in parallel."""

    def __init__(self, clients):
        self.clients = clients

    async def list_accounts(self, credential: LiveCredential) -> List[AccountSummary]:
        listers = {
            CredentialScope.ADS: self._list_ads_accounts,
            CredentialScope.ANALYTICS: self._list_analytics_accounts,
            CredentialScope.TAG_MANAGER: self._list_tag_manager_accounts,
        }
        return await listers[credential.scope](credential)

    async def _list_ads_accounts(self, credential: LiveCredential) -> List[AccountSummary]:
        ads = self.clients.ads(credential)
        customer_ids = await ads.list_accessible_customers()

        async def detail(customer_id: str) -> AccountSummary:
            customer = await ads.get_customer(customer_id) or {}
            return AccountSummary(
                scope=CredentialScope.ADS,
                account_id=customer_id,
                display_name=customer.get("descriptiveName") or f"Account {customer_id}",
                attributes={
                    "currency_code": customer.get("currencyCode") or "USD",
                    "time_zone": customer.get("timeZone") or "America/New_York",
                    "is_manager": bool(customer.get("manager", False)),
                    "is_active": customer.get("status", "ENABLED") == "ENABLED",
                },
            )

        return await gather_fulfilled(customer_ids, detail, "Ads accounts")

    async def _list_analytics_accounts(self, credential: LiveCredential) -> List[AccountSummary]:
        analytics = self.clients.analytics(credential)
        summaries = await analytics.list_account_summaries()

        async def measurement_ids(prop: Dict[str, Any]) -> Dict[str, Any]:
            streams = await analytics.list_data_streams(prop["name"])
            return {
                "property_id": prop["name"].split("/")[-1],
                "display_name": prop.get("displayName"),
                "time_zone": prop.get("timeZone"),
                "currency_code": prop.get("currencyCode"),
                "measurement_ids": [
                    s["webStreamData"]["measurementId"]
                    for s in streams
                    if s.get("type") == "WEB_DATA_STREAM" and s.get("webStreamData")
                ],
            }

        async def detail(summary: Dict[str, Any]) -> AccountSummary:
            properties = await analytics.list_properties(summary["account"])
            resolved = await gather_fulfilled(properties, measurement_ids, "GA4 properties")
            return AccountSummary(
                scope=CredentialScope.ANALYTICS,
                account_id=summary["account"].split("/")[-1],
                display_name=summary.get("displayName") or summary["account"],
                attributes={"properties": resolved},
            )

        return await gather_fulfilled(summaries, detail, "GA4 accounts")

    async def _list_tag_manager_accounts(self, credential: LiveCredential) -> List[AccountSummary]:
        gtm = self.clients.tag_manager(credential)
        accounts = await gtm.list_accounts()

        async def detail(account: Dict[str, Any]) -> AccountSummary:
            containers = await gtm.list_containers(account["accountId"])
            return AccountSummary(
                scope=CredentialScope.TAG_MANAGER,
                account_id=str(account["accountId"]),
                display_name=account.get("name") or str(account["accountId"]),
                attributes={
                    "containers": [
                        {
                            "container_id": str(c["containerId"]),
                            "name": c.get("name"),
                            "public_id": c.get("publicId"),
                            "usage_context": c.get("usageContext", []),
                        }
                        for c in containers
                    ]
                },
            )

        return await gather_fulfilled(accounts, detail, "Tag Manager accounts")
