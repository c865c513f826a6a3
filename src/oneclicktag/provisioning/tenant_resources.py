"""Shared per-tenant Google resources resolved through the ResourceLocator.

GA4 property and web data stream, the Ads label of an account link, and the
Tag Manager container a tenant publishes to.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..connectors.exceptions import InvalidRequestError, RecordNotFoundError
from ..models.ads_account_link import AdsAccountLink
from ..models.tenant import Tenant
from .locator import ResourceLocator, ResourceSpec

logger = logging.getLogger(__name__)

# Columns cleared together by an explicit reset
RESETTABLE_REFERENCES = {
    "ga4_property": ("ga4_property_id", "ga4_data_stream_id", "ga4_measurement_id"),
    "ga4_data_stream": ("ga4_data_stream_id", "ga4_measurement_id"),
    "gtm_container": ("gtm_account_id", "gtm_container_id", "gtm_container_kind", "gtm_workspace_id"),
    "gtm_workspace": ("gtm_workspace_id",),
}
REFERENCE_KINDS = tuple(RESETTABLE_REFERENCES) + ("ads_label",)


@dataclass(frozen=True)
class DataStreamRef:
    stream_id: str
    measurement_id: Optional[str]


@dataclass(frozen=True)
class ContainerRef:
    account_id: str
    container_id: str
    kind: str  # "web" or "server"

    @property
    def is_server(self) -> bool:
        return self.kind == "server"


def container_kind(container: Dict[str, Any]) -> str:
    return "server" if "server" in (container.get("usageContext") or []) else "web"


async def claim_reference(
    session_factory: async_sessionmaker[AsyncSession],
    model,
    row_id: uuid.UUID,
    key_column: str,
    values: Dict[str, Any],
) -> Dict[str, Any]:
    """Persist reference columns only if ``key_column`` is still empty.

    Returns the values now stored, which belong to an earlier writer when
    one got there first.
    """
    async with session_factory() as session:
        result = await session.execute(
            update(model)
            .where(model.id == row_id, getattr(model, key_column).is_(None))
            .values(**values)
        )
        await session.commit()
        if result.rowcount:
            return values

        columns = [getattr(model, name) for name in values]
        row = (await session.execute(select(*columns).where(model.id == row_id))).one()
        logger.info("%s.%s was already set by another caller", model.__tablename__, key_column)
        return dict(zip(values, row))


class TenantResources:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locator: Optional[ResourceLocator] = None,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.locator = locator or ResourceLocator()
        self.settings = settings or get_settings()

    def resource_name(self, tenant: Tenant) -> str:
        return f"{self.settings.product_name} - {tenant.name}"

    async def load_tenant(self, tenant_id: uuid.UUID) -> Tenant:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise RecordNotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def _claim_tenant(self, tenant_id, key_column, values) -> Dict[str, Any]:
        return await claim_reference(self._session_factory, Tenant, tenant_id, key_column, values)

    async def reset_reference(self, tenant_id: uuid.UUID, kind: str):
        """Forget a tenant reference so the next provisioning resolves it again."""
        columns = RESETTABLE_REFERENCES[kind]
        async with self._session_factory() as session:
            await session.execute(
                update(Tenant).where(Tenant.id == tenant_id).values({c: None for c in columns})
            )
            await session.commit()
        logger.info("Reset %s reference", kind)

    async def reset_ads_label(self, link_id: uuid.UUID):
        async with self._session_factory() as session:
            await session.execute(
                update(AdsAccountLink)
                .where(AdsAccountLink.id == link_id)
                .values(label_resource_name=None)
            )
            await session.commit()
        logger.info("Reset ads_label reference")

    # GA4

    async def ensure_ga4_account(self, tenant: Tenant, analytics) -> str:
        if tenant.ga4_account_id:
            return tenant.ga4_account_id
        summaries = await analytics.list_account_summaries()
        if not summaries:
            raise InvalidRequestError("The connected Google user has no Analytics account")
        account_id = summaries[0]["account"].split("/")[-1]
        stored = await self._claim_tenant(tenant.id, "ga4_account_id", {"ga4_account_id": account_id})
        return stored["ga4_account_id"]

    async def ensure_ga4_property(self, tenant_id: uuid.UUID, analytics) -> str:
        """Return the tenant's GA4 property id, finding or creating it."""
        tenant = await self.load_tenant(tenant_id)

        async def load_reference():
            return tenant.ga4_property_id

        async def search(name):
            account_id = await self.ensure_ga4_account(tenant, analytics)
            for prop in await analytics.list_properties(f"accounts/{account_id}"):
                if prop.get("displayName") == name:
                    return prop["name"].split("/")[-1]
            return None

        async def create(name):
            account_id = await self.ensure_ga4_account(tenant, analytics)
            prop = await analytics.create_property(
                f"accounts/{account_id}", name, tenant.time_zone, tenant.currency_code
            )
            return prop["name"].split("/")[-1]

        async def store_reference(property_id):
            stored = await self._claim_tenant(
                tenant.id, "ga4_property_id", {"ga4_property_id": property_id}
            )
            return stored["ga4_property_id"]

        resolved = await self.locator.find_or_create(
            ResourceSpec(
                kind="ga4_property",
                name=self.resource_name(tenant),
                search=search,
                create=create,
                load_reference=load_reference,
                store_reference=store_reference,
            )
        )
        return resolved.value

    async def ensure_ga4_data_stream(self, tenant_id: uuid.UUID, analytics) -> DataStreamRef:
        """Return the tenant's web data stream and its measurement id."""
        property_id = await self.ensure_ga4_property(tenant_id, analytics)
        tenant = await self.load_tenant(tenant_id)
        property_name = f"properties/{property_id}"

        def as_ref(stream: Dict[str, Any]) -> DataStreamRef:
            return DataStreamRef(
                stream_id=stream["name"].split("/")[-1],
                measurement_id=(stream.get("webStreamData") or {}).get("measurementId"),
            )

        async def load_reference():
            if tenant.ga4_data_stream_id:
                return DataStreamRef(tenant.ga4_data_stream_id, tenant.ga4_measurement_id)
            return None

        async def search(name):
            for stream in await analytics.list_data_streams(property_name):
                if stream.get("type") == "WEB_DATA_STREAM" and stream.get("displayName") == name:
                    return as_ref(stream)
            return None

        async def create(name):
            if not tenant.website_url:
                raise InvalidRequestError("Tenant website URL is required for a GA4 web data stream")
            return as_ref(await analytics.create_web_data_stream(property_name, name, tenant.website_url))

        async def store_reference(ref: DataStreamRef):
            stored = await self._claim_tenant(
                tenant.id,
                "ga4_data_stream_id",
                {"ga4_data_stream_id": ref.stream_id, "ga4_measurement_id": ref.measurement_id},
            )
            return DataStreamRef(stored["ga4_data_stream_id"], stored["ga4_measurement_id"])

        resolved = await self.locator.find_or_create(
            ResourceSpec(
                kind="ga4_data_stream",
                name=f"{self.resource_name(tenant)} Web",
                search=search,
                create=create,
                load_reference=load_reference,
                store_reference=store_reference,
            )
        )
        return resolved.value

    # Ads

    async def ensure_ads_label(self, link_id: uuid.UUID, ads) -> str:
        """Return the label resource name of an Ads account link."""
        async with self._session_factory() as session:
            link = await session.get(AdsAccountLink, link_id)
        if link is None:
            raise RecordNotFoundError(f"Ads account link {link_id} not found")
        tenant = await self.load_tenant(link.tenant_id)

        async def load_reference():
            return link.label_resource_name

        async def search(name):
            label = await ads.find_label(link.customer_id, name)
            return label["resourceName"] if label else None

        async def create(name):
            return await ads.create_label(
                link.customer_id, name, f"Conversion actions managed by {self.settings.product_name}"
            )

        async def store_reference(resource_name):
            stored = await claim_reference(
                self._session_factory,
                AdsAccountLink,
                link.id,
                "label_resource_name",
                {"label_resource_name": resource_name},
            )
            return stored["label_resource_name"]

        resolved = await self.locator.find_or_create(
            ResourceSpec(
                kind="ads_label",
                name=self.resource_name(tenant),
                search=search,
                create=create,
                load_reference=load_reference,
                store_reference=store_reference,
            )
        )
        return resolved.value

    # Tag Manager

    async def ensure_gtm_container(self, tenant_id: uuid.UUID, gtm) -> ContainerRef:
        """Return the container the tenant publishes to.

        Uses the stored choice, otherwise the first container of the first
        reachable account.
        """
        tenant = await self.load_tenant(tenant_id)
        if tenant.gtm_account_id and tenant.gtm_container_id:
            return ContainerRef(
                tenant.gtm_account_id, tenant.gtm_container_id, tenant.gtm_container_kind or "web"
            )

        for account in await gtm.list_accounts():
            containers = await gtm.list_containers(account["accountId"])
            if containers:
                container = containers[0]
                stored = await self._claim_tenant(
                    tenant.id,
                    "gtm_container_id",
                    {
                        "gtm_account_id": str(account["accountId"]),
                        "gtm_container_id": str(container["containerId"]),
                        "gtm_container_kind": container_kind(container),
                    },
                )
                return ContainerRef(
                    stored["gtm_account_id"], stored["gtm_container_id"], stored["gtm_container_kind"]
                )
        raise InvalidRequestError("The connected Google user has no Tag Manager container")

    async def store_gtm_workspace(self, tenant_id: uuid.UUID, workspace_id: str) -> str:
        stored = await self._claim_tenant(
            tenant_id, "gtm_workspace_id", {"gtm_workspace_id": workspace_id}
        )
        return stored["gtm_workspace_id"]
