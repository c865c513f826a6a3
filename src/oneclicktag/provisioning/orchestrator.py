"""ProvisioningOrchestrator: the operations exposed to the HTTP layer."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..connectors.exceptions import (
    InvalidRequestError,
    NotConnectedError,
    ProvisioningError,
    RecordNotFoundError,
)
from ..connectors.oauth import GoogleOAuthClient
from ..connectors.tag_manager import workspace_path
from ..credentials.types import LiveCredential, TokenBundle
from ..credentials.vault import ConnectionStatus, CredentialVault
from ..models.ads_account_link import AdsAccountLink
from ..models.conversion_action import ConversionAction, ConversionStatus
from ..models.oauth_credential import CredentialScope
from ..models.tenant import Tenant
from ..models.tracking import Tracking, TrackingStatus
from ..observability import metrics
from ..observability.logging import log_context
from .aggregator import AccountAggregator, AccountSummary
from .clients import GoogleClientFactory
from .conversions import (
    ConversionActionDefinition,
    ConversionActionResult,
    ConversionRegistrar,
    category_for,
)
from .locator import ResourceLocator
from .tag_graph import TagGraphArtifacts, TagGraphBuilder, TagGraphTarget, advance
from .tenant_resources import REFERENCE_KINDS, TenantResources

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningResult:
    tracking_id: uuid.UUID
    status: TrackingStatus
    artifacts: TagGraphArtifacts
    conversion: Optional[ConversionActionResult] = None

    @property
    def label_pending(self) -> bool:
        return self.status == TrackingStatus.LABEL_PENDING


@dataclass
class TeardownResult:
    tracking_id: uuid.UUID
    deleted: List[Tuple[str, str]] = field(default_factory=list)
    remaining: TagGraphArtifacts = field(default_factory=TagGraphArtifacts)
    published: bool = False


def _artifact_values(artifacts: TagGraphArtifacts) -> Dict[str, object]:
    return {
        "gtm_workspace_id": artifacts.workspace_id,
        "gtm_variable_ids": dict(artifacts.variable_ids),
        "gtm_trigger_id": artifacts.trigger_id,
        "gtm_tag_id_ga4": artifacts.ga4_tag_id,
        "gtm_tag_id_ads": artifacts.ads_tag_id,
        "gtm_client_id": artifacts.client_id,
        "gtm_container_version_id": artifacts.container_version_id,
        "created_entity_count": artifacts.created_count,
    }


def _has_artifacts(artifacts: TagGraphArtifacts) -> bool:
    return bool(artifacts.trigger_id or artifacts.variable_ids or any(artifacts.tag_ids().values()))


def _conversion_result(record: ConversionAction) -> ConversionActionResult:
    return ConversionActionResult(
        conversion_action_id=record.remote_id,
        resource_name=record.resource_name,
        conversion_id=record.conversion_id,
        conversion_label=record.conversion_label,
        status=record.status,
        adopted=True,
    )


class ProvisioningOrchestrator:
    """Entry point for OAuth, discovery and provisioning.

    Identity ``(user_id, tenant_id)`` comes from the session layer and is
    trusted as given.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        oauth_client: Optional[GoogleOAuthClient] = None,
        vault: Optional[CredentialVault] = None,
        clients: Optional[GoogleClientFactory] = None,
        locator: Optional[ResourceLocator] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.oauth = oauth_client or GoogleOAuthClient(self.settings)
        self.vault = vault or CredentialVault(session_factory, self.oauth)
        self.clients = clients or GoogleClientFactory(self.vault, self.settings)
        self.locator = locator or ResourceLocator()
        self.resources = TenantResources(session_factory, self.locator, self.settings)
        self.aggregator = AccountAggregator(self.clients)

    # OAuth

    def get_auth_url(self, state: str) -> str:
        return self.oauth.get_auth_url(state)

    async def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        return await self.oauth.exchange_code(code)

    async def connect(self, user_id: str, tenant_id: uuid.UUID, code: str) -> List[CredentialScope]:
        """Complete the consent redirect: exchange the code and store the grant."""
        with log_context(tenant_id=tenant_id, user_id=user_id):
            bundle = await self.exchange_code_for_tokens(code)
            if not bundle.refresh_token:
                logger.warning("Google did not issue a refresh token for this grant")
            return await self.vault.store_credential(user_id, tenant_id, bundle)

    async def connection_status(
        self, user_id: str, tenant_id: uuid.UUID
    ) -> Dict[CredentialScope, ConnectionStatus]:
        return await self.vault.connection_status(user_id, tenant_id)

    async def revoke_all(self, user_id: str) -> int:
        with log_context(user_id=user_id):
            return await self.vault.revoke(user_id)

    async def _credential(
        self, user_id: str, tenant_id: uuid.UUID, scope: CredentialScope
    ) -> LiveCredential:
        credential = await self.vault.get_live_credential(user_id, tenant_id, scope)
        if credential is None:
            raise NotConnectedError(scope.value)
        return credential

    # Discovery

    async def list_accounts(
        self, user_id: str, tenant_id: uuid.UUID, scope: CredentialScope
    ) -> List[AccountSummary]:
        with log_context(tenant_id=tenant_id, user_id=user_id):
            credential = await self._credential(user_id, tenant_id, scope)
            return await self.aggregator.list_accounts(credential)

    async def link_ads_account(
        self, user_id: str, tenant_id: uuid.UUID, customer_id: str
    ) -> AdsAccountLink:
        """Attach an accessible Ads customer to the tenant (first link is primary)."""
        customer_id = customer_id.replace("-", "")
        with log_context(tenant_id=tenant_id, user_id=user_id):
            ads = self.clients.ads(await self._credential(user_id, tenant_id, CredentialScope.ADS))
            customer = await ads.get_customer(customer_id) or {}

            async with self._session_factory() as session:
                links = (
                    await session.execute(
                        select(AdsAccountLink).where(AdsAccountLink.tenant_id == tenant_id)
                    )
                ).scalars().all()
                link = next((existing for existing in links if existing.customer_id == customer_id), None)
                if link is None:
                    link = AdsAccountLink(
                        tenant_id=tenant_id, customer_id=customer_id, is_primary=not links
                    )
                    session.add(link)
                link.descriptive_name = customer.get("descriptiveName") or f"Account {customer_id}"
                link.currency_code = customer.get("currencyCode") or "USD"
                link.time_zone = customer.get("timeZone") or "America/New_York"
                await session.commit()
            logger.info("Linked Ads account %s", customer_id)
            return link

    # Conversion actions

    async def _find_link(self, tenant_id: uuid.UUID, customer_id: Optional[str] = None, link_id=None):
        async with self._session_factory() as session:
            query = select(AdsAccountLink).where(AdsAccountLink.tenant_id == tenant_id)
            if link_id is not None:
                query = query.where(AdsAccountLink.id == link_id)
            elif customer_id is not None:
                query = query.where(AdsAccountLink.customer_id == customer_id.replace("-", ""))
            else:
                query = query.order_by(AdsAccountLink.is_primary.desc(), AdsAccountLink.created_at)
            link = (await session.execute(query.limit(1))).scalar_one_or_none()
        if link is None:
            raise RecordNotFoundError("No linked Google Ads account for this tenant")
        return link

    async def _record_conversion(
        self,
        link: AdsAccountLink,
        definition: ConversionActionDefinition,
        result: ConversionActionResult,
    ) -> ConversionAction:
        values = dict(
            remote_id=result.conversion_action_id,
            resource_name=result.resource_name,
            conversion_id=result.conversion_id,
            conversion_label=result.conversion_label,
            status=result.status,
            category=definition.category,
        )
        key = (ConversionAction.ads_account_link_id == link.id, ConversionAction.name == definition.name)
        async with self._session_factory() as session:
            record = (await session.execute(select(ConversionAction).where(*key))).scalar_one_or_none()
            if record is None:
                record = ConversionAction(
                    tenant_id=link.tenant_id, ads_account_link_id=link.id, name=definition.name, **values
                )
                session.add(record)
            else:
                for name, value in values.items():
                    setattr(record, name, value)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent call recorded the same action first
                await session.rollback()
                record = (await session.execute(select(ConversionAction).where(*key))).scalar_one()
        return record

    async def _ensure_conversion(
        self,
        link: AdsAccountLink,
        definition: ConversionActionDefinition,
        ads,
    ) -> Tuple[ConversionAction, ConversionActionResult]:
        registrar = ConversionRegistrar(
            ads,
            label_attempts=self.settings.conversion_label_attempts,
            label_delay_seconds=self.settings.conversion_label_delay_seconds,
        )
        async with self._session_factory() as session:
            record = (
                await session.execute(
                    select(ConversionAction).where(
                        ConversionAction.ads_account_link_id == link.id,
                        ConversionAction.name == definition.name,
                    )
                )
            ).scalar_one_or_none()

        if record is not None and record.status == ConversionStatus.READY:
            return record, _conversion_result(record)
        if record is not None:
            result = await registrar.resolve_label(link.customer_id, record.resource_name, adopted=True)
        else:
            result = await registrar.ensure_conversion_action(link.customer_id, definition)
        return await self._record_conversion(link, definition, result), result

    async def ensure_conversion_action(
        self,
        user_id: str,
        tenant_id: uuid.UUID,
        customer_id: str,
        definition: ConversionActionDefinition,
    ) -> ConversionActionResult:
        with log_context(tenant_id=tenant_id, user_id=user_id):
            link = await self._find_link(tenant_id, customer_id=customer_id)
            ads = self.clients.ads(await self._credential(user_id, tenant_id, CredentialScope.ADS))
            _, result = await self._ensure_conversion(link, definition, ads)
            return result

    async def remove_conversion_action(
        self, user_id: str, tenant_id: uuid.UUID, customer_id: str, name: str
    ):
        with log_context(tenant_id=tenant_id, user_id=user_id):
            link = await self._find_link(tenant_id, customer_id=customer_id)
            key = (ConversionAction.ads_account_link_id == link.id, ConversionAction.name == name)
            async with self._session_factory() as session:
                record = (await session.execute(select(ConversionAction).where(*key))).scalar_one_or_none()
            if record is None:
                raise RecordNotFoundError(f"Conversion action '{name}' is not managed here")

            ads = self.clients.ads(await self._credential(user_id, tenant_id, CredentialScope.ADS))
            await ConversionRegistrar(ads).remove_conversion_action(link.customer_id, record.resource_name)

            async with self._session_factory() as session:
                await session.execute(
                    update(Tracking)
                    .where(Tracking.conversion_action_id == record.id)
                    .values(conversion_action_id=None)
                )
                await session.execute(delete(ConversionAction).where(ConversionAction.id == record.id))
                await session.commit()

    # References

    async def reset_reference(
        self, user_id: str, tenant_id: uuid.UUID, kind: str, customer_id: Optional[str] = None
    ):
        """Forget a stored remote id so the next provisioning resolves it again.

        Nothing is deleted at Google. ``ads_label`` applies to the account link
        of ``customer_id``, or the primary link when it is omitted.
        """
        if kind not in REFERENCE_KINDS:
            raise InvalidRequestError(
                f"Unknown reference '{kind}', expected one of {', '.join(REFERENCE_KINDS)}"
            )
        with log_context(tenant_id=tenant_id, user_id=user_id):
            if kind == "ads_label":
                link = await self._find_link(tenant_id, customer_id=customer_id)
                await self.resources.reset_ads_label(link.id)
            else:
                await self.resources.load_tenant(tenant_id)
                await self.resources.reset_reference(tenant_id, kind)

    # Trackings

    async def _load_tracking(self, tenant_id: uuid.UUID, tracking_id: uuid.UUID) -> Tracking:
        async with self._session_factory() as session:
            tracking = await session.get(Tracking, tracking_id)
        if tracking is None or tracking.tenant_id != tenant_id:
            raise RecordNotFoundError(f"Tracking {tracking_id} not found")
        return tracking

    async def _save_tracking(self, tracking_id: uuid.UUID, **values):
        async with self._session_factory() as session:
            await session.execute(update(Tracking).where(Tracking.id == tracking_id).values(**values))
            await session.commit()

    def _checkpoint(self, tracking_id: uuid.UUID):
        async def checkpoint(status: TrackingStatus, artifacts: TagGraphArtifacts, error: Optional[str]):
            values = _artifact_values(artifacts)
            values["status"] = status
            if status == TrackingStatus.FAILED:
                values["last_error"] = error
            elif status == TrackingStatus.ACTIVE:
                values["last_error"] = None
            await self._save_tracking(tracking_id, **values)

        return checkpoint

    def _builder(self, gtm) -> TagGraphBuilder:
        return TagGraphBuilder(
            gtm,
            self.locator,
            prefix=self.settings.product_name,
            workspace_name=self.settings.gtm_workspace_name,
        )

    async def _tracking_conversion(
        self, tracking: Tracking, tenant: Tenant, user_id: str
    ) -> ConversionActionResult:
        ads = self.clients.ads(await self._credential(user_id, tenant.id, CredentialScope.ADS))
        link = await self._find_link(tenant.id, link_id=tracking.ads_account_link_id)
        await self.resources.ensure_ads_label(link.id, ads)

        definition = ConversionActionDefinition(
            name=f"{tracking.name} - {tenant.name}",
            category=category_for(tracking.tracking_type),
            currency_code=link.currency_code,
        )
        record, result = await self._ensure_conversion(link, definition, ads)
        await self._save_tracking(
            tracking.id, ads_account_link_id=link.id, conversion_action_id=record.id
        )
        return result

    async def provision_tracking(
        self, user_id: str, tenant_id: uuid.UUID, tracking_id: uuid.UUID
    ) -> ProvisioningResult:
        """Bring a tracking definition live, reusing everything already created.

        An active tracking returns its recorded ids without any remote call.
        Any other outcome counts as a sync attempt; a failure at any step is
        recorded on the tracking as ``failed`` with the classified error.
        """
        with log_context(tenant_id=tenant_id, user_id=user_id, tracking_id=tracking_id):
            tracking = await self._load_tracking(tenant_id, tracking_id)
            if not tracking.is_enabled:
                raise InvalidRequestError("Tracking is disabled")
            artifacts = TagGraphArtifacts.from_tracking(tracking)
            if tracking.status == TrackingStatus.ACTIVE and artifacts.container_version_id:
                return ProvisioningResult(tracking.id, tracking.status, artifacts)

            await self._save_tracking(
                tracking.id,
                status=advance(tracking.status, TrackingStatus.PENDING),
                sync_attempts=tracking.sync_attempts + 1,
                last_sync_at=datetime.now(timezone.utc),
            )
            try:
                result = await self._provision(user_id, tenant_id, tracking, artifacts)
            except ProvisioningError as exc:
                await self._save_tracking(
                    tracking.id, status=TrackingStatus.FAILED, last_error=f"{exc.kind}: {exc}"
                )
                metrics.provisioning_total().labels(outcome="failed").inc()
                raise

            metrics.provisioning_total().labels(outcome=result.status.value).inc()
            return result

    async def _provision(
        self,
        user_id: str,
        tenant_id: uuid.UUID,
        tracking: Tracking,
        artifacts: TagGraphArtifacts,
    ) -> ProvisioningResult:
        tenant = await self.resources.load_tenant(tenant_id)
        target = TagGraphTarget(container=None)
        conversion = None

        if tracking.destination.includes_ads:
            conversion = await self._tracking_conversion(tracking, tenant, user_id)
            if conversion.label_pending:
                await self._save_tracking(
                    tracking.id,
                    status=advance(TrackingStatus.PENDING, TrackingStatus.LABEL_PENDING),
                    last_error="Conversion label is not available yet",
                )
                return ProvisioningResult(
                    tracking.id, TrackingStatus.LABEL_PENDING, artifacts, conversion
                )
            target.conversion_id = conversion.conversion_id
            target.conversion_label = conversion.conversion_label

        if tracking.destination.includes_ga4:
            analytics = self.clients.analytics(
                await self._credential(user_id, tenant_id, CredentialScope.ANALYTICS)
            )
            stream = await self.resources.ensure_ga4_data_stream(tenant_id, analytics)
            target.measurement_id = stream.measurement_id

        gtm = self.clients.tag_manager(
            await self._credential(user_id, tenant_id, CredentialScope.TAG_MANAGER)
        )
        target.container = await self.resources.ensure_gtm_container(tenant_id, gtm)
        target.workspace_reference = (await self.resources.load_tenant(tenant_id)).gtm_workspace_id

        store_workspace, forget_workspace = self._workspace_callbacks(tenant_id)
        artifacts = await self._builder(gtm).build(
            tracking,
            target,
            artifacts,
            self._checkpoint(tracking.id),
            store_workspace=store_workspace,
            on_version_created=forget_workspace,
            forget_workspace=forget_workspace,
        )
        return ProvisioningResult(tracking.id, TrackingStatus.ACTIVE, artifacts, conversion)

    def _workspace_callbacks(self, tenant_id: uuid.UUID):
        async def store_workspace(workspace_id):
            return await self.resources.store_gtm_workspace(tenant_id, workspace_id)

        async def forget_workspace():
            await self.resources.reset_reference(tenant_id, "gtm_workspace")

        return store_workspace, forget_workspace

    async def disable_tracking(
        self, user_id: str, tenant_id: uuid.UUID, tracking_id: uuid.UUID, remove: bool = False
    ) -> TeardownResult:
        """Delete a tracking's GTM entities best-effort and publish the removal.

        With ``remove`` the tracking row is deleted as well, even when some
        entities could not be deleted.
        """
        with log_context(tenant_id=tenant_id, user_id=user_id, tracking_id=tracking_id):
            tracking = await self._load_tracking(tenant_id, tracking_id)
            artifacts = TagGraphArtifacts.from_tracking(tracking)
            result = TeardownResult(tracking_id=tracking.id, remaining=artifacts)

            if _has_artifacts(artifacts):
                gtm = self.clients.tag_manager(
                    await self._credential(user_id, tenant_id, CredentialScope.TAG_MANAGER)
                )
                container = await self.resources.ensure_gtm_container(tenant_id, gtm)
                tenant = await self.resources.load_tenant(tenant_id)
                builder = self._builder(gtm)
                store_workspace, forget_workspace = self._workspace_callbacks(tenant_id)

                workspace_id = await builder.ensure_workspace(
                    container, tenant.gtm_workspace_id, store_workspace, forget_workspace
                )
                workspace = workspace_path(container.account_id, container.container_id, workspace_id)
                result.deleted = await builder.teardown(workspace, artifacts)

                if result.deleted:
                    try:
                        await builder.publish(
                            container, workspace, f"{self.settings.product_name} - remove {tracking.name}",
                            forget_workspace,
                        )
                        result.published = True
                    except ProvisioningError as exc:
                        logger.warning("Deleted entities but could not publish the removal: %s", exc)

            if _has_artifacts(artifacts):
                logger.warning("Tracking '%s' still has GTM entities after teardown", tracking.name)

            if remove:
                async with self._session_factory() as session:
                    await session.execute(delete(Tracking).where(Tracking.id == tracking.id))
                    await session.commit()
                logger.info("Deleted tracking '%s'", tracking.name)
            else:
                values = _artifact_values(artifacts)
                values.update(
                    status=advance(tracking.status, TrackingStatus.DISABLED),
                    is_enabled=False,
                )
                if not _has_artifacts(artifacts):
                    values.update(gtm_container_version_id=None)
                await self._save_tracking(tracking.id, **values)
            return result

    async def delete_tracking(
        self, user_id: str, tenant_id: uuid.UUID, tracking_id: uuid.UUID
    ) -> TeardownResult:
        return await self.disable_tracking(user_id, tenant_id, tracking_id, remove=True)
