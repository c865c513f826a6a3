"""CredentialVault: stores, serves, refreshes and revokes Google credentials."""

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..connectors.exceptions import CredentialInvalidError, ProvisioningError
from ..connectors.oauth import GoogleOAuthClient
from ..models.base import as_utc
from ..models.oauth_credential import GOOGLE_PROVIDER, CredentialScope, OAuthCredential
from ..observability import metrics
from ..security.encryption import TokenDecryptionError
from .types import LiveCredential, TokenBundle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionStatus:
    scope: CredentialScope
    state: str  # connected | expired | invalid | not_connected
    expires_at: Optional[object] = None


class CredentialVault:
    """Persistence and lifecycle for ``OAuthCredential`` rows.

    Every method opens its own short session; nothing here keeps a session
    open while talking to Google.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oauth_client: Optional[GoogleOAuthClient] = None,
        managed_scopes: Optional[List[CredentialScope]] = None,
    ):
        self._session_factory = session_factory
        self._oauth = oauth_client or GoogleOAuthClient()
        self._managed_scopes = managed_scopes or list(CredentialScope)

    @staticmethod
    def _key(user_id: str, tenant_id: uuid.UUID, scope: CredentialScope):
        return (
            OAuthCredential.user_id == user_id,
            OAuthCredential.tenant_id == tenant_id,
            OAuthCredential.provider == GOOGLE_PROVIDER,
            OAuthCredential.scope == scope,
        )

    async def get_live_credential(
        self, user_id: str, tenant_id: uuid.UUID, scope: CredentialScope
    ) -> Optional[LiveCredential]:
        """Load the credential for a scope.

        Returns ``None`` when the user never connected this scope. Does not
        refresh; the transport refreshes on demand.

        Raises:
            CredentialInvalidError: the stored grant was already rejected by
                Google or cannot be decrypted.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OAuthCredential).where(*self._key(user_id, tenant_id, scope))
                )
                row = result.scalar_one_or_none()
        except TokenDecryptionError as exc:
            logger.warning("Stored %s credential cannot be decrypted", scope.value)
            raise CredentialInvalidError(
                "Stored credential cannot be decrypted, reconnect Google", scope=scope.value
            ) from exc

        if row is None:
            logger.info("No %s credential stored", scope.value)
            return None
        if not row.is_active:
            logger.warning("Using %s credential previously rejected by Google", scope.value)
            raise CredentialInvalidError(
                "Google grant was revoked or expired, reconnect Google", scope=scope.value
            )

        return LiveCredential(
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            scope=row.scope,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=as_utc(row.expires_at),
        )

    async def refresh_and_persist(self, credential: LiveCredential) -> LiveCredential:
        """Refresh the access token and persist the rotation before returning.

        The stored refresh token is only replaced when Google issued a new one.
        """
        scope = credential.scope.value
        try:
            bundle = await self._oauth.refresh_access_token(credential.refresh_token)
        except CredentialInvalidError as exc:
            metrics.credential_refresh_total().labels(scope=scope, outcome="invalid").inc()
            logger.warning("Refresh rejected for %s credential: %s", scope, exc)
            await self.mark_invalid(credential)
            exc.scope = scope
            raise
        except ProvisioningError:
            metrics.credential_refresh_total().labels(scope=scope, outcome="transient").inc()
            raise

        values = {"access_token": bundle.access_token, "expires_at": bundle.expires_at}
        if bundle.refresh_token:
            values["refresh_token"] = bundle.refresh_token

        async with self._session_factory() as session:
            await session.execute(
                update(OAuthCredential)
                .where(*self._key(credential.user_id, credential.tenant_id, credential.scope))
                .values(**values)
            )
            await session.commit()

        metrics.credential_refresh_total().labels(scope=scope, outcome="refreshed").inc()
        logger.info(
            "Refreshed %s credential (refresh token %s)",
            scope,
            "rotated" if bundle.refresh_token else "kept",
        )
        return credential.rotated(bundle)

    async def mark_invalid(self, credential: LiveCredential):
        """Flag a credential Google no longer accepts; it stays until reconnected."""
        async with self._session_factory() as session:
            await session.execute(
                update(OAuthCredential)
                .where(*self._key(credential.user_id, credential.tenant_id, credential.scope))
                .values(is_active=False)
            )
            await session.commit()

    async def _stored_rows(
        self, session: AsyncSession, user_id: str, tenant_id: uuid.UUID
    ) -> Dict[CredentialScope, OAuthCredential]:
        result = await session.execute(
            select(OAuthCredential).where(
                OAuthCredential.user_id == user_id,
                OAuthCredential.tenant_id == tenant_id,
                OAuthCredential.provider == GOOGLE_PROVIDER,
            )
        )
        return {row.scope: row for row in result.scalars()}

    async def _upsert_scopes(self, user_id: str, tenant_id: uuid.UUID, bundle: TokenBundle):
        async with self._session_factory() as session:
            rows = await self._stored_rows(session, user_id, tenant_id)
            for scope in self._managed_scopes:
                row = rows.get(scope)
                if row is None:
                    row = OAuthCredential(
                        user_id=user_id,
                        tenant_id=tenant_id,
                        provider=GOOGLE_PROVIDER,
                        scope=scope,
                    )
                    session.add(row)
                row.access_token = bundle.access_token
                if bundle.refresh_token:
                    row.refresh_token = bundle.refresh_token
                row.expires_at = bundle.expires_at
                row.token_type = bundle.token_type
                row.granted_scopes = bundle.scope
                row.is_active = True
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise

    async def store_credential(
        self, user_id: str, tenant_id: uuid.UUID, bundle: TokenBundle
    ) -> List[CredentialScope]:
        """Upsert one row per managed scope from a single OAuth grant."""
        try:
            await self._upsert_scopes(user_id, tenant_id, bundle)
        except IntegrityError:
            # A concurrent callback inserted the rows first; update them instead
            logger.info("Credential rows were created concurrently, updating them")
            await self._upsert_scopes(user_id, tenant_id, bundle)

        logger.info("Stored Google credential for %d scopes", len(self._managed_scopes))
        return list(self._managed_scopes)

    async def revoke(self, user_id: str) -> int:
        """Revoke every token of a user at Google, then delete all their rows.

        Remote failures are logged; the local delete always happens.
        Returns the number of deleted rows.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuthCredential.refresh_token, OAuthCredential.access_token).where(
                    OAuthCredential.user_id == user_id,
                    OAuthCredential.provider == GOOGLE_PROVIDER,
                )
            )
            tokens = {refresh or access for refresh, access in result.all()}

        for token in tokens:
            try:
                await self._oauth.revoke_token(token)
            except ProvisioningError as exc:
                logger.warning("Failed to revoke Google token: %s", exc)

        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuthCredential).where(
                    OAuthCredential.user_id == user_id,
                    OAuthCredential.provider == GOOGLE_PROVIDER,
                )
            )
            await session.commit()

        logger.info("Deleted %d Google credentials after revoke", result.rowcount)
        return result.rowcount

    async def connection_status(
        self, user_id: str, tenant_id: uuid.UUID
    ) -> Dict[CredentialScope, ConnectionStatus]:
        """Describe each managed scope from local state only."""
        async with self._session_factory() as session:
            rows = await self._stored_rows(session, user_id, tenant_id)

        statuses = {}
        for scope in self._managed_scopes:
            row = rows.get(scope)
            if row is None:
                state = "not_connected"
            elif not row.is_active:
                state = "invalid"
            elif row.is_expired and not row.refresh_token:
                state = "expired"
            else:
                state = "connected"
            statuses[scope] = ConnectionStatus(
                scope=scope, state=state, expires_at=as_utc(row.expires_at) if row else None
            )
        return statuses
