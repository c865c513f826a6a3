"""OAuth credential model: one row per (user, tenant, provider, scope)."""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, as_utc
from ..security.encryption import EncryptedText


class CredentialScope(str, enum.Enum):
    """Google capability domains, each with its own stored credential."""

    TAG_MANAGER = "tag_manager"
    ADS = "ads"
    ANALYTICS = "analytics"


GOOGLE_PROVIDER = "google"


class OAuthCredential(Base):
    """Google OAuth tokens for one user within one tenant and scope."""

    __tablename__ = "oauth_credentials"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "tenant_id", "provider", "scope",
            name="uq_oauth_credentials_user_tenant_provider_scope",
        ),
    )

    # Identity comes from the external session layer
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    provider: Mapped[str] = mapped_column(String(50), default=GOOGLE_PROVIDER, nullable=False)
    scope: Mapped[CredentialScope] = mapped_column(
        Enum(
            CredentialScope,
            name="credentialscope",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )

    access_token: Mapped[str] = mapped_column(EncryptedText, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(EncryptedText, nullable=True)
    token_type: Mapped[str] = mapped_column(String(50), default="Bearer", nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Space separated OAuth scopes granted by the consent screen
    granted_scopes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # False once a refresh was rejected by Google; cleared by reconnecting
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<OAuthCredential(user_id='{self.user_id}', tenant_id='{self.tenant_id}', "
            f"scope='{self.scope.value}')>"
        )

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        if not self.expires_at:
            return False
        return datetime.now(timezone.utc) >= as_utc(self.expires_at)
