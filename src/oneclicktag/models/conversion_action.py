"""Local record of a Google Ads conversion action."""

import enum
import uuid
from typing import Optional

from sqlalchemy import Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ConversionStatus(str, enum.Enum):
    READY = "ready"
    LABEL_PENDING = "label_pending"


class ConversionAction(Base):
    """Conversion action created or adopted in an Ads account."""

    __tablename__ = "conversion_actions"
    __table_args__ = (
        UniqueConstraint("ads_account_link_id", "name", name="uq_conversion_actions_link_name"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    ads_account_link_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ads_account_links.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(64), default="DEFAULT", nullable=False)

    remote_id: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_name: Mapped[str] = mapped_column(String(255), nullable=False)
    conversion_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    conversion_label: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[ConversionStatus] = mapped_column(
        Enum(
            ConversionStatus,
            name="conversionstatus",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x]
        ),
        default=ConversionStatus.LABEL_PENDING,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ConversionAction(name='{self.name}', remote_id='{self.remote_id}')>"
