"""Link between a tenant and a Google Ads customer account."""

import uuid
from typing import Optional

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AdsAccountLink(Base):
    """A Google Ads customer selected for a tenant."""

    __tablename__ = "ads_account_links"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", name="uq_ads_account_links_tenant_customer"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Ten digit customer id without dashes
    customer_id: Mapped[str] = mapped_column(String(20), nullable=False)
    descriptive_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    currency_code: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    time_zone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_primary: Mapped[bool] = mapped_column(default=False, nullable=False)

    # customers/{customer_id}/labels/{label_id}
    label_resource_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AdsAccountLink(customer_id='{self.customer_id}', tenant_id='{self.tenant_id}')>"
