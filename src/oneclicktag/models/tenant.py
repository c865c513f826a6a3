"""Tenant model and the shared remote resource references it owns."""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Tenant(Base):
    """A customer of the platform.

    The ``ga4_*`` and ``gtm_*`` columns are references to remote resources
    found or created for this tenant. Once set they are authoritative and are
    only cleared by an explicit reset.
    """

    __tablename__ = "tenants"

    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    time_zone: Mapped[str] = mapped_column(String(64), default="America/New_York", nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Google Analytics 4
    ga4_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ga4_property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ga4_data_stream_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ga4_measurement_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Google Tag Manager
    gtm_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_container_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_container_kind: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    gtm_workspace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Tenant(slug='{self.slug}', name='{self.name}')>"
