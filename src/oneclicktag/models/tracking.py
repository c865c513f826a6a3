"""Tracking definition model and its provisioning state."""

import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType


class TrackingType(str, enum.Enum):
    BUTTON_CLICK = "button_click"
    LINK_CLICK = "link_click"
    FORM_SUBMIT = "form_submit"
    PAGE_VIEW = "page_view"
    ELEMENT_VISIBILITY = "element_visibility"
    CUSTOM_EVENT = "custom_event"


class TrackingDestination(str, enum.Enum):
    GA4 = "ga4"
    GOOGLE_ADS = "google_ads"
    BOTH = "both"

    @property
    def includes_ga4(self) -> bool:
        return self in (TrackingDestination.GA4, TrackingDestination.BOTH)

    @property
    def includes_ads(self) -> bool:
        return self in (TrackingDestination.GOOGLE_ADS, TrackingDestination.BOTH)


class TrackingStatus(str, enum.Enum):
    """Provisioning state of a tracking definition."""

    PENDING = "pending"
    WORKSPACE_READY = "workspace_ready"
    TRIGGERS_CREATED = "triggers_created"
    TAGS_CREATED = "tags_created"
    PUBLISHED = "published"
    ACTIVE = "active"
    FAILED = "failed"
    LABEL_PENDING = "label_pending"
    DISABLED = "disabled"


def _enum_column(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        create_constraint=False,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x]
    )


class Tracking(Base):
    """A conversion tracking definition and the remote artifacts realizing it."""

    __tablename__ = "trackings"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tracking_type: Mapped[TrackingType] = mapped_column(
        _enum_column(TrackingType, "trackingtype"), nullable=False
    )
    destination: Mapped[TrackingDestination] = mapped_column(
        _enum_column(TrackingDestination, "trackingdestination"),
        default=TrackingDestination.BOTH,
        nullable=False,
    )
    css_selector: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    url_pattern: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    event_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # [{"data_layer_key": ..., "operator": "equals", "value": ...}]
    conditions: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSONType, nullable=True)
    value_data_layer_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(default=True, nullable=False)

    ads_account_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ads_account_links.id", ondelete="SET NULL"),
        nullable=True
    )
    conversion_action_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversion_actions.id", ondelete="SET NULL"),
        nullable=True
    )

    # Tag graph artifacts
    gtm_workspace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_variable_ids: Mapped[Optional[Dict[str, str]]] = mapped_column(JSONType, nullable=True)
    gtm_trigger_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_tag_id_ga4: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_tag_id_ads: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gtm_container_version_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[TrackingStatus] = mapped_column(
        _enum_column(TrackingStatus, "trackingstatus"),
        default=TrackingStatus.PENDING,
        nullable=False,
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_entity_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Tracking(name='{self.name}', status='{self.status.value}')>"
