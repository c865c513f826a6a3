"""Database models for OneClickTag."""

from .ads_account_link import AdsAccountLink
from .base import Base
from .conversion_action import ConversionAction, ConversionStatus
from .oauth_credential import CredentialScope, OAuthCredential
from .tenant import Tenant
from .tracking import Tracking, TrackingDestination, TrackingStatus, TrackingType

__all__ = [
    "AdsAccountLink",
    "Base",
    "ConversionAction",
    "ConversionStatus",
    "CredentialScope",
    "OAuthCredential",
    "Tenant",
    "Tracking",
    "TrackingDestination",
    "TrackingStatus",
    "TrackingType",
]
