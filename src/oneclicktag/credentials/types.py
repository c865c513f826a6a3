"""Immutable credential values passed explicitly into every remote call."""

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models.oauth_credential import CredentialScope


@dataclass(frozen=True)
class TokenBundle:
    """Result of one OAuth code exchange or refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


@dataclass(frozen=True)
class LiveCredential:
    """Access material for one (user, tenant, scope), never mutated in place."""

    user_id: str
    tenant_id: uuid.UUID
    scope: CredentialScope
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def is_expired(self, skew_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        """True when the access token is known to be expired.

        A credential without an expiry is treated as valid until Google
        answers 401.
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=skew_seconds) >= self.expires_at

    def rotated(self, bundle: TokenBundle) -> "LiveCredential":
        """Return a copy carrying the refreshed tokens.

        The refresh token is kept unless Google issued a new non-empty one.
        """
        return dataclasses.replace(
            self,
            access_token=bundle.access_token,
            expires_at=bundle.expires_at,
            refresh_token=bundle.refresh_token or self.refresh_token,
        )
