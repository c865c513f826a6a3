"""Error taxonomy for Google provisioning.

Every failure that leaves this package carries a ``kind`` so the HTTP layer can
choose between a retry button, a reconnect prompt and a permanent failure.
"""

from typing import Any, Optional


class ProvisioningError(Exception):
    """Base exception for all provisioning errors."""

    kind = "internal"

    def __init__(self, message: str, api: str = "", provider_error: Optional[Any] = None):
        self.api = api
        self.provider_error = provider_error
        super().__init__(message)


class NotConnectedError(ProvisioningError):
    """No credential has ever been stored for the requested scope."""

    kind = "not_connected"

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Google account is not connected for scope '{scope}'")


class CredentialInvalidError(ProvisioningError):
    """The stored grant was revoked or expired and could not be refreshed."""

    kind = "credential_invalid"

    def __init__(self, message: str, scope: str = "", provider_error: Optional[Any] = None):
        self.scope = scope
        super().__init__(message, api="oauth", provider_error=provider_error)


class RemoteTransientError(ProvisioningError):
    """Network failure or 5xx response. The whole operation may be retried."""

    kind = "remote_transient"

    def __init__(
        self,
        message: str,
        api: str = "",
        status_code: int = 0,
        provider_error: Optional[Any] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message, api, provider_error)


class RemoteConflictError(ProvisioningError):
    """A resource with the same unique name already exists."""

    kind = "remote_conflict"


class RemoteRejectedError(ProvisioningError):
    """The provider refused the request (validation, quota, permission)."""

    kind = "remote_rejected"

    def __init__(
        self,
        message: str,
        api: str = "",
        status_code: int = 0,
        provider_error: Optional[Any] = None,
    ):
        self.status_code = status_code
        super().__init__(message, api, provider_error)


class RemoteNotFoundError(RemoteRejectedError):
    """Resource not found (404)."""

    kind = "remote_not_found"

    def __init__(self, message: str, api: str = "", provider_error: Optional[Any] = None):
        super().__init__(message, api, status_code=404, provider_error=provider_error)


class ConfigurationError(ProvisioningError):
    """Required Google client settings are missing."""

    kind = "misconfigured"


class InvalidRequestError(ProvisioningError):
    """The local definition cannot be provisioned as it stands."""

    kind = "invalid_request"


class RecordNotFoundError(ProvisioningError):
    """A local tenant, account link or tracking record does not exist."""

    kind = "not_found"
