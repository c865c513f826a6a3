"""Maps provisioning error kinds to HTTP responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ..connectors.exceptions import ProvisioningError, RemoteRejectedError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "not_connected": 409,
    "credential_invalid": 401,
    "remote_transient": 503,
    "remote_conflict": 409,
    "remote_rejected": 422,
    "remote_not_found": 404,
    "misconfigured": 500,
    "invalid_request": 400,
    "not_found": 404,
}

# Provider statuses forwarded as-is for rejected calls
FORWARDED_STATUSES = {403, 429}


def status_for(exc: ProvisioningError) -> int:
    if isinstance(exc, RemoteRejectedError) and exc.status_code in FORWARDED_STATUSES:
        return exc.status_code
    return STATUS_BY_KIND.get(exc.kind, 500)


async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s failed with %s: %s", request.url.path, exc.kind, exc)
    body = {"error": exc.kind, "message": str(exc)}
    if exc.provider_error is not None:
        body["provider_error"] = exc.provider_error
    return JSONResponse(status_code=status_code, content=body)
