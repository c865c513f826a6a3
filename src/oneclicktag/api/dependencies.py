"""Request dependencies shared by the API routers."""

import uuid
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Header, HTTPException

from ..database.connection import db_manager
from ..provisioning.orchestrator import ProvisioningOrchestrator


@dataclass(frozen=True)
class Identity:
    user_id: str
    tenant_id: uuid.UUID


async def get_identity(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_tenant_id: str = Header(..., alias="X-Tenant-Id"),
) -> Identity:
    """Identity established upstream by the session layer."""
    try:
        tenant_id = uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Tenant-Id must be a UUID")
    return Identity(user_id=x_user_id, tenant_id=tenant_id)


@lru_cache()
def get_orchestrator() -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(db_manager.get_session_factory())
