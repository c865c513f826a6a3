"""Google OAuth consent routes."""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..provisioning.orchestrator import ProvisioningOrchestrator
from .dependencies import Identity, get_identity, get_orchestrator

router = APIRouter()


class AuthUrlResponse(BaseModel):
    url: str


class ConnectResponse(BaseModel):
    connected_scopes: List[str]
    state: Optional[str] = None


class ScopeStatus(BaseModel):
    state: str
    expires_at: Optional[datetime] = None


class RevokeResponse(BaseModel):
    revoked_credentials: int


@router.get("/google/authorize", response_model=AuthUrlResponse)
async def google_authorize(
    state: str = Query(..., min_length=1),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    return AuthUrlResponse(url=orchestrator.get_auth_url(state))


@router.get("/google/callback", response_model=ConnectResponse)
async def google_callback(
    code: str,
    state: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    scopes = await orchestrator.connect(identity.user_id, identity.tenant_id, code)
    return ConnectResponse(connected_scopes=[scope.value for scope in scopes], state=state)


@router.get("/google/status", response_model=Dict[str, ScopeStatus])
async def google_status(
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    statuses = await orchestrator.connection_status(identity.user_id, identity.tenant_id)
    return {
        scope.value: ScopeStatus(state=status.state, expires_at=status.expires_at)
        for scope, status in statuses.items()
    }


@router.delete("/google", response_model=RevokeResponse)
async def google_revoke(
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    return RevokeResponse(revoked_credentials=await orchestrator.revoke_all(identity.user_id))
