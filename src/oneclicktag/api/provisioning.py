"""Account discovery and tracking provisioning routes."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..models.oauth_credential import CredentialScope
from ..provisioning.conversions import ConversionActionDefinition, ConversionActionResult
from ..provisioning.orchestrator import ProvisioningOrchestrator, ProvisioningResult
from .dependencies import Identity, get_identity, get_orchestrator

router = APIRouter()


class AccountResponse(BaseModel):
    account_id: str
    display_name: str
    attributes: Dict[str, Any] = {}


class AdsLinkResponse(BaseModel):
    id: UUID
    customer_id: str
    descriptive_name: Optional[str] = None
    is_primary: bool


class ConversionActionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    category: str = "DEFAULT"
    counting_type: str = "ONE_PER_CLICK"
    click_through_lookback_window_days: int = Field(default=30, ge=1, le=90)
    view_through_lookback_window_days: int = Field(default=1, ge=1, le=30)
    default_value: Optional[float] = None
    currency_code: Optional[str] = None


class ConversionActionResponse(BaseModel):
    conversion_action_id: str
    resource_name: str
    conversion_id: Optional[str] = None
    conversion_label: Optional[str] = None
    status: str
    adopted: bool


class ProvisioningResponse(BaseModel):
    tracking_id: UUID
    status: str
    workspace_id: Optional[str] = None
    trigger_id: Optional[str] = None
    tag_ids: Dict[str, Optional[str]] = {}
    variable_ids: Dict[str, str] = {}
    container_version_id: Optional[str] = None
    conversion: Optional[ConversionActionResponse] = None


class TeardownResponse(BaseModel):
    tracking_id: UUID
    deleted: List[List[str]]
    published: bool


def _conversion(result: ConversionActionResult) -> ConversionActionResponse:
    return ConversionActionResponse(
        conversion_action_id=result.conversion_action_id,
        resource_name=result.resource_name,
        conversion_id=result.conversion_id,
        conversion_label=result.conversion_label,
        status=result.status.value,
        adopted=result.adopted,
    )


def _provisioning(result: ProvisioningResult) -> ProvisioningResponse:
    artifacts = result.artifacts
    return ProvisioningResponse(
        tracking_id=result.tracking_id,
        status=result.status.value,
        workspace_id=artifacts.workspace_id,
        trigger_id=artifacts.trigger_id,
        tag_ids=artifacts.tag_ids(),
        variable_ids=artifacts.variable_ids,
        container_version_id=artifacts.container_version_id,
        conversion=_conversion(result.conversion) if result.conversion else None,
    )


@router.get("/google/{scope}/accounts", response_model=List[AccountResponse])
async def list_accounts(
    scope: CredentialScope,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    accounts = await orchestrator.list_accounts(identity.user_id, identity.tenant_id, scope)
    return [
        AccountResponse(account_id=a.account_id, display_name=a.display_name, attributes=a.attributes)
        for a in accounts
    ]


@router.post("/google/ads/accounts/{customer_id}/link", response_model=AdsLinkResponse)
async def link_ads_account(
    customer_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    link = await orchestrator.link_ads_account(identity.user_id, identity.tenant_id, customer_id)
    return AdsLinkResponse(
        id=link.id,
        customer_id=link.customer_id,
        descriptive_name=link.descriptive_name,
        is_primary=link.is_primary,
    )


@router.post(
    "/google/ads/accounts/{customer_id}/conversion-actions",
    response_model=ConversionActionResponse,
)
async def ensure_conversion_action(
    customer_id: str,
    request: ConversionActionRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.ensure_conversion_action(
        identity.user_id,
        identity.tenant_id,
        customer_id,
        ConversionActionDefinition(**request.model_dump()),
    )
    response = _conversion(result)
    if result.label_pending:
        return JSONResponse(status_code=202, content=response.model_dump())
    return response


@router.post("/trackings/{tracking_id}/provision", response_model=ProvisioningResponse)
async def provision_tracking(
    tracking_id: UUID,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.provision_tracking(identity.user_id, identity.tenant_id, tracking_id)
    response = _provisioning(result)
    if result.label_pending:
        return JSONResponse(status_code=202, content=response.model_dump(mode="json"))
    return response


@router.post("/trackings/{tracking_id}/disable", response_model=TeardownResponse)
async def disable_tracking(
    tracking_id: UUID,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.disable_tracking(identity.user_id, identity.tenant_id, tracking_id)
    return TeardownResponse(
        tracking_id=result.tracking_id,
        deleted=[list(entry) for entry in result.deleted],
        published=result.published,
    )


@router.delete("/trackings/{tracking_id}", response_model=TeardownResponse)
async def delete_tracking(
    tracking_id: UUID,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.delete_tracking(identity.user_id, identity.tenant_id, tracking_id)
    return TeardownResponse(
        tracking_id=result.tracking_id,
        deleted=[list(entry) for entry in result.deleted],
        published=result.published,
    )


@router.delete("/google/ads/accounts/{customer_id}/conversion-actions/{name}", status_code=204)
async def remove_conversion_action(
    customer_id: str,
    name: str,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.remove_conversion_action(
        identity.user_id, identity.tenant_id, customer_id, name
    )


@router.delete("/google/references/{kind}", status_code=204)
async def reset_reference(
    kind: str,
    customer_id: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.reset_reference(
        identity.user_id, identity.tenant_id, kind, customer_id=customer_id
    )
