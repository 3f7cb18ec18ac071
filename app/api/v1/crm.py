"""CRM (GoHighLevel) link endpoints."""
from datetime import datetime, timedelta
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.v1.auth import get_current_user
from app.api.v1.deps import get_current_tenant_id, get_linking_service
from app.models.user import User, UserRole
from app.schemas.common import ERROR_RESPONSES
from app.schemas.crm_link import (
    AuthorizeUrlResponse,
    CompanyLocationsResponse,
    CrmLinkClaim,
    CrmLinkCreate,
    CrmLinkListResponse,
    CrmLinkResponse,
    LocationSummary,
)
from app.services.crm_client import TokenPair
from app.services.linking_service import LinkingService

logger = logging.getLogger(__name__)

router = APIRouter(responses=ERROR_RESPONSES)


@router.get("/oauth/authorize", response_model=AuthorizeUrlResponse)
async def get_authorize_url(
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    """Consent URL for installing the app on a location."""
    return AuthorizeUrlResponse(authorize_url=service.build_authorize_url(tenant_id))


@router.get("/oauth/callback", response_model=CrmLinkResponse)
async def oauth_callback(
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    service: LinkingService = Depends(get_linking_service),
):
    """
    Provider redirect target. The signed `state` names the tenant, so this
    route needs no bearer token.
    """
    try:
        return await service.handle_oauth_callback(code, state)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/links", response_model=CrmLinkResponse, status_code=status.HTTP_201_CREATED)
async def create_link(
    link_in: CrmLinkCreate,
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    tokens = TokenPair(
        access_token=link_in.access_token,
        refresh_token=link_in.refresh_token,
        expires_at=(
            datetime.utcnow() + timedelta(seconds=link_in.expires_in)
            if link_in.expires_in else None
        ),
        scopes=link_in.scopes,
    )
    try:
        return await service.complete_oauth_link(
            tenant_id,
            link_in.company_id,
            link_in.location_id,
            tokens,
            company_name=link_in.company_name,
            location_name=link_in.location_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/links/claim", response_model=CrmLinkResponse)
async def claim_link(
    claim_in: CrmLinkClaim,
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    return await service.claim_location(tenant_id, claim_in.location_id)


@router.get("/links", response_model=CrmLinkListResponse)
async def list_links(
    include_revoked: bool = False,
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    links = await service.list_links(tenant_id, include_revoked=include_revoked)
    return CrmLinkListResponse(
        items=[CrmLinkResponse.model_validate(link) for link in links],
        total=len(links),
    )


@router.get("/links/{link_id}", response_model=CrmLinkResponse)
async def get_link(
    link_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    return await service.get_link(tenant_id, link_id)


@router.delete("/links/{link_id}", response_model=CrmLinkResponse)
async def revoke_link(
    link_id: str,
    current_user: User = Depends(get_current_user),
    service: LinkingService = Depends(get_linking_service),
):
    """
    Soft-revoke a link; refused while instances still use it.

    Requires ADMIN or TENANT_ADMIN role.
    """
    if current_user.role not in [UserRole.ADMIN, UserRole.TENANT_ADMIN]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can revoke CRM links"
        )

    return await service.revoke_link(current_user.tenant_id, link_id)


@router.get("/companies/{company_id}/locations", response_model=CompanyLocationsResponse)
async def list_company_locations(
    company_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: LinkingService = Depends(get_linking_service),
):
    locations = await service.list_company_locations(tenant_id, company_id)
    return CompanyLocationsResponse(
        company_id=company_id,
        locations=[LocationSummary.from_provider(loc) for loc in locations],
    )
