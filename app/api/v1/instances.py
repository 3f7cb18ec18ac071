"""Messaging instance endpoints."""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.v1.auth import get_current_user
from app.api.v1.deps import get_current_tenant_id, get_instance_service
from app.models.user import User, UserRole
from app.schemas.common import ERROR_RESPONSES
from app.schemas.instance import (
    InstanceCreate,
    InstanceListResponse,
    InstanceRefreshResponse,
    InstanceResponse,
)
from app.services.instance_service import InstanceService

logger = logging.getLogger(__name__)

router = APIRouter(responses=ERROR_RESPONSES)


@router.post("", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def create_instance(
    instance_in: InstanceCreate,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    try:
        return await service.create_instance(
            tenant_id, instance_in.crm_link_id, instance_in.instance_name
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.get("", response_model=InstanceListResponse)
async def list_instances(
    crm_link_id: Optional[str] = None,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    instances = await service.list_instances(tenant_id, crm_link_id=crm_link_id)
    return InstanceListResponse(
        items=[InstanceResponse.model_validate(instance) for instance in instances],
        total=len(instances),
    )


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    return await service.get_instance(tenant_id, instance_id)


@router.post("/{instance_id}/connect", response_model=InstanceResponse)
async def connect_instance(
    instance_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    """Request a QR / pairing code; the instance moves to `connecting`."""
    return await service.request_connection(tenant_id, instance_id)


@router.post("/{instance_id}/disconnect", response_model=InstanceResponse)
async def disconnect_instance(
    instance_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    return await service.disconnect(tenant_id, instance_id)


@router.delete("/{instance_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_instance(
    instance_id: str,
    force: bool = Query(False, description="Remove locally even if the gateway is unreachable"),
    current_user: User = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service),
):
    """Requires ADMIN or TENANT_ADMIN role."""
    if current_user.role not in [UserRole.ADMIN, UserRole.TENANT_ADMIN]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can delete messaging instances"
        )

    await service.delete_instance(current_user.tenant_id, instance_id, force=force)


@router.post("/{instance_id}/refresh", response_model=InstanceRefreshResponse)
async def refresh_instance(
    instance_id: str,
    tenant_id: str = Depends(get_current_tenant_id),
    service: InstanceService = Depends(get_instance_service),
):
    """Query the gateway now instead of waiting for the next poll."""
    await service.get_instance(tenant_id, instance_id)
    outcome = await service.refresh_state(instance_id)
    instance = await service.get_instance(tenant_id, instance_id)
    return InstanceRefreshResponse(
        outcome=outcome.value,
        instance=InstanceResponse.model_validate(instance),
    )
