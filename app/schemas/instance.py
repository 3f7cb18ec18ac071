"""Messaging instance schemas."""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from app.models.messaging_instance import ConnectionState


class InstanceCreate(BaseModel):
    crm_link_id: str = Field(..., min_length=1)
    instance_name: str = Field(..., min_length=1, max_length=64)


class InstanceResponse(BaseModel):
    id: str
    crm_link_id: str
    tenant_id: str
    instance_name: str
    gateway_name: str
    state: ConnectionState
    phone_number: Optional[str] = None
    qr_code: Optional[str] = None
    pairing_code: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None
    is_stale: bool
    stale_since: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InstanceListResponse(BaseModel):
    items: List[InstanceResponse]
    total: int


class InstanceRefreshResponse(BaseModel):
    outcome: str
    instance: InstanceResponse
