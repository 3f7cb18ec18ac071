"""CRM link schemas."""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class CrmLinkCreate(BaseModel):
    """Explicit link with a token pair obtained outside the redirect flow."""
    company_id: str = Field(..., min_length=1)
    location_id: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(None, gt=0, description="Access token lifetime in seconds")
    scopes: Optional[str] = None
    company_name: Optional[str] = None
    location_name: Optional[str] = None


class CrmLinkClaim(BaseModel):
    location_id: str = Field(..., min_length=1)


class CrmLinkResponse(BaseModel):
    """Link as shown to the tenant. Tokens are never returned."""
    id: str
    tenant_id: str
    company_id: str
    location_id: str
    company_name: Optional[str] = None
    location_name: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    has_credentials: bool
    claimed_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CrmLinkListResponse(BaseModel):
    items: List[CrmLinkResponse]
    total: int


class AuthorizeUrlResponse(BaseModel):
    authorize_url: str


class LocationSummary(BaseModel):
    id: str = Field(..., validation_alias="_id")
    name: Optional[str] = None
    address: Optional[str] = None
    is_installed: Optional[bool] = Field(None, validation_alias="isInstalled")

    @classmethod
    def from_provider(cls, data: Dict[str, Any]) -> "LocationSummary":
        payload = dict(data)
        payload.setdefault("_id", payload.get("id"))
        return cls.model_validate(payload)


class CompanyLocationsResponse(BaseModel):
    company_id: str
    locations: List[LocationSummary]
