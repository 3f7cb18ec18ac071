"""Shared response schemas."""
from pydantic import BaseModel, Field

from app.services.errors import ErrorKind


class ErrorResponse(BaseModel):
    """Body returned for every linking / registry error."""
    error: ErrorKind = Field(..., description="Machine-readable error kind")
    detail: str = Field(..., description="Human-readable explanation")


# OpenAPI `responses=` entries for routes that can raise LinkingError
ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Tenant, link or instance not found"},
    409: {"model": ErrorResponse, "description": "Conflict, duplicate name or invalid state"},
    422: {"model": ErrorResponse, "description": "Missing credentials or invalid input"},
    503: {"model": ErrorResponse, "description": "Gateway or CRM provider unavailable"},
}
