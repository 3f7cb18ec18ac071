"""Webhook schemas for messaging gateway events."""
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, Dict, Any


CONNECTION_UPDATE_EVENTS = {"connection.update", "CONNECTION_UPDATE"}


class GatewayWebhookPayload(BaseModel):
    """Envelope posted by the Evolution API for instance events."""
    model_config = ConfigDict(extra="allow")

    event: str = Field(..., description="Event name, e.g. connection.update")
    instance: str = Field(..., description="Gateway instance name")
    data: Dict[str, Any] = Field(default_factory=dict)
    date_time: Optional[datetime] = None
    sender: Optional[str] = None

    @property
    def is_connection_update(self) -> bool:
        return self.event in CONNECTION_UPDATE_EVENTS

    @property
    def state(self) -> Optional[str]:
        return self.data.get("state")

    @property
    def phone_number(self) -> Optional[str]:
        return self.data.get("wuid") or self.data.get("ownerJid") or self.sender


class WebhookResponse(BaseModel):
    success: bool
    message: str
    outcome: Optional[str] = None
