"""Webhook endpoints for messaging gateway events."""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.api.v1.deps import get_instance_service
from app.core.config import settings
from app.schemas.webhook import GatewayWebhookPayload, WebhookResponse
from app.services.instance_service import InstanceService


logger = logging.getLogger(__name__)

router = APIRouter()


async def verify_gateway_token(
    x_webhook_token: Optional[str] = Header(None, alias="X-Webhook-Token"),
):
    """
    Check the shared secret the gateway sends with each event.

    Skipped when GATEWAY_WEBHOOK_TOKEN is not configured (development).
    """
    expected = settings.GATEWAY_WEBHOOK_TOKEN
    if not expected:
        logger.warning("GATEWAY_WEBHOOK_TOKEN not set, skipping webhook verification")
        return

    if not x_webhook_token or not hmac.compare_digest(x_webhook_token, expected):
        logger.error("Invalid gateway webhook token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token"
        )


@router.post(
    "/gateway",
    response_model=WebhookResponse,
    summary="Messaging Gateway Webhook",
    description="Receives instance events from the messaging gateway; only connection updates are acted on."
)
async def receive_gateway_webhook(
    payload: GatewayWebhookPayload,
    service: InstanceService = Depends(get_instance_service),
    _verified: None = Depends(verify_gateway_token),
) -> WebhookResponse:
    if not payload.is_connection_update:
        return WebhookResponse(success=True, message=f"Event {payload.event} ignored")

    outcome = await service.handle_connection_update(
        payload.instance,
        payload.state,
        payload.phone_number,
        payload.date_time,
    )
    if outcome is None:
        return WebhookResponse(success=True, message=f"Unknown instance {payload.instance}")

    return WebhookResponse(
        success=True,
        message=f"Connection update for {payload.instance} processed",
        outcome=outcome.value,
    )
