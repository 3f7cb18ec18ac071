"""
Tests for Gateway Webhook Processing and Token Verification

Tests cover:
- Shared-token verification on the webhook endpoint
- connection.update handling for known and unknown instances
- Ignoring events other than connection updates
- Payload parsing
"""
import pytest
from datetime import datetime, timezone
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import patch

from app.core.config import settings
from app.models.messaging_instance import ConnectionState
from app.schemas.webhook import GatewayWebhookPayload
from tests.conftest import InstanceFactory


WEBHOOK_URL = "/api/v1/webhooks/gateway"


def connection_update(gateway_name: str, state: str, **data) -> dict:
    return {
        "event": "connection.update",
        "instance": gateway_name,
        "data": {"instance": gateway_name, "state": state, **data},
        "server_url": "http://evolution.test",
        "apikey": "instance-api-key",
    }


# -----------------------------------------------------------------------------
# Token Verification Tests
# -----------------------------------------------------------------------------

class TestTokenVerification:
    """Tests for the shared webhook token."""

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, client: AsyncClient):
        with patch.object(settings, "GATEWAY_WEBHOOK_TOKEN", "hook-secret"):
            response = await client.post(WEBHOOK_URL, json=connection_update("agency-1", "open"))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, client: AsyncClient):
        with patch.object(settings, "GATEWAY_WEBHOOK_TOKEN", "hook-secret"):
            response = await client.post(
                WEBHOOK_URL,
                json=connection_update("agency-1", "open"),
                headers={"X-Webhook-Token": "guess"}
            )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_token_accepted(self, client: AsyncClient):
        with patch.object(settings, "GATEWAY_WEBHOOK_TOKEN", "hook-secret"):
            response = await client.post(
                WEBHOOK_URL,
                json=connection_update("agency-1", "open"),
                headers={"X-Webhook-Token": "hook-secret"}
            )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_verification_skipped_when_unconfigured(self, client: AsyncClient):
        with patch.object(settings, "GATEWAY_WEBHOOK_TOKEN", ""):
            response = await client.post(WEBHOOK_URL, json=connection_update("agency-1", "open"))

        assert response.status_code == 200


# -----------------------------------------------------------------------------
# Event Processing Tests
# -----------------------------------------------------------------------------

class TestConnectionUpdates:
    """Tests for connection.update processing."""

    @pytest.mark.asyncio
    async def test_connecting_instance_connected(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_tenant,
        test_link
    ):
        instance = await InstanceFactory.create(
            db_session, tenant_id=test_tenant.id, crm_link_id=test_link.id, state=ConnectionState.CONNECTING
        )

        response = await client.post(
            WEBHOOK_URL,
            json=connection_update(instance.gateway_name, "open", wuid="18095551234@s.whatsapp.net")
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        await db_session.refresh(instance)
        assert instance.state == ConnectionState.CONNECTED
        assert instance.phone_number == "+18095551234"

    @pytest.mark.asyncio
    async def test_connected_instance_closed(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_tenant,
        test_link
    ):
        instance = await InstanceFactory.create(
            db_session, tenant_id=test_tenant.id, crm_link_id=test_link.id, state=ConnectionState.CONNECTED
        )

        response = await client.post(
            WEBHOOK_URL,
            json=connection_update(instance.gateway_name, "close", statusReason=401)
        )

        assert response.json()["outcome"] == "applied"
        await db_session.refresh(instance)
        assert instance.state == ConnectionState.DISCONNECTED
        assert instance.disconnected_at is not None

    @pytest.mark.asyncio
    async def test_illegal_jump_rejected(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_tenant,
        test_link
    ):
        instance = await InstanceFactory.create(db_session, tenant_id=test_tenant.id, crm_link_id=test_link.id)

        response = await client.post(WEBHOOK_URL, json=connection_update(instance.gateway_name, "open"))

        assert response.json()["outcome"] == "rejected"
        await db_session.refresh(instance)
        assert instance.state == ConnectionState.CREATED

    @pytest.mark.asyncio
    async def test_unknown_instance_acknowledged(self, client: AsyncClient):
        response = await client.post(WEBHOOK_URL, json=connection_update("nobody-here", "open"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["outcome"] is None

    @pytest.mark.asyncio
    async def test_other_events_ignored(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_tenant,
        test_link
    ):
        instance = await InstanceFactory.create(
            db_session, tenant_id=test_tenant.id, crm_link_id=test_link.id, state=ConnectionState.CONNECTING
        )

        response = await client.post(
            WEBHOOK_URL,
            json={
                "event": "qrcode.updated",
                "instance": instance.gateway_name,
                "data": {"qrcode": {"base64": "data:image/png;base64,AAAA"}},
            }
        )

        assert response.status_code == 200
        assert "ignored" in response.json()["message"]
        await db_session.refresh(instance)
        assert instance.state == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client: AsyncClient):
        response = await client.post(WEBHOOK_URL, json={"data": {}})
        assert response.status_code == 422


class TestPayloadParsing:
    """Tests for the webhook envelope."""

    def test_phone_number_sources(self):
        payload = GatewayWebhookPayload.model_validate({
            "event": "CONNECTION_UPDATE",
            "instance": "agency-1",
            "data": {"state": "open"},
            "sender": "18095551234@s.whatsapp.net",
        })

        assert payload.is_connection_update is True
        assert payload.state == "open"
        assert payload.phone_number == "18095551234@s.whatsapp.net"

    def test_date_time_parsed(self):
        payload = GatewayWebhookPayload.model_validate({
            "event": "connection.update",
            "instance": "agency-1",
            "data": {},
            "date_time": "2026-10-19T12:00:00.000Z",
        })

        assert payload.date_time == datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
