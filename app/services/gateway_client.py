"""
Messaging gateway client (Evolution API).

`MessagingGateway` is the capability the instance registry and poller
depend on; `EvolutionGatewayClient` is the production implementation.
Every call is retried with bounded backoff and ends in either a parsed
result, `NotFoundError` (gateway does not know the instance) or
`GatewayUnavailableError`.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from app.core.config import settings
from app.models.messaging_instance import ConnectionState
from app.services.errors import GatewayUnavailableError, NotFoundError
from app.services.http_service import request_with_retries
from app.services.metrics_service import metrics_collector


logger = logging.getLogger(__name__)


# Evolution connection states -> local states
GATEWAY_STATE_MAP = {
    "open": ConnectionState.CONNECTED,
    "connecting": ConnectionState.CONNECTING,
    "close": ConnectionState.DISCONNECTED,
    "closed": ConnectionState.DISCONNECTED,
}

_PHONE_SEPARATORS = re.compile(r"[\s\-\(\)]")


def extract_phone_number(value: Optional[str]) -> Optional[str]:
    """
    Normalize a gateway phone value to `+<digits>`.

    Accepts plain numbers, `+` prefixed numbers and WhatsApp JIDs such as
    `553198296801@s.whatsapp.net`. Returns None for anything that is not
    10-15 digits.
    """
    if not value:
        return None

    cleaned = _PHONE_SEPARATORS.sub("", value.strip())
    if "@" in cleaned:
        cleaned = cleaned.split("@")[0]
    # Multi-device JIDs carry a device suffix: 5531...:12@s.whatsapp.net
    if ":" in cleaned:
        cleaned = cleaned.split(":")[0]
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]

    if not cleaned.isdigit() or not 10 <= len(cleaned) <= 15:
        return None
    return f"+{cleaned}"


def map_gateway_state(raw_state: Optional[str]) -> Optional[ConnectionState]:
    if not raw_state:
        return None
    return GATEWAY_STATE_MAP.get(raw_state.lower())


@dataclass
class QRCode:
    code: Optional[str]
    base64: Optional[str] = None
    pairing_code: Optional[str] = None


@dataclass
class GatewayConnectionState:
    raw_state: Optional[str]
    state: Optional[ConnectionState]
    phone_number: Optional[str] = None


class MessagingGateway(Protocol):
    async def create_instance(self, name: str) -> Dict[str, Any]: ...

    async def get_qr_code(self, name: str) -> QRCode: ...

    async def get_connection_state(self, name: str) -> GatewayConnectionState: ...

    async def delete_instance(self, name: str) -> None: ...

    async def logout(self, name: str) -> None: ...


class EvolutionGatewayClient:
    """HTTP client for the Evolution API, authenticated with a static `apikey` header."""

    service_name = "evolution"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        integration: str = "WHATSAPP-BAILEYS",
        webhook_url: Optional[str] = None,
        webhook_token: Optional[str] = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.integration = integration
        self.webhook_url = webhook_url
        self.webhook_token = webhook_token
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        if self.configured:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"apikey": api_key, "Content-Type": "application/json"},
                timeout=timeout,
                transport=transport,
            )

    @classmethod
    def from_settings(cls) -> "EvolutionGatewayClient":
        return cls(
            settings.EVOLUTION_API_URL,
            settings.EVOLUTION_API_KEY,
            integration=settings.EVOLUTION_INTEGRATION,
            webhook_url=settings.GATEWAY_WEBHOOK_URL or None,
            webhook_token=settings.GATEWAY_WEBHOOK_TOKEN or None,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_RETRY_ATTEMPTS,
            base_delay=settings.GATEWAY_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.GATEWAY_RETRY_MAX_DELAY_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._client is None:
            raise GatewayUnavailableError(
                "Messaging gateway is not configured (EVOLUTION_API_URL / EVOLUTION_API_KEY)"
            )

        try:
            response = await request_with_retries(
                lambda: self._client.request(method, path, json=json, params=params),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
                operation=f"Evolution {operation}",
            )
        except httpx.RequestError as e:
            metrics_collector.record_gateway_call(self.service_name, operation, "unavailable")
            logger.error(f"Evolution {operation} failed after {self.max_attempts} attempts: {e}")
            raise GatewayUnavailableError(f"Messaging gateway unreachable during {operation}") from e

        if response.status_code == 404:
            metrics_collector.record_gateway_call(self.service_name, operation, "not_found")
            raise NotFoundError(f"Gateway has no resource for {operation} ({path})")

        if response.status_code >= 400:
            metrics_collector.record_gateway_call(self.service_name, operation, "error")
            logger.error(
                f"Evolution {operation} returned {response.status_code}: {response.text[:500]}"
            )
            raise GatewayUnavailableError(
                f"Messaging gateway error during {operation}: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        metrics_collector.record_gateway_call(self.service_name, operation, "ok")
        if not response.content:
            return None
        return response.json()

    async def create_instance(self, name: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "instanceName": name,
            "integration": self.integration,
            "qrcode": True,
        }
        if self.webhook_url:
            webhook: Dict[str, Any] = {
                "url": self.webhook_url,
                "byEvents": False,
                "events": ["CONNECTION_UPDATE"],
            }
            if self.webhook_token:
                webhook["headers"] = {"X-Webhook-Token": self.webhook_token}
            body["webhook"] = webhook

        data = await self._request("create_instance", "POST", "/instance/create", json=body)
        instance = (data or {}).get("instance", {})
        return {
            "instance_name": instance.get("instanceName", name),
            "status": instance.get("status"),
        }

    async def get_qr_code(self, name: str) -> QRCode:
        data = await self._request("get_qr_code", "GET", f"/instance/connect/{name}") or {}
        return QRCode(
            code=data.get("code"),
            base64=data.get("base64"),
            pairing_code=data.get("pairingCode"),
        )

    async def get_instance_info(self, name: str) -> Dict[str, Any]:
        data = await self._request(
            "fetch_instances", "GET", "/instance/fetchInstances", params={"instanceName": name}
        )
        if not data:
            raise NotFoundError(f"Instance {name} not found on gateway")
        return data[0] if isinstance(data, list) else data

    async def get_connection_state(self, name: str) -> GatewayConnectionState:
        data = await self._request(
            "get_connection_state", "GET", f"/instance/connectionState/{name}"
        ) or {}
        raw_state = (data.get("instance") or {}).get("state") or data.get("state")
        state = map_gateway_state(raw_state)

        phone_number = None
        if state == ConnectionState.CONNECTED:
            try:
                info = await self.get_instance_info(name)
                phone_number = extract_phone_number(info.get("ownerJid") or info.get("number"))
            except (GatewayUnavailableError, NotFoundError) as e:
                # State is still authoritative without the number
                logger.warning(f"Could not fetch phone number for instance {name}: {e}")

        return GatewayConnectionState(raw_state=raw_state, state=state, phone_number=phone_number)

    async def delete_instance(self, name: str) -> None:
        await self._request("delete_instance", "DELETE", f"/instance/delete/{name}")

    async def logout(self, name: str) -> None:
        await self._request("logout", "DELETE", f"/instance/logout/{name}")
