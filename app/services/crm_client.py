"""
GoHighLevel OAuth / API client.

Wraps the token endpoint (authorization code and refresh grants) and the
few read endpoints the linking flow needs to resolve companies and
locations. Transport errors and 429/5xx responses are retried like the
gateway client; a rejected grant surfaces as `MissingCredentialsError`.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import httpx

from app.core.config import settings
from app.services.errors import GatewayUnavailableError, MissingCredentialsError, NotFoundError
from app.services.http_service import request_with_retries
from app.services.metrics_service import metrics_collector


logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: Optional[str] = None
    company_id: Optional[str] = None
    location_id: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> "TokenPair":
        now = now or datetime.utcnow()
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=data.get("scope"),
            company_id=data.get("companyId"),
            location_id=data.get("locationId"),
            user_id=data.get("userId"),
        )


class CrmOAuthClient(Protocol):
    def build_authorize_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> TokenPair: ...

    async def refresh_access_token(self, refresh_token: str) -> TokenPair: ...

    async def get_installer_details(self, access_token: str) -> Dict[str, Any]: ...

    async def get_installed_locations(
        self, company_id: str, access_token: str
    ) -> List[Dict[str, Any]]: ...

    async def get_location(self, location_id: str, access_token: str) -> Dict[str, Any]: ...


class GhlOAuthClient:
    """OAuth client for the GoHighLevel marketplace app."""

    service_name = "ghl"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = "https://services.leadconnectorhq.com",
        authorize_url: str = "https://marketplace.gohighlevel.com/oauth/chooselocation",
        redirect_uri: str = "",
        scopes: str = "",
        api_version: str = "2021-07-28",
        timeout: float = 15.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

        if not self.configured:
            logger.warning("GoHighLevel OAuth credentials not configured")

    @classmethod
    def from_settings(cls) -> "GhlOAuthClient":
        return cls(
            settings.GHL_CLIENT_ID,
            settings.GHL_CLIENT_SECRET,
            base_url=settings.GHL_BASE_URL,
            authorize_url=settings.GHL_AUTHORIZE_URL,
            redirect_uri=settings.GHL_REDIRECT_URI,
            scopes=settings.GHL_SCOPES,
            api_version=settings.GHL_API_VERSION,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_RETRY_ATTEMPTS,
            base_delay=settings.GATEWAY_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.GATEWAY_RETRY_MAX_DELAY_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def aclose(self):
        await self._client.aclose()

    def build_authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def _bearer_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Version": self.api_version,
            "Accept": "application/json",
        }

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await request_with_retries(
                lambda: self._client.request(method, path, **kwargs),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
                operation=f"GHL {operation}",
            )
        except httpx.RequestError as e:
            metrics_collector.record_gateway_call(self.service_name, operation, "unavailable")
            logger.error(f"GHL {operation} failed after {self.max_attempts} attempts: {e}")
            raise GatewayUnavailableError(f"CRM provider unreachable during {operation}") from e

        outcome = "ok" if response.status_code < 400 else "error"
        metrics_collector.record_gateway_call(self.service_name, operation, outcome)
        return response

    async def _token_request(self, operation: str, form: Dict[str, str]) -> TokenPair:
        if not self.configured:
            raise MissingCredentialsError("CRM OAuth client is not configured")

        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "user_type": "Location",
            **form,
        }
        response = await self._request(
            operation,
            "POST",
            "/oauth/token",
            data=form,
            headers={"Accept": "application/json"},
        )

        if response.status_code in (400, 401, 403):
            logger.warning(f"GHL {operation} rejected: {response.status_code} {response.text[:300]}")
            raise MissingCredentialsError(f"CRM provider rejected the {operation} grant")
        if response.status_code >= 400:
            raise GatewayUnavailableError(
                f"CRM provider error during {operation}: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return TokenPair.from_response(response.json())

    async def exchange_code(self, code: str) -> TokenPair:
        return await self._token_request(
            "exchange_code",
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        return await self._token_request(
            "refresh_token",
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    async def _get_json(self, operation: str, path: str, access_token: str, **kwargs) -> Dict[str, Any]:
        response = await self._request(
            operation, "GET", path, headers=self._bearer_headers(access_token), **kwargs
        )
        if response.status_code == 404:
            raise NotFoundError(f"CRM provider has no resource at {path}")
        if response.status_code in (401, 403):
            raise MissingCredentialsError(f"CRM provider refused the access token for {operation}")
        if response.status_code >= 400:
            raise GatewayUnavailableError(
                f"CRM provider error during {operation}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def get_installer_details(self, access_token: str) -> Dict[str, Any]:
        return await self._get_json("installer_details", "/marketplace/installer", access_token)

    async def get_installed_locations(
        self, company_id: str, access_token: str
    ) -> List[Dict[str, Any]]:
        data = await self._get_json(
            "installed_locations",
            "/oauth/installedLocations",
            access_token,
            params={"companyId": company_id, "isInstalled": "true"},
        )
        return data.get("locations") or []

    async def get_location(self, location_id: str, access_token: str) -> Dict[str, Any]:
        data = await self._get_json("get_location", f"/locations/{location_id}", access_token)
        return data.get("location") or data
