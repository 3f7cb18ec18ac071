"""
Linking Service Module

Binds GoHighLevel locations to tenants and keeps their OAuth credentials
usable. A location can be held by at most one active link; the partial
unique index on `crm_links.location_id` is the final arbiter when two
tenants race for the same location.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import create_oauth_state, decode_oauth_state
from app.models.crm_link import CrmLink
from app.models.messaging_instance import MessagingInstance
from app.models.tenant import Tenant
from app.services.crm_client import CrmOAuthClient, TokenPair
from app.services.errors import (
    ConflictError,
    GatewayUnavailableError,
    InvalidStateError,
    LinkingError,
    MissingCredentialsError,
    NotFoundError,
)
from app.services.metrics_service import metrics_collector


logger = logging.getLogger(__name__)


class LinkingService:
    """
    Orchestrates CRM location claims for tenants.

    Provides methods for:
    - Completing an OAuth install (create or idempotent relink)
    - Claiming a location that already has stored credentials
    - Keeping access tokens fresh
    - Revoking links on uninstall
    """

    def __init__(
        self,
        db: AsyncSession,
        crm_client: Optional[CrmOAuthClient] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            db: Async database session
            crm_client: OAuth provider client; only needed for token and lookup calls
            clock: Returns the current naive UTC time
        """
        self.db = db
        self.crm_client = crm_client
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _require_active_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def _get_active_link(self, location_id: str) -> Optional[CrmLink]:
        result = await self.db.execute(
            select(CrmLink).where(
                and_(
                    CrmLink.location_id == location_id,
                    CrmLink.revoked_at.is_(None),
                )
            )
        )
        return result.scalar_one_or_none()

    async def _get_latest_revoked_link(self, tenant_id: str, location_id: str) -> Optional[CrmLink]:
        result = await self.db.execute(
            select(CrmLink)
            .where(
                and_(
                    CrmLink.tenant_id == tenant_id,
                    CrmLink.location_id == location_id,
                    CrmLink.revoked_at.is_not(None),
                )
            )
            .order_by(CrmLink.revoked_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_links(self, tenant_id: str, include_revoked: bool = False) -> List[CrmLink]:
        query = select(CrmLink).where(CrmLink.tenant_id == tenant_id)
        if not include_revoked:
            query = query.where(CrmLink.revoked_at.is_(None))
        result = await self.db.execute(query.order_by(CrmLink.claimed_at.desc()))
        return list(result.scalars().all())

    async def get_link(self, tenant_id: str, link_id: str) -> CrmLink:
        link = await self.db.get(CrmLink, link_id)
        if link is None or link.tenant_id != tenant_id:
            raise NotFoundError(f"CRM link {link_id} not found")
        return link

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _apply_tokens(self, link: CrmLink, tokens: TokenPair):
        link.access_token = tokens.access_token
        if tokens.refresh_token:
            link.refresh_token = tokens.refresh_token
        link.token_expires_at = tokens.expires_at
        if tokens.scopes:
            link.scopes = tokens.scopes
        link.last_refreshed_at = self.clock()

    async def _resolve_lost_insert(
        self,
        tenant_id: str,
        location_id: str,
        tokens: Optional[TokenPair],
    ) -> CrmLink:
        """Re-read the winning row after a unique-index violation on `location_id`."""
        winner = await self._get_active_link(location_id)
        if winner is None or winner.tenant_id != tenant_id:
            metrics_collector.record_link_claim("conflict")
            logger.warning(
                f"Location {location_id} claimed concurrently by another tenant; "
                f"rejecting tenant {tenant_id}"
            )
            raise ConflictError(f"Location {location_id} is already linked to another tenant")

        if tokens is not None:
            self._apply_tokens(winner, tokens)
            await self.db.commit()
        metrics_collector.record_link_claim("relinked")
        return winner

    async def complete_oauth_link(
        self,
        tenant_id: str,
        company_id: str,
        location_id: str,
        tokens: TokenPair,
        *,
        company_name: Optional[str] = None,
        location_name: Optional[str] = None,
        external_user_id: Optional[str] = None,
    ) -> CrmLink:
        """
        Record a finished OAuth install for `location_id`.

        No active link creates one owned by the tenant; an active link of the
        same tenant gets the new token pair; an active link of another tenant
        raises `ConflictError`. Messaging instances are never created here.
        """
        if not location_id:
            raise ValueError("location_id must not be empty")
        if not tokens.access_token:
            raise MissingCredentialsError("OAuth response did not include an access token")

        await self._require_active_tenant(tenant_id)

        existing = await self._get_active_link(location_id)
        if existing is not None:
            if existing.tenant_id != tenant_id:
                metrics_collector.record_link_claim("conflict")
                logger.warning(
                    f"Tenant {tenant_id} tried to link location {location_id} "
                    f"owned by tenant {existing.tenant_id}"
                )
                raise ConflictError(f"Location {location_id} is already linked to another tenant")

            self._apply_tokens(existing, tokens)
            if company_id:
                existing.company_id = company_id
            existing.company_name = company_name or existing.company_name
            existing.location_name = location_name or existing.location_name
            existing.external_user_id = external_user_id or existing.external_user_id
            await self.db.commit()

            metrics_collector.record_link_claim("relinked")
            logger.info(f"Refreshed link {existing.id} for location {location_id} (tenant {tenant_id})")
            return existing

        now = self.clock()
        link = CrmLink(
            tenant_id=tenant_id,
            company_id=company_id,
            location_id=location_id,
            company_name=company_name,
            location_name=location_name,
            external_user_id=external_user_id,
            claimed_at=now,
        )
        self._apply_tokens(link, tokens)
        self.db.add(link)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return await self._resolve_lost_insert(tenant_id, location_id, tokens)

        await self.db.refresh(link)
        metrics_collector.record_link_claim("created")
        logger.info(f"Linked location {location_id} to tenant {tenant_id} (link {link.id})")
        return link

    async def claim_location(self, tenant_id: str, location_id: str) -> CrmLink:
        """
        Claim a location using credentials already on file.

        Returns the tenant's active link when it has credentials, otherwise
        reactivates the tenant's most recently revoked link for the location
        if it still holds a token pair.
        """
        if not location_id:
            raise ValueError("location_id must not be empty")

        await self._require_active_tenant(tenant_id)

        existing = await self._get_active_link(location_id)
        if existing is not None:
            if existing.tenant_id != tenant_id:
                metrics_collector.record_link_claim("conflict")
                logger.warning(
                    f"Tenant {tenant_id} tried to claim location {location_id} "
                    f"owned by tenant {existing.tenant_id}"
                )
                raise ConflictError(f"Location {location_id} is already linked to another tenant")
            if not existing.has_credentials:
                raise MissingCredentialsError(
                    f"Location {location_id} has no stored credentials; complete the OAuth install"
                )
            metrics_collector.record_link_claim("unchanged")
            return existing

        previous = await self._get_latest_revoked_link(tenant_id, location_id)
        if previous is None or not previous.has_credentials:
            metrics_collector.record_link_claim("missing_credentials")
            raise MissingCredentialsError(
                f"No credentials on file for location {location_id}; complete the OAuth install"
            )

        link_id = previous.id
        previous.revoked_at = None
        previous.claimed_at = self.clock()

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return await self._resolve_lost_insert(tenant_id, location_id, None)

        metrics_collector.record_link_claim("reactivated")
        logger.info(f"Reactivated link {link_id} for location {location_id} (tenant {tenant_id})")
        return previous

    async def revoke_link(self, tenant_id: str, link_id: str) -> CrmLink:
        """Soft-revoke a link (app uninstall). Refused while instances still use it."""
        link = await self.get_link(tenant_id, link_id)
        if link.is_revoked:
            return link

        result = await self.db.execute(
            select(func.count(MessagingInstance.id)).where(MessagingInstance.crm_link_id == link_id)
        )
        instance_count = result.scalar() or 0
        if instance_count:
            raise InvalidStateError(
                f"CRM link {link_id} still has {instance_count} messaging instance(s); delete them first"
            )

        link.revoked_at = self.clock()
        await self.db.commit()

        logger.info(f"Revoked link {link_id} for location {link.location_id} (tenant {tenant_id})")
        return link

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _require_crm_client(self) -> CrmOAuthClient:
        if self.crm_client is None:
            raise GatewayUnavailableError("CRM provider client is not available")
        return self.crm_client

    def build_authorize_url(self, tenant_id: str) -> str:
        client = self._require_crm_client()
        return client.build_authorize_url(create_oauth_state(tenant_id))

    async def handle_oauth_callback(self, code: str, state: str) -> CrmLink:
        """
        Finish the provider redirect: verify `state`, exchange the code and
        link the resulting location. Nothing is written unless the exchange
        succeeds, so a failed callback can be retried as-is.
        """
        tenant_id = decode_oauth_state(state)
        if tenant_id is None:
            raise InvalidStateError("OAuth state is invalid or expired")

        client = self._require_crm_client()
        tokens = await client.exchange_code(code)

        company_id = tokens.company_id
        location_id = tokens.location_id
        company_name = None
        location_name = None
        external_user_id = tokens.user_id

        if not company_id or not location_id:
            installer: Dict[str, Any] = await client.get_installer_details(tokens.access_token)
            company = installer.get("company") or {}
            location = installer.get("location") or {}
            user = installer.get("user") or {}
            company_id = company_id or company.get("id")
            company_name = company.get("name")
            location_id = location_id or location.get("id")
            location_name = location.get("name")
            external_user_id = external_user_id or user.get("id")

        if not location_id:
            raise ValueError("OAuth install did not identify a location")

        if not location_name:
            try:
                location = await client.get_location(location_id, tokens.access_token)
                location_name = location.get("name")
            except LinkingError as e:
                logger.warning(f"Could not fetch details for location {location_id}: {e.message}")

        return await self.complete_oauth_link(
            tenant_id,
            company_id or "",
            location_id,
            tokens,
            company_name=company_name,
            location_name=location_name,
            external_user_id=external_user_id,
        )

    async def get_valid_access_token(self, link: CrmLink) -> str:
        """Return a usable access token, refreshing it when it is about to expire."""
        skew = timedelta(seconds=settings.TOKEN_REFRESH_SKEW_SECONDS)
        now = self.clock()
        if link.access_token and (
            link.token_expires_at is None or link.token_expires_at - skew > now
        ):
            return link.access_token

        if not link.refresh_token:
            raise MissingCredentialsError(
                f"Access token for location {link.location_id} expired and no refresh token is stored"
            )

        client = self._require_crm_client()
        tokens = await client.refresh_access_token(link.refresh_token)
        self._apply_tokens(link, tokens)
        await self.db.commit()

        logger.info(f"Refreshed access token for location {link.location_id}")
        return link.access_token

    async def list_company_locations(self, tenant_id: str, company_id: str) -> List[Dict[str, Any]]:
        """Locations of `company_id` that have the app installed, via one of the tenant's links."""
        result = await self.db.execute(
            select(CrmLink)
            .where(
                and_(
                    CrmLink.tenant_id == tenant_id,
                    CrmLink.company_id == company_id,
                    CrmLink.revoked_at.is_(None),
                )
            )
            .order_by(CrmLink.claimed_at.desc())
            .limit(1)
        )
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError(f"No active CRM link for company {company_id}")

        access_token = await self.get_valid_access_token(link)
        return await self._require_crm_client().get_installed_locations(company_id, access_token)
