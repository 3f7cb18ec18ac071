"""
Instance Service Module

Registry of messaging instances and the state reconciliation rules that
keep them in step with the messaging gateway. Remote calls always happen
before local writes, and no transaction is held open while awaiting the
gateway.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional, Union
import enum
import logging
import re
import uuid

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.crm_link import CrmLink
from app.models.messaging_instance import (
    MessagingInstance,
    ConnectionState,
    POLLED_STATES,
    is_allowed_transition,
)
from app.services.errors import (
    DuplicateNameError,
    GatewayUnavailableError,
    InvalidStateError,
    NotFoundError,
)
from app.services.gateway_client import MessagingGateway, extract_phone_number, map_gateway_state
from app.services.metrics_service import metrics_collector


logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"  # state moved
    UNCHANGED = "unchanged"  # report accepted, same state
    REJECTED = "rejected"  # illegal transition, state kept
    OUTDATED = "outdated"  # not newer than the last accepted report
    STALE = "stale"  # no report could be obtained; instance flagged


# States a tenant may request a new QR / pairing code from
CONNECTABLE_STATES = (ConnectionState.CREATED, ConnectionState.DISCONNECTED)

_NAME_SLUG = re.compile(r"[^a-z0-9]+")


def gateway_instance_name(instance_name: str) -> str:
    """
    Name for a new instance on the gateway.

    A readable slug plus a random suffix, so every create attempt owns its
    remote instance and cleaning up after a lost name race never touches
    the winner's.
    """
    slug = _NAME_SLUG.sub("-", instance_name.lower()).strip("-")[:40] or "instance"
    return f"{slug}-{uuid.uuid4().hex[:12]}"


class InstanceService:
    """
    Service for messaging instances.

    Provides methods for:
    - Creating and deleting instances on the gateway and locally
    - Requesting a QR / pairing code and disconnecting
    - Reconciling gateway state reports (poller, webhook, manual refresh)
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: MessagingGateway,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            db: Async database session
            gateway: Messaging gateway capability
            clock: Returns the current naive UTC time
        """
        self.db = db
        self.gateway = gateway
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_instance(self, tenant_id: str, instance_id: str) -> MessagingInstance:
        instance = await self.db.get(MessagingInstance, instance_id)
        if instance is None or instance.tenant_id != tenant_id:
            raise NotFoundError(f"Messaging instance {instance_id} not found")
        return instance

    async def list_instances(
        self,
        tenant_id: str,
        crm_link_id: Optional[str] = None,
    ) -> List[MessagingInstance]:
        query = select(MessagingInstance).where(MessagingInstance.tenant_id == tenant_id)
        if crm_link_id:
            query = query.where(MessagingInstance.crm_link_id == crm_link_id)
        result = await self.db.execute(query.order_by(MessagingInstance.created_at.asc()))
        return list(result.scalars().all())

    async def list_pollable_instance_ids(self) -> List[str]:
        result = await self.db.execute(
            select(MessagingInstance.id)
            .where(MessagingInstance.state.in_(POLLED_STATES))
            .order_by(MessagingInstance.last_reconciled_at.asc())
        )
        return list(result.scalars().all())

    async def _name_taken(self, tenant_id: str, instance_name: str) -> bool:
        result = await self.db.execute(
            select(MessagingInstance.id).where(
                and_(
                    MessagingInstance.tenant_id == tenant_id,
                    MessagingInstance.instance_name == instance_name,
                )
            )
        )
        return result.first() is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        tenant_id: str,
        crm_link_id: str,
        instance_name: str,
    ) -> MessagingInstance:
        """
        Create an instance on the gateway, then record it in `created`.

        A gateway failure leaves no local row. Losing the per-tenant name
        race after the remote create removes the remote instance again.
        """
        name = (instance_name or "").strip()
        if not name:
            raise ValueError("instance_name must not be empty")

        link = await self.db.get(CrmLink, crm_link_id)
        if link is None or link.tenant_id != tenant_id or link.is_revoked:
            raise NotFoundError(f"Active CRM link {crm_link_id} not found")

        if await self._name_taken(tenant_id, name):
            raise DuplicateNameError(f"An instance named '{name}' already exists")

        gateway_name = gateway_instance_name(name)
        try:
            await self.gateway.create_instance(gateway_name)
        except GatewayUnavailableError as e:
            # Evolution answers 403 when the instance name is already in use
            if e.status_code != 403:
                raise
            logger.warning(f"Gateway refused instance name {gateway_name} as already in use")
            raise DuplicateNameError(f"An instance named '{name}' already exists on the gateway")

        instance = MessagingInstance(
            crm_link_id=crm_link_id,
            tenant_id=tenant_id,
            instance_name=name,
            gateway_name=gateway_name,
            state=ConnectionState.CREATED,
        )
        self.db.add(instance)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(
                f"Instance name '{name}' taken concurrently for tenant {tenant_id}; "
                f"removing gateway instance {gateway_name}"
            )
            await self._delete_remote_best_effort(gateway_name)
            raise DuplicateNameError(f"An instance named '{name}' already exists")

        await self.db.refresh(instance)
        logger.info(
            f"Created instance {instance.id} ({gateway_name}) on link {crm_link_id} for tenant {tenant_id}"
        )
        return instance

    async def _delete_remote_best_effort(self, gateway_name: str):
        try:
            await self.gateway.delete_instance(gateway_name)
        except (GatewayUnavailableError, NotFoundError) as e:
            logger.error(f"Could not remove orphaned gateway instance {gateway_name}: {e}")

    async def request_connection(self, tenant_id: str, instance_id: str) -> MessagingInstance:
        """Fetch a QR / pairing code and move the instance to `connecting`."""
        instance = await self.get_instance(tenant_id, instance_id)
        if instance.state not in CONNECTABLE_STATES:
            raise InvalidStateError(
                f"Cannot connect instance in state '{instance.state.value}'; disconnect it first"
            )

        qr = await self.gateway.get_qr_code(instance.gateway_name)

        # A webhook or poll may have moved the instance while we waited
        await self.db.refresh(instance)
        if instance.state not in CONNECTABLE_STATES:
            raise InvalidStateError(
                f"Instance moved to '{instance.state.value}' while requesting a QR code"
            )

        instance.state = ConnectionState.CONNECTING
        instance.qr_code = qr.base64 or qr.code
        instance.pairing_code = qr.pairing_code
        await self.db.commit()

        logger.info(f"Instance {instance_id} is waiting for QR scan")
        return instance

    async def disconnect(self, tenant_id: str, instance_id: str) -> MessagingInstance:
        """
        Log the instance out on the gateway, then mark it `disconnected`.

        Already-disconnected instances are returned untouched.
        """
        instance = await self.get_instance(tenant_id, instance_id)
        if instance.state == ConnectionState.DISCONNECTED:
            return instance

        try:
            await self.gateway.logout(instance.gateway_name)
        except NotFoundError:
            logger.warning(f"Gateway does not know instance {instance.gateway_name}; disconnecting locally")
        except GatewayUnavailableError as e:
            # 400 means the gateway holds no open session for the instance
            if e.status_code != 400:
                raise
            logger.info(f"Instance {instance.gateway_name} had no open session on the gateway")

        now = self.clock()
        instance.state = ConnectionState.DISCONNECTED
        instance.disconnected_at = now
        instance.qr_code = None
        instance.pairing_code = None
        await self.db.commit()

        logger.info(f"Disconnected instance {instance_id}")
        return instance

    async def delete_instance(self, tenant_id: str, instance_id: str, force: bool = False):
        """
        Delete the instance on the gateway, then locally.

        A gateway 404 counts as already deleted. With `force`, an unreachable
        gateway does not keep the local row alive.
        """
        instance = await self.get_instance(tenant_id, instance_id)
        gateway_name = instance.gateway_name

        try:
            await self.gateway.delete_instance(gateway_name)
        except NotFoundError:
            logger.info(f"Gateway instance {gateway_name} already gone")
        except GatewayUnavailableError:
            if not force:
                raise
            logger.warning(f"Force-deleting instance {instance_id}; gateway instance {gateway_name} may remain")

        await self.db.delete(instance)
        await self.db.commit()
        logger.info(f"Deleted instance {instance_id} ({gateway_name})")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_state(
        self,
        instance_id: str,
        observed_state: Optional[Union[ConnectionState, str]],
        observed_phone_number: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Apply a gateway state report.

        Reports not newer than `last_reconciled_at` are dropped. Newer ones
        clear the stale flag and record the phone number; the state itself
        only moves along an allowed transition.
        """
        instance = await self.db.get(MessagingInstance, instance_id)
        if instance is None:
            raise NotFoundError(f"Messaging instance {instance_id} not found")

        if isinstance(observed_state, str) and not isinstance(observed_state, ConnectionState):
            observed_state = ConnectionState(observed_state)
        observed_at = observed_at or self.clock()
        if observed_at.tzinfo is not None:
            observed_at = observed_at.astimezone(timezone.utc).replace(tzinfo=None)

        if instance.last_reconciled_at is not None and observed_at <= instance.last_reconciled_at:
            metrics_collector.record_reconciliation(ReconcileOutcome.OUTDATED.value)
            logger.debug(
                f"Ignoring outdated report for instance {instance_id} "
                f"({observed_at.isoformat()} <= {instance.last_reconciled_at.isoformat()})"
            )
            return ReconcileOutcome.OUTDATED

        instance.last_reconciled_at = observed_at
        instance.is_stale = False
        instance.stale_since = None

        if observed_phone_number:
            phone_number = extract_phone_number(observed_phone_number)
            if phone_number:
                instance.phone_number = phone_number
            else:
                logger.warning(f"Ignoring malformed phone number for instance {instance_id}")

        current = instance.state
        if observed_state is None or observed_state == current:
            outcome = ReconcileOutcome.UNCHANGED
        elif is_allowed_transition(current, observed_state):
            instance.state = observed_state
            if observed_state == ConnectionState.CONNECTED:
                instance.connected_at = observed_at
                instance.qr_code = None
                instance.pairing_code = None
            elif observed_state == ConnectionState.DISCONNECTED:
                instance.disconnected_at = observed_at
            outcome = ReconcileOutcome.APPLIED
            logger.info(f"Instance {instance_id}: {current.value} -> {observed_state.value}")
        else:
            outcome = ReconcileOutcome.REJECTED
            logger.warning(
                f"Rejected transition for instance {instance_id}: "
                f"{current.value} -> {observed_state.value}"
            )

        await self.db.commit()
        metrics_collector.record_reconciliation(outcome.value)
        return outcome

    async def mark_stale(self, instance_id: str, at: Optional[datetime] = None):
        """Flag an instance whose gateway state could not be read. State is kept."""
        instance = await self.db.get(MessagingInstance, instance_id)
        if instance is None:
            raise NotFoundError(f"Messaging instance {instance_id} not found")
        if instance.is_stale:
            return

        instance.is_stale = True
        instance.stale_since = at or self.clock()
        await self.db.commit()
        metrics_collector.record_reconciliation(ReconcileOutcome.STALE.value)
        logger.warning(f"Instance {instance_id} marked stale")

    async def refresh_state(
        self,
        instance_id: str,
        observed_at: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """Ask the gateway for the current state and reconcile it, or flag the instance stale."""
        instance = await self.db.get(MessagingInstance, instance_id)
        if instance is None:
            raise NotFoundError(f"Messaging instance {instance_id} not found")
        gateway_name = instance.gateway_name
        observed_at = observed_at or self.clock()

        try:
            report = await self.gateway.get_connection_state(gateway_name)
        except (GatewayUnavailableError, NotFoundError) as e:
            logger.warning(f"State query for instance {gateway_name} failed: {e.message}")
            await self.mark_stale(instance_id, observed_at)
            return ReconcileOutcome.STALE

        if report.state is None and report.raw_state:
            logger.warning(f"Unknown gateway state '{report.raw_state}' for instance {gateway_name}")

        return await self.reconcile_state(
            instance_id, report.state, report.phone_number, observed_at
        )

    async def handle_connection_update(
        self,
        gateway_name: str,
        raw_state: Optional[str],
        phone_number: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> Optional[ReconcileOutcome]:
        """Reconcile a `connection.update` pushed by the gateway. Unknown instances are ignored."""
        result = await self.db.execute(
            select(MessagingInstance.id).where(MessagingInstance.gateway_name == gateway_name)
        )
        instance_id = result.scalar_one_or_none()
        if instance_id is None:
            logger.info(f"Ignoring connection update for unknown gateway instance {gateway_name}")
            return None

        state = map_gateway_state(raw_state)
        if state is None:
            logger.warning(f"Unknown gateway state '{raw_state}' for instance {gateway_name}")

        return await self.reconcile_state(instance_id, state, phone_number, observed_at)
