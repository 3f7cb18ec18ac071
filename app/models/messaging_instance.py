from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from app.core.database import Base


class ConnectionState(str, enum.Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# Moves a gateway report may apply; explicit disconnect/delete are handled separately
ALLOWED_TRANSITIONS = {
    ConnectionState.CREATED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
}

# States the poller keeps asking the gateway about
POLLED_STATES = (ConnectionState.CREATED, ConnectionState.CONNECTING)


def is_allowed_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class MessagingInstance(Base):
    """A named WhatsApp connection on the messaging gateway, bound to a CRM link."""
    __tablename__ = "messaging_instances"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    crm_link_id = Column(String, ForeignKey("crm_links.id"), nullable=False, index=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)

    # Naming
    instance_name = Column(String, nullable=False)  # unique per tenant
    gateway_name = Column(String, nullable=False, unique=True)  # name on the gateway

    # Connection
    state = Column(SQLEnum(ConnectionState), nullable=False, default=ConnectionState.CREATED)
    phone_number = Column(String)
    qr_code = Column(Text)
    pairing_code = Column(String)

    # Reconciliation
    last_reconciled_at = Column(DateTime)
    is_stale = Column(Boolean, default=False, nullable=False)
    stale_since = Column(DateTime)

    # Timestamps
    connected_at = Column(DateTime)
    disconnected_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    crm_link = relationship("CrmLink", back_populates="instances")

    __table_args__ = (
        UniqueConstraint("tenant_id", "instance_name", name="uq_messaging_instances_tenant_name"),
    )
