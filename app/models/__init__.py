from app.core.database import Base
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.models.crm_link import CrmLink
from app.models.messaging_instance import (
    MessagingInstance,
    ConnectionState,
    ALLOWED_TRANSITIONS,
    POLLED_STATES,
    is_allowed_transition,
)

__all__ = [
    "Base",
    "Tenant",
    "User",
    "UserRole",
    "CrmLink",
    "MessagingInstance",
    "ConnectionState",
    "ALLOWED_TRANSITIONS",
    "POLLED_STATES",
    "is_allowed_transition",
]
