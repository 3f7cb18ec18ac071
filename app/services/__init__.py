"""
WA Bridge Services Module

Contains the linking, instance registry and outbound client services.
"""

from app.services.errors import (
    ErrorKind,
    LinkingError,
    ConflictError,
    DuplicateNameError,
    InvalidStateError,
    MissingCredentialsError,
    GatewayUnavailableError,
    NotFoundError,
)
from app.services.linking_service import LinkingService
from app.services.instance_service import InstanceService, ReconcileOutcome
from app.services.gateway_client import EvolutionGatewayClient, MessagingGateway
from app.services.crm_client import GhlOAuthClient, TokenPair
from app.services.metrics_service import MetricsCollector, metrics_collector

__all__ = [
    "ErrorKind",
    "LinkingError",
    "ConflictError",
    "DuplicateNameError",
    "InvalidStateError",
    "MissingCredentialsError",
    "GatewayUnavailableError",
    "NotFoundError",
    "LinkingService",
    "InstanceService",
    "ReconcileOutcome",
    "EvolutionGatewayClient",
    "MessagingGateway",
    "GhlOAuthClient",
    "TokenPair",
    "MetricsCollector",
    "metrics_collector",
]
