"""Request-scoped dependencies shared by the v1 routers."""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.auth import get_current_user
from app.core.database import get_db
from app.models.user import User
from app.services.crm_client import CrmOAuthClient, GhlOAuthClient
from app.services.gateway_client import EvolutionGatewayClient, MessagingGateway
from app.services.instance_service import InstanceService
from app.services.linking_service import LinkingService


def get_messaging_gateway(request: Request) -> MessagingGateway:
    """Gateway client owned by the app; created on first use if the lifespan did not."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = EvolutionGatewayClient.from_settings()
        request.app.state.gateway = gateway
    return gateway


def get_crm_client(request: Request) -> CrmOAuthClient:
    client = getattr(request.app.state, "crm_client", None)
    if client is None:
        client = GhlOAuthClient.from_settings()
        request.app.state.crm_client = client
    return client


async def get_linking_service(
    db: AsyncSession = Depends(get_db),
    crm_client: CrmOAuthClient = Depends(get_crm_client),
) -> LinkingService:
    return LinkingService(db, crm_client)


async def get_instance_service(
    db: AsyncSession = Depends(get_db),
    gateway: MessagingGateway = Depends(get_messaging_gateway),
) -> InstanceService:
    return InstanceService(db, gateway)


async def get_current_tenant_id(current_user: User = Depends(get_current_user)) -> str:
    return current_user.tenant_id
