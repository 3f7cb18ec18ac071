"""
WA Bridge Test Configuration

Provides shared fixtures for async testing with:
- In-memory SQLite database
- Test client with async support and fake gateway / CRM clients
- Authenticated user fixtures for two tenants
- Data factories for tenants, users, CRM links and messaging instances
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("POLLER_ENABLED", "false")
os.environ.setdefault("ENABLE_STRUCTURED_LOGGING", "false")

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.v1.deps import get_crm_client, get_messaging_gateway
from app.core.database import Base, get_db
from app.core.security import get_password_hash, create_access_token
from app.main import app
from app.models.crm_link import CrmLink
from app.models.messaging_instance import MessagingInstance, ConnectionState
from app.models.tenant import Tenant
from app.models.user import User, UserRole
from app.services.crm_client import TokenPair
from app.services.errors import GatewayUnavailableError, NotFoundError
from app.services.gateway_client import (
    GatewayConnectionState,
    QRCode,
    extract_phone_number,
    map_gateway_state,
)
from app.services.instance_service import InstanceService, gateway_instance_name
from app.services.linking_service import LinkingService


# Test database URL - SQLite in-memory with async support
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an async engine for testing with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(db_session: AsyncSession):
    """Session factory for jobs that open their own session; hands out the test session."""

    @asynccontextmanager
    async def factory():
        yield db_session

    return factory


# -----------------------------------------------------------------------------
# Fake external services
# -----------------------------------------------------------------------------

class FakeGateway:
    """
    In-memory stand-in for the messaging gateway.

    Operations listed in `fail_on` raise GatewayUnavailableError as if
    retries were exhausted; those in `not_found_on` raise NotFoundError.
    """

    def __init__(self):
        self.instances: Dict[str, Dict[str, Optional[str]]] = {}
        self.calls: List[tuple] = []
        self.fail_on: set = set()
        self.not_found_on: set = set()
        self.status_codes: Dict[str, int] = {}

    def _check(self, operation: str, name: str):
        self.calls.append((operation, name))
        if operation in self.fail_on:
            raise GatewayUnavailableError(
                f"{operation} failed after retries",
                status_code=self.status_codes.get(operation),
            )
        if operation in self.not_found_on:
            raise NotFoundError(f"{name} not found on gateway")

    def calls_for(self, operation: str) -> List[str]:
        return [name for op, name in self.calls if op == operation]

    def set_state(self, name: str, raw_state: str, phone: Optional[str] = None):
        self.instances.setdefault(name, {})
        self.instances[name]["raw_state"] = raw_state
        self.instances[name]["phone"] = phone

    async def create_instance(self, name: str):
        self._check("create_instance", name)
        self.instances[name] = {"raw_state": "close", "phone": None}
        return {"instance_name": name, "status": "created"}

    async def get_qr_code(self, name: str) -> QRCode:
        self._check("get_qr_code", name)
        return QRCode(code="2@qr-code-payload", base64="data:image/png;base64,iVBORw0KGgo=", pairing_code="WZYEH1YY")

    async def get_connection_state(self, name: str) -> GatewayConnectionState:
        self._check("get_connection_state", name)
        if name not in self.instances:
            raise NotFoundError(f"{name} not found on gateway")
        raw_state = self.instances[name]["raw_state"]
        state = map_gateway_state(raw_state)
        phone = None
        if state == ConnectionState.CONNECTED:
            phone = extract_phone_number(self.instances[name].get("phone"))
        return GatewayConnectionState(raw_state=raw_state, state=state, phone_number=phone)

    async def delete_instance(self, name: str):
        self._check("delete_instance", name)
        if name not in self.instances:
            raise NotFoundError(f"{name} not found on gateway")
        del self.instances[name]

    async def logout(self, name: str):
        self._check("logout", name)
        if name in self.instances:
            self.instances[name]["raw_state"] = "close"


class FakeCrmClient:
    """In-memory stand-in for the GoHighLevel OAuth client."""

    def __init__(self):
        self.token_pair = TokenPair(
            access_token="oauth-access-token",
            refresh_token="oauth-refresh-token",
            expires_at=datetime.utcnow() + timedelta(days=1),
            scopes="locations.readonly",
            company_id="company-1",
            location_id="loc-123",
            user_id="ghl-user-1",
        )
        self.installer = {
            "company": {"id": "company-1", "name": "Acme Agency"},
            "location": {"id": "loc-123", "name": "Acme Downtown"},
            "user": {"id": "ghl-user-1", "email": "owner@acme.test", "name": "Owner"},
        }
        self.locations = [
            {"_id": "loc-123", "name": "Acme Downtown", "address": "1 Main St", "isInstalled": True},
            {"_id": "loc-456", "name": "Acme Uptown", "address": "9 High St", "isInstalled": True},
        ]
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.exchanged_codes: List[str] = []
        self.refreshed_tokens: List[str] = []
        self.location_calls: List[tuple] = []

    def build_authorize_url(self, state: str) -> str:
        return f"https://marketplace.test/oauth/chooselocation?client_id=test&state={state}"

    async def exchange_code(self, code: str) -> TokenPair:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.token_pair

    async def refresh_access_token(self, refresh_token: str) -> TokenPair:
        self.refreshed_tokens.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenPair(
            access_token="refreshed-access-token",
            refresh_token="refreshed-refresh-token",
            expires_at=datetime.utcnow() + timedelta(days=1),
        )

    async def get_installer_details(self, access_token: str):
        return self.installer

    async def get_installed_locations(self, company_id: str, access_token: str):
        self.location_calls.append((company_id, access_token))
        return self.locations

    async def get_location(self, location_id: str, access_token: str):
        return {"id": location_id, "name": "Acme Downtown"}


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_crm_client() -> FakeCrmClient:
    return FakeCrmClient()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    fake_gateway: FakeGateway,
    fake_crm_client: FakeCrmClient,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and external client overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_messaging_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_crm_client] = lambda: fake_crm_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def linking_service(db_session: AsyncSession, fake_crm_client: FakeCrmClient) -> LinkingService:
    return LinkingService(db_session, fake_crm_client)


@pytest.fixture
def instance_service(db_session: AsyncSession, fake_gateway: FakeGateway) -> InstanceService:
    return InstanceService(db_session, fake_gateway)


# -----------------------------------------------------------------------------
# Data Factories
# -----------------------------------------------------------------------------

class TenantFactory:
    """Factory for creating test tenants."""

    @staticmethod
    async def create(
        db: AsyncSession,
        name: str = "Test Tenant",
        is_active: bool = True
    ) -> Tenant:
        tenant = Tenant(
            id=str(uuid.uuid4()),
            name=name,
            contact_email="contact@test.com",
            is_active=is_active
        )
        db.add(tenant)
        await db.commit()
        await db.refresh(tenant)
        return tenant


class UserFactory:
    """Factory for creating test users."""

    @staticmethod
    async def create(
        db: AsyncSession,
        tenant_id: str,
        email: str = None,
        role: UserRole = UserRole.MEMBER,
        password: str = "testpassword123",
        is_active: bool = True
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            hashed_password=get_password_hash(password),
            role=role,
            full_name=f"Test {role.value.replace('_', ' ').title()}",
            is_active=is_active
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


class CrmLinkFactory:
    """Factory for creating CRM links."""

    @staticmethod
    async def create(
        db: AsyncSession,
        tenant_id: str,
        location_id: str = None,
        company_id: str = "company-1",
        access_token: Optional[str] = "stored-access-token",
        refresh_token: Optional[str] = "stored-refresh-token",
        token_expires_at: Optional[datetime] = None,
        revoked_at: Optional[datetime] = None
    ) -> CrmLink:
        link = CrmLink(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            company_id=company_id,
            location_id=location_id or f"loc-{uuid.uuid4().hex[:8]}",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at or datetime.utcnow() + timedelta(hours=1),
            claimed_at=datetime.utcnow(),
            revoked_at=revoked_at
        )
        db.add(link)
        await db.commit()
        await db.refresh(link)
        return link


class InstanceFactory:
    """Factory for creating messaging instances (local rows only)."""

    @staticmethod
    async def create(
        db: AsyncSession,
        tenant_id: str,
        crm_link_id: str,
        instance_name: str = None,
        state: ConnectionState = ConnectionState.CREATED,
        phone_number: Optional[str] = None,
        last_reconciled_at: Optional[datetime] = None,
        gateway: Optional[FakeGateway] = None
    ) -> MessagingInstance:
        name = instance_name or f"instance-{uuid.uuid4().hex[:6]}"
        instance = MessagingInstance(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            crm_link_id=crm_link_id,
            instance_name=name,
            gateway_name=gateway_instance_name(name),
            state=state,
            phone_number=phone_number,
            last_reconciled_at=last_reconciled_at
        )
        db.add(instance)
        await db.commit()
        await db.refresh(instance)
        if gateway is not None:
            gateway.set_state(instance.gateway_name, "connecting" if state == ConnectionState.CONNECTING else "close")
        return instance


# -----------------------------------------------------------------------------
# Pre-configured Test Data Fixtures
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_tenant(db_session: AsyncSession) -> Tenant:
    """Create the primary test tenant."""
    return await TenantFactory.create(db_session, name="Tenant A")


@pytest_asyncio.fixture
async def other_tenant(db_session: AsyncSession) -> Tenant:
    """Create a second tenant for cross-tenant checks."""
    return await TenantFactory.create(db_session, name="Tenant B")


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession, test_tenant: Tenant) -> User:
    """Create an admin test user."""
    return await UserFactory.create(
        db_session,
        tenant_id=test_tenant.id,
        email="admin@test.com",
        role=UserRole.ADMIN
    )


@pytest_asyncio.fixture
async def other_tenant_user(db_session: AsyncSession, other_tenant: Tenant) -> User:
    """Create a tenant admin belonging to the second tenant."""
    return await UserFactory.create(
        db_session,
        tenant_id=other_tenant.id,
        email="owner@other.com",
        role=UserRole.TENANT_ADMIN
    )


@pytest_asyncio.fixture
async def admin_token(admin_user: User) -> str:
    """Get JWT token for admin user."""
    return create_access_token(
        data={"sub": admin_user.id, "email": admin_user.email, "role": admin_user.role.value}
    )


@pytest_asyncio.fixture
async def auth_headers_admin(admin_token: str) -> Dict[str, str]:
    """Get auth headers for admin user."""
    return {"Authorization": f"Bearer {admin_token}"}


@pytest_asyncio.fixture
async def auth_headers_other(other_tenant_user: User) -> Dict[str, str]:
    """Get auth headers for the second tenant's user."""
    token = create_access_token(
        data={"sub": other_tenant_user.id, "email": other_tenant_user.email, "role": other_tenant_user.role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def member_user(db_session: AsyncSession, test_tenant: Tenant) -> User:
    """Create a regular member of the primary tenant."""
    return await UserFactory.create(
        db_session,
        tenant_id=test_tenant.id,
        email="member@test.com",
        role=UserRole.MEMBER
    )


@pytest_asyncio.fixture
async def auth_headers_member(member_user: User) -> Dict[str, str]:
    """Get auth headers for the member user."""
    token = create_access_token(
        data={"sub": member_user.id, "email": member_user.email, "role": member_user.role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def test_link(db_session: AsyncSession, test_tenant: Tenant) -> CrmLink:
    """Create an active CRM link for the primary tenant."""
    return await CrmLinkFactory.create(db_session, tenant_id=test_tenant.id, location_id="loc-123")


# Export factories for use in tests
__all__ = [
    "TenantFactory",
    "UserFactory",
    "CrmLinkFactory",
    "InstanceFactory",
    "FakeGateway",
    "FakeCrmClient",
]
