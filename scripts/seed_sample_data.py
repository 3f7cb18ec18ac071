"""
Demo data seeding script for WA Bridge.
Creates a demo tenant with an admin and a tenant admin so the linking
flow can be exercised from the API right away.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import AsyncSessionLocal, Base, engine
from app.core.security import get_password_hash
from app.models.tenant import Tenant
from app.models.user import User, UserRole


TENANT_NAME = "Demo Agency"
DEMO_USERS = [
    {"email": "admin@demo.com", "password": "admin123", "full_name": "Demo Admin", "role": UserRole.ADMIN},
    {"email": "owner@demo.com", "password": "owner123", "full_name": "Demo Owner", "role": UserRole.TENANT_ADMIN},
]


async def get_or_create_tenant(db: AsyncSession) -> Tenant:
    result = await db.execute(select(Tenant).where(Tenant.name == TENANT_NAME))
    tenant = result.scalar_one_or_none()

    if tenant:
        print(f"✓ Tenant already exists: {tenant.name}")
        return tenant

    tenant = Tenant(name=TENANT_NAME, contact_email="contact@demo.com", is_active=True)
    db.add(tenant)
    await db.flush()
    print(f"✓ Created tenant: {tenant.name}")
    return tenant


async def get_or_create_user(db: AsyncSession, tenant: Tenant, user_data: dict) -> User:
    result = await db.execute(select(User).where(User.email == user_data["email"]))
    user = result.scalar_one_or_none()

    if user:
        print(f"✓ User already exists: {user.email}")
        return user

    user = User(
        tenant_id=tenant.id,
        email=user_data["email"],
        hashed_password=get_password_hash(user_data["password"]),
        full_name=user_data["full_name"],
        role=user_data["role"],
        is_active=True,
    )
    db.add(user)
    await db.flush()
    print(f"✓ Created {user_data['role'].value} user: {user.email}")
    return user


async def main(create_tables: bool = False):
    print("=" * 60)
    print("WA Bridge - Demo Data Seeding Script")
    print("=" * 60)

    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("✓ Tables created")

    async with AsyncSessionLocal() as db:
        try:
            tenant = await get_or_create_tenant(db)
            for user_data in DEMO_USERS:
                await get_or_create_user(db, tenant, user_data)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    print("\nLogin credentials:")
    for user_data in DEMO_USERS:
        print(f"  {user_data['email']} / {user_data['password']}")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed WA Bridge demo data")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables from the models instead of relying on alembic",
    )
    args = parser.parse_args()
    asyncio.run(main(create_tables=args.create_tables))
