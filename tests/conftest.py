import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.core.auth.models import Actor, ActorRole
from src.core.database.base import Base
from src.core.database import get_db
from src.main import app
from src.modules.tenants.service import TenantService

# In-memory SQLite; StaticPool keeps one connection so every session sees the same database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@dataclass
class Tenancy:
    """One account with two agencies, each holding an offer letter."""

    account_id: int
    agency_id: int
    other_agency_id: int
    offer_letter_id: int
    other_offer_letter_id: int
    student_id: int = 501

    def actor(self, role: ActorRole = ActorRole.AGENCY_ADMIN, actor_id: int = 1) -> Actor:
        return Actor(
            id=actor_id, role=role, account_id=self.account_id, agency_id=self.agency_id
        )

    def account_actor(self, role: ActorRole = ActorRole.ACCOUNT_ADMIN, actor_id: int = 2) -> Actor:
        return Actor(id=actor_id, role=role, account_id=self.account_id, agency_id=None)

    def headers(self, role: ActorRole = ActorRole.AGENCY_ADMIN, actor_id: int = 1) -> dict:
        return {
            "X-Actor-Id": str(actor_id),
            "X-Actor-Role": role.value,
            "X-Account-Id": str(self.account_id),
            "X-Agency-Id": str(self.agency_id),
        }


@pytest.fixture
async def tenancy(db_session: AsyncSession) -> Tenancy:
    service = TenantService(db_session)
    account = await service.create_account("Global Study Partners", "ops@gsp.test", "USD")
    agency = await service.create_agency(account.id, "Lagos Branch")
    other = await service.create_agency(account.id, "Nairobi Branch")
    offer_letter = await service.create_offer_letter(
        account.id, agency.id, student_id=501, reference="OL-2024-001"
    )
    other_offer_letter = await service.create_offer_letter(
        account.id, other.id, student_id=777, reference="OL-2024-002"
    )
    return Tenancy(
        account_id=account.id,
        agency_id=agency.id,
        other_agency_id=other.id,
        offer_letter_id=offer_letter.id,
        other_offer_letter_id=other_offer_letter.id,
    )
