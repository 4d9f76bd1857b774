"""Test fixtures."""

import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base, get_db
from app.main import app
from app.models import PolicyConfig, Store
from app.services.auth import create_access_token
from app.services.notification import NotificationService

# Use SQLite for tests (no external DB needed for unit tests)
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"

test_engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db


def _reset_rate_limiter():
    """Reset the in-memory rate limiter between tests to avoid 429s."""
    cur = app.middleware_stack
    while cur is not None:
        if hasattr(cur, "limiter"):
            cur.limiter.reset()
            return
        cur = getattr(cur, "app", None)


@pytest_asyncio.fixture(autouse=True)
async def reset_rate_limits():
    _reset_rate_limiter()
    yield


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


@pytest_asyncio.fixture
async def store(db: AsyncSession) -> Store:
    s = Store(
        id=uuid.uuid4(),
        slug="loja-teste",
        name="Loja Teste",
        currency="BRL",
        klaviyo_private_key="pk_test_123",
        klaviyo_site_id="SITE01",
        shopify_domain="loja-teste.myshopify.com",
    )
    db.add(s)
    await db.commit()
    return s


@pytest_asyncio.fixture
async def bare_store(db: AsyncSession) -> Store:
    """Store without sync credentials."""
    s = Store(id=uuid.uuid4(), slug="sem-credenciais", name="Sem Credenciais")
    db.add(s)
    await db.commit()
    return s


@pytest.fixture
def make_policy(db: AsyncSession):
    async def _make(store: Store, link_type: str = "returns", rules=None, form_fields=None) -> PolicyConfig:
        policy = PolicyConfig(
            store_id=store.id,
            link_type=link_type,
            rules=rules or {},
            form_fields=form_fields or [],
        )
        db.add(policy)
        await db.commit()
        return policy

    return _make


@pytest.fixture
def auth_headers() -> dict:
    token = create_access_token({"sub": "ops@example.com", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def notifier() -> NotificationService:
    return NotificationService()


@pytest.fixture
def session_factory() -> async_sessionmaker:
    return test_session
