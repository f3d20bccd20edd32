"""
Test Configuration — Fixtures for async DB, test client, fake marketplaces.

Each test gets its own in-memory SQLite database (no PostgreSQL features),
so commits made by the scheduler are real commits and nothing leaks
between tests.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import (
    get_adapter_factory,
    get_credential_store,
    get_current_user,
    get_db,
    get_rate_limiter,
    get_tenant_db,
)
from api.main import app
from core.config import Settings
from db.repositories import SyncRepository, utc_now
from db.session import Base
from integrations.base import Credential
from integrations.credentials import StaticCredentialStore
from sync.executor import SyncJobExecutor
from sync.rate_limiter import InMemoryCounterStore, RateLimiter
from sync.scheduler import JobScheduler

from fakes import FakeMarketplace

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"


# ── Database ───────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def tenant(test_db):
    from db.models import Tenant

    row = Tenant(tenant_id=uuid.UUID(TENANT_ID), name="Test Shop Co", email="owner@testshop.com")
    test_db.add(row)
    test_db.add(Tenant(tenant_id=uuid.UUID(OTHER_TENANT_ID), name="Other Shop", email="owner@othershop.com"))
    await test_db.commit()
    return row


@pytest.fixture
def tenant_id(tenant) -> uuid.UUID:
    return tenant.tenant_id


@pytest.fixture
def repo(test_db) -> SyncRepository:
    return SyncRepository(test_db)


# ── Sync core collaborators ────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        sync_batch_size=2,
        sync_batch_pause_seconds=0.5,
        retry_base_delay_minutes=5,
        default_max_retries=3,
        high_value_order_threshold=1000.0,
        bulk_order_item_threshold=10,
        publish_notifications=False,
        scheduler_dispatch_mode="inline",
    )


@pytest.fixture
def marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
def credential_store() -> StaticCredentialStore:
    store = StaticCredentialStore()
    store.put(TENANT_ID, Credential(platform="shopee", shop_id="shop-1", access_token="shopee-token"))
    store.put(TENANT_ID, Credential(platform="tiktokshop", shop_id="shop-2", access_token="tiktok-token"))
    return store


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(InMemoryCounterStore(), {"shopee": 100, "tiktokshop": 60}, window_seconds=60)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def executor(repo, credential_store, rate_limiter, marketplace, settings, sleeps) -> SyncJobExecutor:
    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SyncJobExecutor(
        repo,
        credential_store=credential_store,
        rate_limiter=rate_limiter,
        adapter_factory=marketplace.adapter,
        settings=settings,
        sleep=_record_sleep,
    )


@pytest.fixture
def scheduler(repo, executor, settings) -> JobScheduler:
    return JobScheduler(repo, executor=executor, settings=settings)


@pytest.fixture
def make_job(repo, tenant):
    """Create a pending job with sensible defaults."""

    async def _make(**overrides):
        now = utc_now()
        fields = {
            "tenant_id": tenant.tenant_id,
            "job_type": "order_monitor",
            "platform": "shopee",
            "status": "pending",
            "priority": "medium",
            "trigger_source": "manual",
            "scheduled_at": now,
            "retry_count": 0,
            "max_retries": 3,
            "parameters": {},
            "created_at": now,
        }
        fields.update(overrides)
        return await repo.create_job(**fields)

    return _make


@pytest.fixture
def make_product(test_db, tenant):
    async def _make(sku: str, stock: int, threshold: int = 10, **overrides):
        from db.models import Product

        product = Product(
            tenant_id=tenant.tenant_id,
            sku=sku,
            name=overrides.pop("name", f"Product {sku}"),
            price=overrides.pop("price", 9.99),
            stock_quantity=stock,
            low_stock_threshold=threshold,
            **overrides,
        )
        test_db.add(product)
        await test_db.flush()
        return product

    return _make


# ── API client ─────────────────────────────────────────────────────────


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "test-user-id",
        "email": "owner@testshop.com",
        "tenant_id": TENANT_ID,
    }


@pytest.fixture
async def client(test_db, tenant, mock_user, rate_limiter, credential_store, marketplace):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Skip set_config (SQLite doesn't support it), return session directly."""
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_credential_store] = lambda: credential_store
    app.dependency_overrides[get_adapter_factory] = lambda: marketplace.adapter

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
