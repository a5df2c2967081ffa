# tests/conftest.py
import os

# Settings are read at import time by stocksync.database; point them at test values first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_SECRET"] = ""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stocksync.core.config import Settings
from stocksync.core.ttl_cache import TTLCache
from stocksync.database import Base
from stocksync.integrations.dispatch import InProcessDispatcher
from stocksync.integrations.setup import build_pipeline
from stocksync.services.credential_service import CredentialService
from stocksync.services.feedback_suppressor import FeedbackLoopSuppressor
from stocksync.services.idempotency_ledger import IdempotencyLedger
from stocksync.services.stock_mirror_service import StockMirrorService
from stocksync.services.sync_config_service import SyncConfigService
from stocksync import models  # noqa: F401

from tests.fixtures.tenants import TENANT_ID, seed_platform, seed_tenant
from tests.mocks.mock_platform import MockPlatform


@pytest.fixture
def settings():
    """Provide test settings"""
    return Settings(
        SECRET_KEY="test-secret-key",
        DATABASE_URL="sqlite+aiosqlite://",
        ERP_API_URL="https://erp.test/Api/v3",
        ERP_CLIENT_ID="client-id",
        ERP_CLIENT_SECRET="client-secret",
        ERP_MIN_REQUEST_INTERVAL=0,
        ERP_VERIFY_WRITES=False,
        REDIS_URL="",
        WEBHOOK_SECRET="",
        RECONCILE_COOLDOWN_MINUTES=5,
        RECONCILE_MAX_PRODUCTS=100,
    )


@pytest.fixture(scope="function")
async def test_engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def config_service(session_factory):
    return SyncConfigService(session_factory)


@pytest.fixture
def credentials(session_factory):
    return CredentialService(session_factory)


@pytest.fixture
def mirror(session_factory):
    return StockMirrorService(session_factory)


@pytest.fixture
def ledger(session_factory):
    return IdempotencyLedger(session_factory)


@pytest.fixture
def suppressor():
    return FeedbackLoopSuppressor(TTLCache(30.0, name="test-suppression"), ttl=30.0, max_entries=5)


@pytest.fixture
def mock_platform():
    """Platform double seeded with SKU-1 on three accounts: P1=5 (accA), P2=7 (accB), shared S1 (accC)."""
    platform = MockPlatform()
    seed_platform(platform)
    return platform


@pytest.fixture
async def tenant(session_factory):
    """tenant-1: principal P1 (accA) and P2 (accB), shared S1 (accC), all credentials active."""
    await seed_tenant(session_factory)
    return TENANT_ID


@pytest.fixture
def pipeline(session_factory, settings, mock_platform):
    """Fully wired pipeline on the test database, the mock platform and an in-process dispatcher."""
    pipeline = build_pipeline(session_factory, settings=settings, platform=mock_platform)
    pipeline.dispatcher = InProcessDispatcher(pipeline.handle_event, on_failure=pipeline.handle_dead_letter)
    return pipeline
