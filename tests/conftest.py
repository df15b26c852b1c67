"""Pytest fixtures for Custodian tests."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
import structlog
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from custodian.config.settings import Settings
from custodian.core.leases import ExecutionLockManager, SqlLeaseStore
from custodian.db.config import create_engine_from_settings, create_session_factory
from custodian.db.models.base import Base
from custodian.db.models.lifecycle import LifecycleRecord
from custodian.db.models.policy import RetentionPolicy
from custodian.retention.admin import RetentionAdminService
from custodian.retention.certificates import CertificateIssuer
from custodian.retention.erasure import (
    DEFAULT_RESOURCE_TABLES,
    InMemoryResourceStore,
    SecureEraseExecutor,
)
from custodian.retention.sweep import SweepEngine
from custodian.retention.types import DataType

ORG = "acme-learning"
OTHER_ORG = "globex-academy"
BASE_TIME = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
SIGNING_KEY = "test-signing-key"


# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration after each test.

    This ensures tests that modify structlog global state
    don't affect other tests.
    """
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Clock and Settings
# =============================================================================


class Clock:
    """Controllable time source shared by the engine, leases and admin service."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> Clock:
    return Clock(BASE_TIME)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for an isolated SQLite database per test."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'custodian.db'}",
        worker_id="worker-a",
        certificate_signing_key=SecretStr(SIGNING_KEY),
        lock_ttl_seconds=900,
        lock_renew_margin_seconds=60,
        erase_batch_size=50,
        max_erase_retries=2,
        erase_retry_backoff_seconds=60,
        event_lock_attempts=2,
        event_lock_wait_seconds=0.01,
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with every table."""
    engine = create_engine_from_settings(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fetch_record(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[LifecycleRecord]]:
    """Load a lifecycle record in a fresh session."""

    async def _fetch(record_id: UUID) -> LifecycleRecord:
        async with session_factory() as session:
            record = await session.get(LifecycleRecord, record_id)
            assert record is not None
            return record

    return _fetch


@pytest.fixture
def make_policy(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[RetentionPolicy]]:
    """Insert a retention policy created well before BASE_TIME."""

    async def _make(**overrides: Any) -> RetentionPolicy:
        values: dict[str, Any] = {
            "organisation_id": ORG,
            "name": "Email log retention",
            "data_type": DataType.COMMUNICATIONS.value,
            "retention_period_days": 365,
            "grace_period_days": 30,
            "deletion_method": "soft",
            "secure_erase_method": "overwrite_multiple",
            "trigger_type": "time_based",
            "legal_basis": "legitimate_interests",
            "priority": 100,
            "enabled": True,
            "automatic_deletion": True,
            "requires_manual_review": False,
            "revision": 1,
            "created_at": BASE_TIME - timedelta(days=1000),
            "updated_at": BASE_TIME - timedelta(days=1000),
        }
        values.update(overrides)
        if isinstance(values["data_type"], DataType):
            values["data_type"] = values["data_type"].value
        async with session_factory() as session:
            policy = RetentionPolicy(**values)
            session.add(policy)
            await session.commit()
        return policy

    return _make


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def resource_store() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture
def lock_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlLeaseStore:
    return SqlLeaseStore(session_factory)


@pytest.fixture
def lock_manager(lock_store: SqlLeaseStore, clock: Clock) -> ExecutionLockManager:
    return ExecutionLockManager(
        lock_store, "worker-a", default_ttl=timedelta(minutes=15), clock=clock
    )


@pytest.fixture
def issuer() -> CertificateIssuer:
    return CertificateIssuer(SIGNING_KEY, issuer_id="worker-a")


@pytest.fixture
def sweep_engine(
    session_factory: async_sessionmaker[AsyncSession],
    lock_manager: ExecutionLockManager,
    resource_store: InMemoryResourceStore,
    issuer: CertificateIssuer,
    settings: Settings,
) -> SweepEngine:
    return SweepEngine(
        session_factory,
        lock_manager,
        SecureEraseExecutor(resource_store, overwrite_multiple_passes=3),
        issuer,
        settings,
    )


@pytest.fixture
def register(
    sweep_engine: SweepEngine,
    resource_store: InMemoryResourceStore,
    clock: Clock,
) -> Callable[..., Awaitable[LifecycleRecord]]:
    """Create a resource in the store and start governing it."""

    async def _register(
        resource_id: str,
        *,
        age_days: float,
        data_type: DataType = DataType.COMMUNICATIONS,
        user_id: str | None = "user-1",
        organisation_id: str = ORG,
    ) -> LifecycleRecord:
        table = DEFAULT_RESOURCE_TABLES[data_type].table
        resource_store.add(
            table,
            resource_id,
            {"recipient": f"{user_id}@example.com", "subject": "Welcome", "body": "Hello"},
        )
        return await sweep_engine.register_resource(
            organisation_id,
            data_type,
            table,
            resource_id,
            data_created_at=clock() - timedelta(days=age_days),
            user_id=user_id,
            now=clock(),
        )

    return _register


@pytest_asyncio.fixture
async def admin(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    issuer: CertificateIssuer,
    clock: Clock,
) -> AsyncGenerator[RetentionAdminService, None]:
    async with session_factory() as session:
        yield RetentionAdminService(session, settings, issuer=issuer, clock=clock)
