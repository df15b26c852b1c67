"""Worker process entry point (``custodian-worker``).

Builds the sweep engine from settings and runs the retention scheduler
until SIGINT or SIGTERM.
"""

import asyncio
import signal
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custodian.config.settings import LockBackend, Settings, get_settings
from custodian.core.encryption import KeyRing, key_from_string
from custodian.core.leases import ExecutionLockManager, LeaseStore, RedisLeaseStore, SqlLeaseStore
from custodian.core.logging import setup_logging
from custodian.db.config import close_db, get_session_factory, init_db
from custodian.retention.certificates import CertificateIssuer
from custodian.retention.erasure import ResourceStore, SecureEraseExecutor, SqlResourceStore
from custodian.retention.scheduler import RetentionScheduler
from custodian.retention.sweep import SweepEngine

logger = structlog.get_logger()


def build_lock_manager(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> ExecutionLockManager:
    store: LeaseStore
    if settings.lock_backend == LockBackend.REDIS:
        store = RedisLeaseStore.from_url(settings.REDIS_URL)
    else:
        store = SqlLeaseStore(session_factory)
    return ExecutionLockManager(
        store,
        settings.worker_id,
        default_ttl=timedelta(seconds=settings.lock_ttl_seconds),
    )


def build_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    resource_store: ResourceStore | None = None,
) -> SweepEngine:
    """Wire a SweepEngine from settings."""
    key_ring = None
    if settings.data_key_master_key is not None:
        key_ring = KeyRing(key_from_string(settings.data_key_master_key.get_secret_value()))
    executor = SecureEraseExecutor(
        resource_store or SqlResourceStore(),
        key_ring=key_ring,
        overwrite_multiple_passes=settings.overwrite_multiple_passes,
    )
    return SweepEngine(
        session_factory,
        build_lock_manager(settings, session_factory),
        executor,
        CertificateIssuer.from_settings(settings),
        settings,
    )


async def run_worker(settings: Settings) -> None:
    await init_db()
    engine = build_engine(settings, get_session_factory())
    scheduler = RetentionScheduler(engine)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    health = await engine.locks.health_check()
    logger.info("worker_started", worker_id=settings.worker_id, lock_store=health)

    await scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        await close_db()
        logger.info("worker_stopped", worker_id=settings.worker_id)


def main() -> None:
    settings = get_settings()
    setup_logging()
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
