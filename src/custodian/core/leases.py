"""Lease-based execution locks keyed by (lock type, resource id).

A lease is a time-bounded exclusive claim that expires on its own if the
holder crashes or stops renewing it, so no partition can be blocked
forever. Contended acquisitions fail fast with ``LockBusyError``; the
manager never queues work, callers retry on a later cycle.

Two stores are provided:
- SqlLeaseStore: rows in ``execution_locks``; uniqueness on the key gives
  mutual exclusion and expired rows are reclaimed inline on acquisition.
- RedisLeaseStore: ``SET NX PX`` keys with compare-and-set scripts for
  renew and release.

Usage:
    manager = ExecutionLockManager(SqlLeaseStore(session_factory), holder="worker-1")
    async with manager.lease("retention_sweep", "org-1:communications") as lease:
        ...
        lease = await manager.renew(lease)
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import UUID, uuid7

import structlog
from pydantic import BaseModel, ConfigDict, Field
from redis.asyncio import Redis
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custodian.core.context import get_correlation_id
from custodian.core.exceptions import LockBusyError, LockExpiredError
from custodian.db.models.lock import ExecutionLock
from custodian.observability.metrics import record_lock_contention

logger = structlog.get_logger()

DEFAULT_LEASE_TTL = timedelta(minutes=5)


class Lease(BaseModel):
    """A held lease."""

    model_config = ConfigDict(frozen=True)

    lock_id: UUID = Field(default_factory=uuid7)
    lock_type: str
    resource_id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime
    renewed_at: datetime | None = None
    reason: str | None = None
    queue_position: int = 0
    correlation_id: UUID
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.lock_type}:{self.resource_id}"

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class LeaseStore(Protocol):
    """Storage backend for leases."""

    async def try_acquire(self, lease: Lease, now: datetime) -> Lease:
        """Persist ``lease`` unless a live lease exists for its key.

        Raises:
            LockBusyError: If another holder owns an unexpired lease.
        """
        ...

    async def renew(self, lease: Lease, expires_at: datetime, now: datetime) -> Lease:
        """Extend a lease still held by its holder.

        Raises:
            LockExpiredError: If the lease expired or was taken over.
        """
        ...

    async def release(self, lease: Lease) -> bool:
        """Remove a lease; False if it was no longer held."""
        ...

    async def get(self, lock_type: str, resource_id: str, now: datetime) -> Lease | None:
        """Current unexpired lease for a key."""
        ...

    async def list_active(self, now: datetime, lock_type: str | None = None) -> list[Lease]:
        """All unexpired leases."""
        ...

    async def cleanup_expired(self, now: datetime) -> int:
        """Delete expired leases; returns the number removed."""
        ...

    async def ping(self) -> bool:
        """Whether the backend is reachable."""
        ...


# =============================================================================
# SQL Store
# =============================================================================


def _lease_from_row(row: ExecutionLock) -> Lease:
    return Lease(
        lock_id=row.lock_id,
        lock_type=row.lock_type,
        resource_id=row.resource_id,
        holder=row.holder,
        acquired_at=row.acquired_at,
        expires_at=row.expires_at,
        renewed_at=row.renewed_at,
        reason=row.reason,
        queue_position=row.queue_position,
        correlation_id=row.correlation_id,
        metadata=row.lock_metadata or {},
    )


class SqlLeaseStore:
    """Leases stored in the ``execution_locks`` table.

    Every operation runs in its own short transaction so lease state is
    never tied to the caller's unit of work.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def try_acquire(self, lease: Lease, now: datetime) -> Lease:
        try:
            async with self._session_factory() as session, session.begin():
                # Reclaim an expired lease on this key inline
                await session.execute(
                    delete(ExecutionLock).where(
                        ExecutionLock.lock_type == lease.lock_type,
                        ExecutionLock.resource_id == lease.resource_id,
                        ExecutionLock.expires_at <= now,
                    )
                )
                session.add(
                    ExecutionLock(
                        lock_id=lease.lock_id,
                        lock_type=lease.lock_type,
                        resource_id=lease.resource_id,
                        holder=lease.holder,
                        reason=lease.reason,
                        acquired_at=lease.acquired_at,
                        expires_at=lease.expires_at,
                        queue_position=0,
                        correlation_id=lease.correlation_id,
                        lock_metadata=lease.metadata,
                    )
                )
            return lease
        except IntegrityError:
            pass

        holder = await self._register_contention(lease.lock_type, lease.resource_id, now)
        raise LockBusyError(
            lease.lock_type,
            lease.resource_id,
            holder=holder.holder if holder else None,
            expires_at=holder.expires_at if holder else None,
            queue_position=holder.queue_position if holder else None,
            correlation_id=lease.correlation_id,
        )

    async def _register_contention(
        self, lock_type: str, resource_id: str, now: datetime
    ) -> Lease | None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(ExecutionLock)
                .where(
                    ExecutionLock.lock_type == lock_type,
                    ExecutionLock.resource_id == resource_id,
                    ExecutionLock.expires_at > now,
                )
                .values(queue_position=ExecutionLock.queue_position + 1)
            )
            row = await self._select(session, lock_type, resource_id, now)
            return _lease_from_row(row) if row is not None else None

    async def renew(self, lease: Lease, expires_at: datetime, now: datetime) -> Lease:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ExecutionLock)
                .where(
                    ExecutionLock.lock_id == lease.lock_id,
                    ExecutionLock.holder == lease.holder,
                    ExecutionLock.expires_at > now,
                )
                .values(expires_at=expires_at, renewed_at=now)
            )
            if result.rowcount != 1:
                raise LockExpiredError(lease.lock_type, lease.resource_id, lease.holder)
        return lease.model_copy(update={"expires_at": expires_at, "renewed_at": now})

    async def release(self, lease: Lease) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(ExecutionLock).where(
                    ExecutionLock.lock_id == lease.lock_id,
                    ExecutionLock.holder == lease.holder,
                )
            )
            return result.rowcount == 1

    async def get(self, lock_type: str, resource_id: str, now: datetime) -> Lease | None:
        async with self._session_factory() as session:
            row = await self._select(session, lock_type, resource_id, now)
            return _lease_from_row(row) if row is not None else None

    async def list_active(self, now: datetime, lock_type: str | None = None) -> list[Lease]:
        async with self._session_factory() as session:
            stmt = select(ExecutionLock).where(ExecutionLock.expires_at > now)
            if lock_type is not None:
                stmt = stmt.where(ExecutionLock.lock_type == lock_type)
            result = await session.execute(stmt.order_by(ExecutionLock.acquired_at))
            return [_lease_from_row(row) for row in result.scalars().all()]

    async def cleanup_expired(self, now: datetime) -> int:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(ExecutionLock).where(ExecutionLock.expires_at <= now)
            )
            return result.rowcount or 0

    async def ping(self) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(ExecutionLock.lock_id)))
            result.scalar()
            return True

    @staticmethod
    async def _select(
        session: AsyncSession, lock_type: str, resource_id: str, now: datetime
    ) -> ExecutionLock | None:
        stmt = select(ExecutionLock).where(
            ExecutionLock.lock_type == lock_type,
            ExecutionLock.resource_id == resource_id,
            ExecutionLock.expires_at > now,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


# =============================================================================
# Redis Store
# =============================================================================

# KEYS[1] = lease key; ARGV[1] = lock id; ARGV[2] = new payload; ARGV[3] = ttl ms
_RENEW_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then return 0 end
if cjson.decode(current)['lock_id'] ~= ARGV[1] then return 0 end
redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])
return 1
"""

# KEYS[1] = lease key; KEYS[2] = contention counter; ARGV[1] = lock id
_RELEASE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then return 0 end
if cjson.decode(current)['lock_id'] ~= ARGV[1] then return 0 end
redis.call('DEL', KEYS[1], KEYS[2])
return 1
"""


class RedisLeaseStore:
    """Leases stored as Redis keys with native expiry.

    Key layout: ``{prefix}:{lock_type}:{resource_id}`` holds the JSON lease;
    ``...:queue`` counts refused acquisitions while it is held.
    """

    def __init__(self, client: Redis, prefix: str = "custodian:lease"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "custodian:lease") -> "RedisLeaseStore":
        return cls(Redis.from_url(url, decode_responses=False), prefix=prefix)

    def _key(self, lock_type: str, resource_id: str) -> str:
        return f"{self._prefix}:{lock_type}:{resource_id}"

    @staticmethod
    def _ttl_ms(expires_at: datetime, now: datetime) -> int:
        return max(1, int((expires_at - now).total_seconds() * 1000))

    @staticmethod
    def _decode(raw: bytes | str | None) -> Lease | None:
        if raw is None:
            return None
        return Lease.model_validate_json(raw)

    async def try_acquire(self, lease: Lease, now: datetime) -> Lease:
        key = self._key(lease.lock_type, lease.resource_id)
        ttl_ms = self._ttl_ms(lease.expires_at, now)
        acquired = await self._client.set(key, lease.model_dump_json(), nx=True, px=ttl_ms)
        if acquired:
            return lease

        queue_key = f"{key}:queue"
        pipe = self._client.pipeline()
        pipe.incr(queue_key)
        pipe.pexpire(queue_key, ttl_ms)
        pipe.get(key)
        position, _, raw = await pipe.execute()
        holder = self._decode(raw)
        raise LockBusyError(
            lease.lock_type,
            lease.resource_id,
            holder=holder.holder if holder else None,
            expires_at=holder.expires_at if holder else None,
            queue_position=int(position),
            correlation_id=lease.correlation_id,
        )

    async def renew(self, lease: Lease, expires_at: datetime, now: datetime) -> Lease:
        renewed = lease.model_copy(update={"expires_at": expires_at, "renewed_at": now})
        ok = await self._client.eval(
            _RENEW_SCRIPT,
            1,
            self._key(lease.lock_type, lease.resource_id),
            str(lease.lock_id),
            renewed.model_dump_json(),
            self._ttl_ms(expires_at, now),
        )
        if not ok:
            raise LockExpiredError(lease.lock_type, lease.resource_id, lease.holder)
        return renewed

    async def release(self, lease: Lease) -> bool:
        key = self._key(lease.lock_type, lease.resource_id)
        ok = await self._client.eval(_RELEASE_SCRIPT, 2, key, f"{key}:queue", str(lease.lock_id))
        return bool(ok)

    async def get(self, lock_type: str, resource_id: str, now: datetime) -> Lease | None:
        lease = self._decode(await self._client.get(self._key(lock_type, resource_id)))
        if lease is None or lease.is_expired(now):
            return None
        return lease

    async def list_active(self, now: datetime, lock_type: str | None = None) -> list[Lease]:
        pattern = f"{self._prefix}:{lock_type}:*" if lock_type else f"{self._prefix}:*"
        leases = []
        async for key in self._client.scan_iter(match=pattern):
            name = key.decode() if isinstance(key, bytes) else key
            if name.endswith(":queue"):
                continue
            lease = self._decode(await self._client.get(name))
            if lease is not None and not lease.is_expired(now):
                leases.append(lease)
        return sorted(leases, key=lambda lease: lease.acquired_at)

    async def cleanup_expired(self, now: datetime) -> int:
        # Redis expires keys itself
        return 0

    async def ping(self) -> bool:
        return bool(await self._client.ping())


# =============================================================================
# Lock Manager
# =============================================================================


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionLockManager:
    """Acquire, renew and release leases for one holder identity."""

    def __init__(
        self,
        store: LeaseStore,
        holder: str,
        default_ttl: timedelta = DEFAULT_LEASE_TTL,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize the manager.

        Args:
            store: Lease storage backend.
            holder: Identity recorded on every lease (usually the worker id).
            default_ttl: Lease length when the caller gives none.
            clock: Source of the current time.
        """
        self.store = store
        self.holder = holder
        self.default_ttl = default_ttl
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def acquire(
        self,
        lock_type: str,
        resource_id: str,
        *,
        ttl: timedelta | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Lease:
        """Acquire a lease or fail fast.

        Raises:
            LockBusyError: If another holder owns an unexpired lease.
        """
        now = self.now()
        lease = Lease(
            lock_type=lock_type,
            resource_id=resource_id,
            holder=self.holder,
            acquired_at=now,
            expires_at=now + (ttl or self.default_ttl),
            reason=reason,
            correlation_id=get_correlation_id(),
            metadata=metadata or {},
        )
        try:
            lease = await self.store.try_acquire(lease, now)
        except LockBusyError as e:
            record_lock_contention(lock_type)
            logger.info(
                "lock_busy",
                lock_type=lock_type,
                resource_id=resource_id,
                holder=e.holder,
                queue_position=e.queue_position,
            )
            raise
        logger.debug(
            "lock_acquired",
            lock_type=lock_type,
            resource_id=resource_id,
            expires_at=lease.expires_at.isoformat(),
        )
        return lease

    async def renew(self, lease: Lease, ttl: timedelta | None = None) -> Lease:
        """Extend a lease by ``ttl`` from now.

        Raises:
            LockExpiredError: If the lease was lost.
        """
        now = self.now()
        renewed = await self.store.renew(lease, now + (ttl or self.default_ttl), now)
        logger.debug(
            "lock_renewed",
            lock_type=lease.lock_type,
            resource_id=lease.resource_id,
            expires_at=renewed.expires_at.isoformat(),
        )
        return renewed

    async def renew_if_needed(
        self, lease: Lease, margin: timedelta, ttl: timedelta | None = None
    ) -> Lease:
        """Renew only when less than ``margin`` of the lease remains."""
        if lease.remaining(self.now()) > margin:
            return lease
        return await self.renew(lease, ttl)

    async def release(self, lease: Lease) -> bool:
        """Release a lease; returns False if it had already been lost."""
        released = await self.store.release(lease)
        if not released:
            logger.warning(
                "lock_release_missed",
                lock_type=lease.lock_type,
                resource_id=lease.resource_id,
            )
        return released

    @asynccontextmanager
    async def lease(
        self,
        lock_type: str,
        resource_id: str,
        *,
        ttl: timedelta | None = None,
        reason: str | None = None,
    ) -> AsyncIterator[Lease]:
        """Hold a lease for the duration of the block.

        Raises:
            LockBusyError: If the lease cannot be acquired.
        """
        held = await self.acquire(lock_type, resource_id, ttl=ttl, reason=reason)
        try:
            yield held
        finally:
            await self.release(held)

    async def get_current_lock(self, lock_type: str, resource_id: str) -> Lease | None:
        return await self.store.get(lock_type, resource_id, self.now())

    async def is_locked(self, lock_type: str, resource_id: str) -> bool:
        return await self.get_current_lock(lock_type, resource_id) is not None

    async def list_active_locks(self, lock_type: str | None = None) -> list[Lease]:
        return await self.store.list_active(self.now(), lock_type)

    async def cleanup_expired(self) -> int:
        removed = await self.store.cleanup_expired(self.now())
        if removed:
            logger.info("expired_locks_removed", count=removed)
        return removed

    async def health_check(self) -> dict[str, Any]:
        """Report backend reachability and the number of live leases."""
        try:
            await self.store.ping()
            active = await self.list_active_locks()
        except Exception as e:
            logger.warning("lock_store_unhealthy", error=str(e))
            return {"healthy": False, "holder": self.holder, "error": str(e)}
        return {"healthy": True, "holder": self.holder, "active_locks": len(active)}
