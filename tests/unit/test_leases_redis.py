"""Tests for the Redis lease store using a mocked client."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid7

import pytest

from custodian.core.exceptions import LockBusyError, LockExpiredError
from custodian.core.leases import ExecutionLockManager, Lease, RedisLeaseStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def _lease(holder: str = "worker-a", minutes: int = 15) -> Lease:
    return Lease(
        lock_type="retention_sweep",
        resource_id="acme-learning:communications",
        holder=holder,
        acquired_at=NOW,
        expires_at=NOW + timedelta(minutes=minutes),
        correlation_id=uuid7(),
    )


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.eval = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    return client


class TestRedisLeaseStore:
    """Tests for RedisLeaseStore."""

    @pytest.mark.asyncio
    async def test_acquire_sets_key_with_expiry(self, client: MagicMock) -> None:
        store = RedisLeaseStore(client, prefix="test:lease")
        lease = _lease()

        acquired = await store.try_acquire(lease, NOW)

        assert acquired == lease
        client.set.assert_awaited_once_with(
            "test:lease:retention_sweep:acme-learning:communications",
            lease.model_dump_json(),
            nx=True,
            px=15 * 60 * 1000,
        )

    @pytest.mark.asyncio
    async def test_busy_reports_holder_and_queue_position(self, client: MagicMock) -> None:
        holder = _lease(holder="worker-b")
        client.set = AsyncMock(return_value=None)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[2, True, holder.model_dump_json().encode()])
        client.pipeline.return_value = pipe
        store = RedisLeaseStore(client)

        with pytest.raises(LockBusyError) as exc_info:
            await store.try_acquire(_lease(), NOW)

        assert exc_info.value.holder == "worker-b"
        assert exc_info.value.queue_position == 2
        assert exc_info.value.expires_at == holder.expires_at
        pipe.incr.assert_called_once_with(
            "custodian:lease:retention_sweep:acme-learning:communications:queue"
        )

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self, client: MagicMock) -> None:
        store = RedisLeaseStore(client)
        lease = _lease()
        later = NOW + timedelta(minutes=10)

        renewed = await store.renew(lease, later + timedelta(minutes=15), later)

        assert renewed.expires_at == later + timedelta(minutes=15)
        assert renewed.renewed_at == later
        assert renewed.lock_id == lease.lock_id
        client.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_renew_lost_lease_raises(self, client: MagicMock) -> None:
        client.eval = AsyncMock(return_value=0)
        store = RedisLeaseStore(client)

        with pytest.raises(LockExpiredError):
            await store.renew(_lease(), NOW + timedelta(minutes=30), NOW)

    @pytest.mark.asyncio
    async def test_release(self, client: MagicMock) -> None:
        store = RedisLeaseStore(client)

        assert await store.release(_lease()) is True

        client.eval = AsyncMock(return_value=0)
        assert await store.release(_lease()) is False

    @pytest.mark.asyncio
    async def test_get_ignores_expired(self, client: MagicMock) -> None:
        client.get = AsyncMock(return_value=_lease(minutes=1).model_dump_json())
        store = RedisLeaseStore(client)

        assert await store.get("retention_sweep", "acme-learning:communications", NOW) is not None
        later = NOW + timedelta(minutes=2)
        assert await store.get("retention_sweep", "acme-learning:communications", later) is None

    @pytest.mark.asyncio
    async def test_cleanup_is_noop(self, client: MagicMock) -> None:
        assert await RedisLeaseStore(client).cleanup_expired(NOW) == 0


class TestManagerHealth:
    """Tests for ExecutionLockManager.health_check with a Redis store."""

    @pytest.mark.asyncio
    async def test_unreachable_backend_is_unhealthy(self, client: MagicMock) -> None:
        client.ping = AsyncMock(side_effect=ConnectionError("connection refused"))
        manager = ExecutionLockManager(RedisLeaseStore(client), "worker-a", clock=lambda: NOW)

        health = await manager.health_check()

        assert health["healthy"] is False
        assert health["holder"] == "worker-a"
        assert "connection refused" in health["error"]

    @pytest.mark.asyncio
    async def test_contended_acquire_reraises(self, client: MagicMock) -> None:
        client.set = AsyncMock(return_value=None)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True, None])
        client.pipeline.return_value = pipe
        manager = ExecutionLockManager(RedisLeaseStore(client), "worker-a", clock=lambda: NOW)

        with pytest.raises(LockBusyError) as exc_info:
            await manager.acquire("retention_sweep", "acme-learning:communications")

        assert exc_info.value.holder is None
        assert exc_info.value.queue_position == 1
