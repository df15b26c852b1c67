"""Integration tests for SQL-backed execution leases."""

from datetime import timedelta

import pytest

from custodian.core.exceptions import LockBusyError, LockExpiredError
from custodian.core.leases import ExecutionLockManager, SqlLeaseStore

pytestmark = pytest.mark.integration

LOCK_TYPE = "retention_sweep"
PARTITION = "acme-learning:communications"


@pytest.fixture
def other_manager(lock_store: SqlLeaseStore, clock) -> ExecutionLockManager:
    return ExecutionLockManager(lock_store, "worker-b", default_ttl=timedelta(minutes=15), clock=clock)


class TestAcquire:
    """Tests for lease acquisition."""

    @pytest.mark.asyncio
    async def test_acquire_records_holder(self, lock_manager: ExecutionLockManager, clock) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION, reason="test")

        assert lease.holder == "worker-a"
        assert lease.key == f"{LOCK_TYPE}:{PARTITION}"
        assert lease.expires_at == clock() + timedelta(minutes=15)

        current = await lock_manager.get_current_lock(LOCK_TYPE, PARTITION)
        assert current is not None
        assert current.lock_id == lease.lock_id
        assert current.reason == "test"

    @pytest.mark.asyncio
    async def test_second_holder_fails_fast(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager
    ) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)

        with pytest.raises(LockBusyError) as first:
            await other_manager.acquire(LOCK_TYPE, PARTITION)
        with pytest.raises(LockBusyError) as second:
            await other_manager.acquire(LOCK_TYPE, PARTITION)

        assert first.value.holder == "worker-a"
        assert first.value.expires_at == lease.expires_at
        assert first.value.queue_position == 1
        assert second.value.queue_position == 2

    @pytest.mark.asyncio
    async def test_same_holder_cannot_reacquire(self, lock_manager: ExecutionLockManager) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION)

        with pytest.raises(LockBusyError):
            await lock_manager.acquire(LOCK_TYPE, PARTITION)

    @pytest.mark.asyncio
    async def test_different_keys_are_independent(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager
    ) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION)

        lease = await other_manager.acquire(LOCK_TYPE, "acme-learning:support_tickets")

        assert lease.holder == "worker-b"

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager, clock
    ) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION, ttl=timedelta(minutes=1))
        clock.advance(minutes=2)

        lease = await other_manager.acquire(LOCK_TYPE, PARTITION)

        assert lease.holder == "worker-b"
        current = await lock_manager.get_current_lock(LOCK_TYPE, PARTITION)
        assert current.holder == "worker-b"


class TestRenewAndRelease:
    """Tests for renewal and release."""

    @pytest.mark.asyncio
    async def test_renew_extends_expiry(self, lock_manager: ExecutionLockManager, clock) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)
        clock.advance(minutes=10)

        renewed = await lock_manager.renew(lease)

        assert renewed.expires_at == clock() + timedelta(minutes=15)
        assert renewed.renewed_at == clock()
        current = await lock_manager.get_current_lock(LOCK_TYPE, PARTITION)
        assert current.expires_at == renewed.expires_at

    @pytest.mark.asyncio
    async def test_renew_if_needed_respects_margin(
        self, lock_manager: ExecutionLockManager, clock
    ) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)

        unchanged = await lock_manager.renew_if_needed(lease, timedelta(minutes=5))
        assert unchanged is lease

        clock.advance(minutes=11)
        renewed = await lock_manager.renew_if_needed(lease, timedelta(minutes=5))
        assert renewed.expires_at == clock() + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_renew_after_takeover_fails(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager, clock
    ) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)
        clock.advance(minutes=16)
        taken = await other_manager.acquire(LOCK_TYPE, PARTITION)

        with pytest.raises(LockExpiredError):
            await lock_manager.renew(lease)

        assert await lock_manager.release(lease) is False
        assert await other_manager.release(taken) is True

    @pytest.mark.asyncio
    async def test_renew_expired_lease_fails(
        self, lock_manager: ExecutionLockManager, clock
    ) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)
        clock.advance(minutes=15)

        with pytest.raises(LockExpiredError):
            await lock_manager.renew(lease)

    @pytest.mark.asyncio
    async def test_release_frees_key(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager
    ) -> None:
        lease = await lock_manager.acquire(LOCK_TYPE, PARTITION)

        assert await lock_manager.release(lease) is True
        assert await lock_manager.is_locked(LOCK_TYPE, PARTITION) is False
        assert (await other_manager.acquire(LOCK_TYPE, PARTITION)).holder == "worker-b"

    @pytest.mark.asyncio
    async def test_lease_context_manager(self, lock_manager: ExecutionLockManager) -> None:
        async with lock_manager.lease(LOCK_TYPE, PARTITION) as lease:
            assert lease.holder == "worker-a"
            assert await lock_manager.is_locked(LOCK_TYPE, PARTITION)

        assert not await lock_manager.is_locked(LOCK_TYPE, PARTITION)

    @pytest.mark.asyncio
    async def test_lease_context_manager_releases_on_error(
        self, lock_manager: ExecutionLockManager
    ) -> None:
        with pytest.raises(RuntimeError):
            async with lock_manager.lease(LOCK_TYPE, PARTITION):
                raise RuntimeError("sweep crashed")

        assert not await lock_manager.is_locked(LOCK_TYPE, PARTITION)


class TestInspection:
    """Tests for listing, cleanup and health."""

    @pytest.mark.asyncio
    async def test_list_active_locks(
        self, lock_manager: ExecutionLockManager, other_manager: ExecutionLockManager, clock
    ) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION)
        clock.advance(seconds=1)
        await other_manager.acquire(LOCK_TYPE, "globex-academy:communications")
        await other_manager.acquire("maintenance", "nightly", ttl=timedelta(seconds=30))

        active = await lock_manager.list_active_locks()
        sweeps = await lock_manager.list_active_locks(LOCK_TYPE)

        assert len(active) == 3
        assert [lease.holder for lease in sweeps] == ["worker-a", "worker-b"]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, lock_manager: ExecutionLockManager, clock) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION, ttl=timedelta(minutes=1))
        await lock_manager.acquire(LOCK_TYPE, "globex-academy:communications")
        clock.advance(minutes=2)

        assert await lock_manager.cleanup_expired() == 1
        assert len(await lock_manager.list_active_locks()) == 1

    @pytest.mark.asyncio
    async def test_health_check(self, lock_manager: ExecutionLockManager) -> None:
        await lock_manager.acquire(LOCK_TYPE, PARTITION)

        health = await lock_manager.health_check()

        assert health == {"healthy": True, "holder": "worker-a", "active_locks": 1}
