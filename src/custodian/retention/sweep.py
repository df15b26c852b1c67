"""Sweep engine: advances lifecycle records of one partition at a time.

A partition is an (organisation, data type) pair. Every sweep holds the
partition's execution lease for its whole duration, so at most one worker
mutates a partition at any moment; workers that find the lease taken skip
the partition and pick it up on a later cycle.

A sweep runs in stages:

1. Snapshot the records already due for secure erase.
2. Re-govern records whose applied policy is stale (new effective policy,
   new revision, or no policy at all).
3. Advance due pre-erase records along
   active -> retention_pending -> deletion_scheduled -> soft_deleted,
   tombstoning the resource on the last step. Transitions commit before
   the tombstone; a failed tombstone is retried with the erase backoff.
4. Erase the snapshot from step 1 in batches. Each batch's destruction,
   certificate and securely_erased transitions commit as one unit; on
   failure the batch stays in deletion_pending with the error recorded.

Because the erase snapshot is taken first, a resource is never tombstoned
and irreversibly erased within the same sweep.
"""

import time
from collections import defaultdict
from datetime import datetime, timedelta
from itertools import batched
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from custodian.config.settings import Settings
from custodian.core.audit import AuditLogger
from custodian.core.context import ActorType, create_context, operation_context
from custodian.core.exceptions import (
    CertificateIssuanceError,
    EraseExecutionError,
    LockBusyError,
    LockExpiredError,
    RetentionError,
)
from custodian.core.leases import ExecutionLockManager, Lease
from custodian.core.logging import LogContext
from custodian.db.models.audit import AuditEventType, AuditSeverity
from custodian.db.models.certificate import SecureDeletionCertificate
from custodian.db.models.lifecycle import LifecycleRecord
from custodian.db.models.policy import RetentionPolicy
from custodian.db.repositories.lifecycle import LifecycleRepository
from custodian.db.repositories.policy import PolicyRepository
from custodian.observability.metrics import record_erase_batch, record_sweep, record_transition
from custodian.retention.certificates import CertificateIssuer
from custodian.retention.erasure import SecureEraseExecutor
from custodian.retention.resolver import PolicyResolver
from custodian.retention.state_machine import (
    begin_erase,
    due_at,
    erased,
    next_state,
    set_attention,
    short_circuit,
)
from custodian.retention.types import (
    ERASE_QUEUE_STATUSES,
    PRE_ERASE_STATUSES,
    ActiveState,
    DataType,
    ErasureResult,
    LifecycleStatus,
    PolicyTerms,
    RequestOrigin,
    RetentionPendingState,
    SoftDeletedState,
    SweepResult,
    TriggerType,
    dump_state,
)
from custodian.utils.exceptions import ResourceStoreError

logger = structlog.get_logger()

SWEEP_LOCK_TYPE = "retention_sweep"

_GOVERNABLE = frozenset({LifecycleStatus.ACTIVE, LifecycleStatus.RETENTION_PENDING})

_ORIGIN_BY_TRIGGER = {
    TriggerType.CONSENT_WITHDRAWAL: RequestOrigin.USER_REQUEST,
    TriggerType.ACCOUNT_DELETION: RequestOrigin.USER_REQUEST,
    TriggerType.MANUAL_REQUEST: RequestOrigin.ADMIN_ACTION,
}


def partition_key(organisation_id: str, data_type: DataType | str) -> str:
    """Lease resource id of a partition."""
    value = data_type.value if isinstance(data_type, DataType) else data_type
    return f"{organisation_id}:{value}"


def request_origin_for(trigger: TriggerType) -> RequestOrigin:
    return _ORIGIN_BY_TRIGGER.get(trigger, RequestOrigin.RETENTION_POLICY)


def govern(record: LifecycleRecord, policy: RetentionPolicy | None, now: datetime) -> bool:
    """Apply the effective policy (or its absence) to an active/pending record.

    Recomputes ``retention_eligible_at`` from the record's creation time and
    snapshots the policy's deletion terms onto the record.

    Returns:
        True if the record changed.
    """
    if policy is None:
        if record.policy_id is None and record.retention_eligible_at is None:
            return False
        record.policy_id = None
        record.policy_revision = None
        record.retention_eligible_at = None
        record.deletion_method = None
        record.secure_erase_method = None
        record.legal_basis = None
        if isinstance(record.state, RetentionPendingState):
            record.apply_state(ActiveState(), at=now, next_action_at=None, reason="policy_removed")
            record_transition(LifecycleStatus.ACTIVE.value)
        else:
            record.next_action_at = None
        record.record_deferral("no effective retention policy", at=now)
        return True

    terms = PolicyTerms.from_policy(policy)
    eligible = record.data_created_at + terms.retention_period
    record.policy_id = policy.policy_id
    record.policy_revision = policy.revision
    record.retention_eligible_at = eligible
    record.deletion_method = terms.deletion_method.value
    record.secure_erase_method = terms.secure_erase_method.value
    record.legal_basis = terms.legal_basis.value
    record.next_action_at = due_at(record.state, retention_eligible_at=eligible, terms=terms)
    return True


def _is_stale(record: LifecycleRecord, policy: RetentionPolicy | None) -> bool:
    if policy is None:
        return record.policy_id is not None
    return record.policy_id != policy.policy_id or record.policy_revision != policy.revision


class SweepEngine:
    """Runs partition sweeps and event-triggered deletions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: ExecutionLockManager,
        executor: SecureEraseExecutor,
        issuer: CertificateIssuer,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.locks = lock_manager
        self.executor = executor
        self.issuer = issuer
        self.settings = settings

    def now(self) -> datetime:
        return self.locks.now()

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.lock_ttl_seconds)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register_resource(
        self,
        organisation_id: str,
        data_type: DataType | str,
        resource_table: str,
        resource_id: str,
        *,
        data_created_at: datetime,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> LifecycleRecord:
        """Start governing a resource; returns the existing record if already governed."""
        data_type = DataType(data_type)
        now = now or self.now()

        async with self.session_factory() as session:
            repo = LifecycleRepository(session)
            existing = await repo.get_by_resource(
                organisation_id, data_type.value, resource_table, resource_id
            )
            if existing is not None:
                return existing

            policy = await PolicyResolver(session).resolve(organisation_id, data_type, now)
            record = LifecycleRecord(
                organisation_id=organisation_id,
                user_id=user_id,
                data_type=data_type.value,
                resource_table=resource_table,
                resource_id=resource_id,
                status=LifecycleStatus.ACTIVE.value,
                state_data=dump_state(ActiveState()),
                data_created_at=data_created_at,
                history=[{"event": "registered", "at": now.isoformat(), "status": "active"}],
            )
            govern(record, policy, now)
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Registered concurrently by another caller
                await session.rollback()
                existing = await repo.get_by_resource(
                    organisation_id, data_type.value, resource_table, resource_id
                )
                if existing is None:
                    raise
                return existing

            logger.debug(
                "resource_registered",
                organisation_id=organisation_id,
                data_type=data_type.value,
                record_id=str(record.record_id),
                governed=policy is not None,
            )
            return record

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def run_cycle(self, now: datetime | None = None) -> list[SweepResult]:
        """Sweep every partition that has a policy or due records.

        A failing partition is logged and skipped; it never aborts the cycle.
        """
        now = now or self.now()
        async with self.session_factory() as session:
            partitions = await PolicyRepository(session).enabled_partitions()
            partitions |= await LifecycleRepository(session).due_partitions(now)

        results = []
        for organisation_id, data_type in sorted(partitions):
            try:
                results.append(await self.sweep_partition(organisation_id, data_type, now=now))
            except (RetentionError, SQLAlchemyError) as e:
                logger.error(
                    "sweep_partition_failed",
                    organisation_id=organisation_id,
                    data_type=data_type,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        logger.info(
            "sweep_cycle_completed",
            partitions=len(partitions),
            swept=sum(1 for r in results if not r.skipped),
            skipped=sum(1 for r in results if r.skipped),
        )
        return results

    async def sweep_partition(
        self,
        organisation_id: str,
        data_type: DataType | str,
        now: datetime | None = None,
    ) -> SweepResult:
        """Sweep one partition under its execution lease.

        Returns a skipped result without touching any record when another
        worker holds the partition.
        """
        data_type = DataType(data_type)
        now = now or self.now()
        result = SweepResult(organisation_id=organisation_id, data_type=data_type, started_at=now)
        started = time.monotonic()

        ctx = create_context(
            worker_id=self.locks.holder,
            organisation_id=organisation_id,
            data_type=data_type.value,
        )
        with (
            operation_context(ctx),
            LogContext(organisation_id=organisation_id, data_type=data_type.value),
        ):
            try:
                lease = await self.locks.acquire(
                    SWEEP_LOCK_TYPE,
                    partition_key(organisation_id, data_type),
                    ttl=self.lease_ttl,
                    reason="retention_sweep",
                )
            except LockBusyError as e:
                result.skipped = True
                result.completed_at = now
                record_sweep("skipped")
                logger.info("sweep_skipped", holder=e.holder, queue_position=e.queue_position)
                return result

            run = _PartitionSweep(self, lease, result, now)
            outcome = "failed"
            try:
                await run.execute()
                outcome = "completed"
            except LockExpiredError:
                result.aborted = True
                outcome = "aborted"
                logger.warning("sweep_aborted_lease_lost")
            finally:
                await self.locks.release(run.lease)
                result.completed_at = now
                record_sweep(outcome, time.monotonic() - started)

            logger.info("sweep_completed", outcome=outcome, **result.to_dict())
            return result

    # -------------------------------------------------------------------------
    # Event triggers
    # -------------------------------------------------------------------------

    async def trigger_event(
        self,
        organisation_id: str,
        user_id: str,
        data_type: DataType | str,
        trigger: TriggerType | str,
        reason: str | None = None,
        *,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> list[LifecycleRecord]:
        """Schedule deletion of a data subject's records in response to an event.

        Bypasses the retention time gate; policies requiring manual review
        leave the records in retention_pending awaiting approval. Records
        the event cannot affect get a deferral entry instead.

        Returns:
            Records whose state changed.

        Raises:
            ValueError: If ``trigger`` is time_based.
            LockBusyError: If the partition stayed busy for every attempt.
        """
        trigger = TriggerType(trigger)
        if trigger == TriggerType.TIME_BASED:
            raise ValueError("time_based is not an event trigger")
        data_type = DataType(data_type)
        now = now or self.now()

        ctx = create_context(
            worker_id=self.locks.holder,
            organisation_id=organisation_id,
            data_type=data_type.value,
            actor_id=actor_id,
            actor_type=ActorType.SERVICE,
        )
        with (
            operation_context(ctx),
            LogContext(organisation_id=organisation_id, data_type=data_type.value),
        ):
            lease = await self._acquire_for_event(organisation_id, data_type)
            try:
                return await self._apply_event(
                    organisation_id, user_id, data_type, trigger, reason, now
                )
            finally:
                await self.locks.release(lease)

    async def _acquire_for_event(self, organisation_id: str, data_type: DataType) -> Lease:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(LockBusyError),
            stop=stop_after_attempt(self.settings.event_lock_attempts),
            wait=wait_exponential(multiplier=self.settings.event_lock_wait_seconds, max=30),
            reraise=True,
        ):
            with attempt:
                lease = await self.locks.acquire(
                    SWEEP_LOCK_TYPE,
                    partition_key(organisation_id, data_type),
                    ttl=self.lease_ttl,
                    reason="deletion_event",
                )
        return lease

    async def _apply_event(
        self,
        organisation_id: str,
        user_id: str,
        data_type: DataType,
        trigger: TriggerType,
        reason: str | None,
        now: datetime,
    ) -> list[LifecycleRecord]:
        async with self.session_factory() as session:
            policy = await PolicyResolver(session).resolve(organisation_id, data_type, now)
            records = await LifecycleRepository(session).list_for_user(
                organisation_id, user_id, data_type.value
            )
            terms = PolicyTerms.from_policy(policy) if policy is not None else None

            changed = []
            for record in records:
                if terms is None:
                    record.record_deferral(f"{trigger.value}: no effective retention policy", at=now)
                    continue
                if record.lifecycle_status in _GOVERNABLE and _is_stale(record, policy):
                    govern(record, policy, now)

                new_state = short_circuit(
                    record.state, terms=terms, trigger=trigger, reason=reason, now=now
                )
                if new_state is None:
                    record.record_deferral(
                        f"{trigger.value}: no change from {record.status}", at=now
                    )
                    continue

                record.deletion_reason = reason or trigger.value
                record.apply_state(
                    new_state,
                    at=now,
                    next_action_at=due_at(
                        new_state, retention_eligible_at=record.retention_eligible_at, terms=terms
                    ),
                    reason=trigger.value,
                )
                record_transition(new_state.status)
                if isinstance(new_state, RetentionPendingState):
                    record.record_deferral("awaiting manual review", at=now)
                changed.append(record)

            await AuditLogger(session).log_event(
                AuditEventType.DELETION_TRIGGERED,
                {
                    "trigger": trigger.value,
                    "reason": reason,
                    "user_id": user_id,
                    "data_type": data_type.value,
                    "records_found": len(records),
                    "records_changed": len(changed),
                },
                organisation_id=organisation_id,
                resource_type="data_subject",
                resource_id=user_id,
            )
            await session.commit()

        logger.info(
            "deletion_event_applied",
            trigger=trigger.value,
            records_found=len(records),
            records_changed=len(changed),
        )
        return changed


class _PartitionSweep:
    """One sweep of one partition, holding its lease and session."""

    def __init__(self, engine: SweepEngine, lease: Lease, result: SweepResult, now: datetime):
        self.engine = engine
        self.lease = lease
        self.result = result
        self.now = now
        self.settings = engine.settings
        self.session: AsyncSession
        self.repo: LifecycleRepository

    @property
    def organisation_id(self) -> str:
        return self.result.organisation_id

    @property
    def data_type(self) -> str:
        return self.result.data_type.value

    async def renew(self) -> None:
        """Keep the lease alive between units of work.

        Raises:
            LockExpiredError: If the lease was lost; the sweep must stop.
        """
        self.lease = await self.engine.locks.renew_if_needed(
            self.lease,
            timedelta(seconds=self.settings.lock_renew_margin_seconds),
            self.engine.lease_ttl,
        )

    async def execute(self) -> None:
        async with self.engine.session_factory() as session:
            self.session = session
            self.repo = LifecycleRepository(session)

            erase_ids = await self.repo.ids_due_for_erase(
                self.organisation_id, self.data_type, self.now
            )
            policy = await PolicyResolver(session).resolve(
                self.organisation_id, self.data_type, self.now
            )
            self.result.policy_id = policy.policy_id if policy is not None else None
            terms = PolicyTerms.from_policy(policy) if policy is not None else None

            await self._refresh_governance(policy)

            due = await self.repo.ids_due_before_erase(
                self.organisation_id, self.data_type, self.now
            )
            for record_id in due:
                await self.renew()
                await self._advance(record_id, terms)

            ready = await self._start_erase(erase_ids, terms)
            for group in await self._erase_groups(ready):
                await self.renew()
                await self._erase_batch(*group)

    # -------------------------------------------------------------------------
    # Governance
    # -------------------------------------------------------------------------

    async def _refresh_governance(self, policy: RetentionPolicy | None) -> None:
        stale = await self.repo.ids_needing_governance(
            self.organisation_id,
            self.data_type,
            policy.policy_id if policy is not None else None,
            policy.revision if policy is not None else None,
        )
        for chunk in batched(stale, self.settings.erase_batch_size):
            await self.renew()
            records = await self.repo.get_many(chunk, refresh=True)
            changed = sum(
                1
                for record in records
                if record.lifecycle_status in _GOVERNABLE and govern(record, policy, self.now)
            )
            try:
                await self.session.commit()
            except SQLAlchemyError as e:
                await self.session.rollback()
                self.result.errors.append(f"governance: {e}")
                logger.warning("governance_refresh_failed", error=str(e), records=len(chunk))
                if policy is not None:
                    await self.session.refresh(policy)
                continue
            self.result.records_governed += changed

    # -------------------------------------------------------------------------
    # Pre-erase pipeline
    # -------------------------------------------------------------------------

    async def _advance(self, record_id: UUID, terms: PolicyTerms | None) -> None:
        """Run every due pre-erase transition of one record, stopping at soft_deleted.

        Transitions up to deletion_scheduled commit before the tombstone is
        attempted, so a failing resource store never undoes them.
        """
        record = await self.repo.get(record_id, refresh=True)
        if record is None or record.lifecycle_status not in PRE_ERASE_STATUSES:
            return

        reached: list[str] = []
        soft_delete: SoftDeletedState | None = None
        try:
            state = record.state
            while True:
                new_state = next_state(
                    state,
                    retention_eligible_at=record.retention_eligible_at,
                    terms=terms,
                    now=self.now,
                )
                if new_state is None:
                    break
                if isinstance(new_state, SoftDeletedState):
                    soft_delete = new_state
                    break
                record.apply_state(
                    new_state,
                    at=self.now,
                    next_action_at=due_at(
                        new_state,
                        retention_eligible_at=record.retention_eligible_at,
                        terms=terms,
                    ),
                    reason=_transition_reason(new_state.status),
                )
                reached.append(new_state.status)
                state = new_state

            if isinstance(state, RetentionPendingState) and terms is not None and terms.needs_review:
                record.record_deferral("awaiting manual review", at=self.now)
                logger.info("record_awaiting_review", record_id=str(record_id))
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            logger.info("record_changed_concurrently", record_id=str(record_id))
            return
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.result.errors.append(f"{record_id}: {e}")
            logger.warning("record_advance_failed", record_id=str(record_id), error=str(e))
            return

        self.result.transitions += len(reached)
        for status in reached:
            record_transition(status)

        if soft_delete is not None:
            await self._soft_delete(record, soft_delete, terms)

    async def _soft_delete(
        self, record: LifecycleRecord, state: SoftDeletedState, terms: PolicyTerms | None
    ) -> None:
        record_id = record.record_id
        try:
            present = await self.engine.executor.tombstone(self.session, record, self.now)
            if not present:
                record.record_deferral("resource already absent at tombstone", at=self.now)
            # The erase retry budget starts with the tombstoned resource
            record.retry_count = 0
            record.apply_state(
                state,
                at=self.now,
                next_action_at=due_at(
                    state, retention_eligible_at=record.retention_eligible_at, terms=terms
                ),
                reason=_transition_reason(state.status),
            )
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            logger.info("record_changed_concurrently", record_id=str(record_id))
            return
        except (ResourceStoreError, SQLAlchemyError, OSError) as e:
            await self.session.rollback()
            await self._tombstone_failed(record_id, e)
            return

        self.result.transitions += 1
        record_transition(state.status)

    async def _tombstone_failed(self, record_id: UUID, error: Exception) -> None:
        """Count a failed tombstone against the record and schedule its retry or stall it."""
        self.result.errors.append(f"{record_id}: tombstone failed: {error}")
        record = await self.repo.get(record_id, refresh=True)
        if record is None or record.lifecycle_status != LifecycleStatus.DELETION_SCHEDULED:
            return

        record.record_error(f"tombstone failed: {error}", code="TOMBSTONE_FAILED", at=self.now)
        exhausted = record.retry_count > self.settings.max_erase_retries
        record.next_action_at = None if exhausted else self.now + self._retry_delay(record)

        await AuditLogger(self.session).log_event(
            AuditEventType.TOMBSTONE_FAILED,
            {
                "error": str(error),
                "attempt": record.retry_count,
                "attention_required": exhausted,
            },
            organisation_id=self.organisation_id,
            severity=AuditSeverity.ERROR if exhausted else AuditSeverity.WARNING,
            resource_type="lifecycle_record",
            resource_id=str(record_id),
        )
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("tombstone_failure_not_recorded", record_id=str(record_id), error=str(e))
            return

        if exhausted:
            logger.error("tombstone_retries_exhausted", record_id=str(record_id), error=str(error))
        else:
            logger.warning(
                "tombstone_failed",
                record_id=str(record_id),
                attempt=record.retry_count,
                retry_at=record.next_action_at.isoformat(),
                error=str(error),
            )

    def _retry_delay(self, record: LifecycleRecord) -> timedelta:
        return timedelta(
            seconds=self.settings.erase_retry_backoff_seconds * 2 ** (record.retry_count - 1)
        )

    # -------------------------------------------------------------------------
    # Secure erase
    # -------------------------------------------------------------------------

    async def _start_erase(self, record_ids: list[UUID], terms: PolicyTerms | None) -> list[UUID]:
        """Move due records into deletion_pending and mark the erase as started."""
        ready = []
        for record_id in record_ids:
            await self.renew()
            record = await self.repo.get(record_id, refresh=True)
            if (
                record is None
                or record.lifecycle_status not in ERASE_QUEUE_STATUSES
                or record.next_action_at is None
                or record.next_action_at > self.now
            ):
                continue

            current = record.state
            state = current
            if isinstance(state, SoftDeletedState):
                state = next_state(
                    state,
                    retention_eligible_at=record.retention_eligible_at,
                    terms=terms,
                    now=self.now,
                )
                if state is None:
                    continue
            state = begin_erase(state, now=self.now)

            if state != current:
                record.apply_state(
                    state,
                    at=self.now,
                    next_action_at=due_at(state, retention_eligible_at=record.retention_eligible_at),
                    reason="secure_erase_started",
                )
                try:
                    await self.session.commit()
                except SQLAlchemyError as e:
                    await self.session.rollback()
                    logger.info("erase_start_skipped", record_id=str(record_id), error=str(e))
                    continue
                if current.status != state.status:
                    self.result.transitions += 1
                    record_transition(state.status)
            ready.append(record_id)
        return ready

    async def _erase_groups(
        self, record_ids: list[UUID]
    ) -> list[tuple[list[UUID], str, str, RequestOrigin]]:
        """Batches sharing erase method, legal basis, origin and data subject."""
        records = await self.repo.get_many(record_ids, refresh=True)
        groups: dict[tuple[str, str, str, str], list[UUID]] = defaultdict(list)
        for record in records:
            origin = request_origin_for(record.state.trigger)
            key = (
                record.secure_erase_method,
                record.legal_basis,
                origin.value,
                record.user_id or "",
            )
            groups[key].append(record.record_id)

        batches = []
        for (method, legal_basis, origin, _user), ids in sorted(groups.items()):
            for chunk in batched(ids, self.settings.erase_batch_size):
                batches.append((list(chunk), method, legal_basis, RequestOrigin(origin)))
        return batches

    async def _erase_batch(
        self,
        record_ids: list[UUID],
        method: str,
        legal_basis: str,
        origin: RequestOrigin,
    ) -> None:
        records = [
            r
            for r in await self.repo.get_many(record_ids, refresh=True)
            if r.lifecycle_status == LifecycleStatus.DELETION_PENDING
        ]
        if not records:
            return
        by_id = {r.record_id: r for r in records}

        try:
            failure: EraseExecutionError | None = None
            try:
                erasure = await self.engine.executor.erase(
                    self.session, records, method, now=self.now
                )
            except EraseExecutionError as e:
                if e.completed is None:
                    raise
                # Certify what was destroyed; the rest is retried
                erasure, failure = e.completed, e

            certificate = await self.engine.issuer.issue(
                self.session, erasure, legal_basis, origin, issued_at=self.now
            )
            await self._mark_erased([by_id[rid] for rid in erasure.record_ids], erasure, certificate)
            if failure is not None:
                await self._record_failures(
                    [by_id[rid] for rid in failure.failed_record_ids], failure, method
                )
            await self.session.commit()
        except (EraseExecutionError, CertificateIssuanceError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.warning(
                "erase_batch_failed",
                method=method,
                record_count=len(records),
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._fail_batch(record_ids, e, method)
            return

        self.result.records_erased += erasure.record_count
        self.result.certificates.append(certificate.certificate_number)
        record_erase_batch(method, "success", erasure.record_count)
        for _ in range(erasure.record_count):
            record_transition(LifecycleStatus.SECURELY_ERASED.value)

    async def _mark_erased(
        self,
        records: list[LifecycleRecord],
        erasure: ErasureResult,
        certificate: SecureDeletionCertificate,
    ) -> None:
        for record in records:
            record.certificate_number = certificate.certificate_number
            record.apply_state(
                erased(
                    record.state,
                    at=self.now,
                    certificate_number=certificate.certificate_number,
                    manifest_hash=erasure.manifest_hash,
                ),
                at=self.now,
                next_action_at=None,
                reason="secure_erase_completed",
            )
        self.result.transitions += len(records)

        await AuditLogger(self.session).log_event(
            AuditEventType.DATA_ERASED,
            {
                "certificate_number": certificate.certificate_number,
                "method": erasure.manifest.method.value,
                "record_ids": [str(r) for r in erasure.record_ids],
                "manifest_hash": erasure.manifest_hash,
            },
            organisation_id=self.organisation_id,
            severity=AuditSeverity.WARNING,
            resource_type="secure_deletion_certificate",
            resource_id=certificate.certificate_number,
        )

    async def _fail_batch(self, record_ids: list[UUID], error: Exception, method: str) -> None:
        records = [
            r
            for r in await self.repo.get_many(record_ids, refresh=True)
            if r.lifecycle_status == LifecycleStatus.DELETION_PENDING
        ]
        await self._record_failures(records, error, method)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.result.errors.append(f"erase failure not recorded: {e}")
            logger.error("erase_failure_not_recorded", error=str(e), record_count=len(records))

    async def _record_failures(
        self, records: list[LifecycleRecord], error: Exception, method: str
    ) -> None:
        """Append the error to each record and schedule its retry or flag it."""
        if not records:
            return
        code = error.code if isinstance(error, RetentionError) else "STORAGE_ERROR"
        exhausted = []

        for record in records:
            record.record_error(str(error), code=code, at=self.now)
            if record.retry_count > self.settings.max_erase_retries:
                record.apply_state(
                    set_attention(record.state, True),
                    at=self.now,
                    next_action_at=None,
                    reason="erase_retries_exhausted",
                )
                exhausted.append(str(record.record_id))
            else:
                record.next_action_at = self.now + self._retry_delay(record)

        await AuditLogger(self.session).log_event(
            AuditEventType.ERASE_FAILED,
            {
                "method": method,
                "code": code,
                "error": str(error),
                "record_ids": [str(r.record_id) for r in records],
                "attention_required": exhausted,
            },
            organisation_id=self.organisation_id,
            severity=AuditSeverity.ERROR if exhausted else AuditSeverity.WARNING,
            resource_type="lifecycle_record",
        )

        self.result.erase_failures += len(records)
        self.result.errors.append(f"{code}: {error}")
        record_erase_batch(method, "failure", len(records))
        if exhausted:
            logger.error("erase_retries_exhausted", record_ids=exhausted, method=method)


def _transition_reason(status: str) -> str:
    return {
        LifecycleStatus.RETENTION_PENDING.value: "retention_period_elapsed",
        LifecycleStatus.DELETION_SCHEDULED.value: "automatic_deletion",
        LifecycleStatus.SOFT_DELETED.value: "soft_delete_due",
    }.get(status, status)
