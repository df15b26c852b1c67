"""Background scheduler for retention sweeps and compliance audits."""

import asyncio
import contextlib
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError

from custodian.core.exceptions import RetentionError
from custodian.core.logging import log_exception
from custodian.retention.auditor import ComplianceAuditor
from custodian.retention.sweep import SweepEngine
from custodian.retention.types import SweepResult

logger = structlog.get_logger()


class RetentionScheduler:
    """Runs a sweep cycle, then any due compliance audits, on a fixed interval.

    Every worker process runs its own scheduler; partition leases keep
    concurrent workers from sweeping the same partition.
    """

    def __init__(self, engine: SweepEngine, interval_seconds: float | None = None):
        self.engine = engine
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else engine.settings.sweep_interval_seconds
        )
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.cycles_completed = 0
        self.cycles_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("retention_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("retention_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop, cancelling a cycle in progress."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(
            "retention_scheduler_stopped",
            cycles_completed=self.cycles_completed,
            cycles_failed=self.cycles_failed,
        )

    async def run_once(self, now: datetime | None = None) -> list[SweepResult]:
        """One sweep cycle followed by the audits that are due."""
        now = now or self.engine.now()
        results = await self.engine.run_cycle(now)
        await self.run_due_audits(now)
        self.cycles_completed += 1
        return results

    async def run_due_audits(self, now: datetime) -> int:
        """Audit every enabled policy whose next audit is due."""
        audited = 0
        async with self.engine.session_factory() as session:
            auditor = ComplianceAuditor(session, self.engine.settings)
            due = [(p.organisation_id, p.policy_id) for p in await auditor.policies_due(now)]
            for organisation_id, policy_id in due:
                try:
                    await auditor.audit(organisation_id, policy_id, now)
                    audited += 1
                except (RetentionError, SQLAlchemyError) as e:
                    await session.rollback()
                    logger.error(
                        "compliance_audit_failed",
                        organisation_id=organisation_id,
                        policy_id=str(policy_id),
                        error=str(e),
                    )
        return audited

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # A failed cycle must not end the loop; the next one retries
                self.cycles_failed += 1
                log_exception(logger, e, stage="retention_cycle")
            await asyncio.sleep(self.interval_seconds)
