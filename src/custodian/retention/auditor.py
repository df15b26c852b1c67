"""Compliance auditor.

Scores how well a retention policy is being honoured by scanning the
lifecycle records of its data type. The auditor never modifies lifecycle
records; its only write is a new, immutable ComplianceAudit snapshot.

Record classification:
- held: archived or frozen; excluded from the rate and reported as an issue
- error: erase retries exhausted (never also counted as overdue)
- overdue: still active or retention_pending past retention eligibility
- compliant: erased before eligibility + grace + tolerance, or still
  within that deadline
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.config.settings import Settings
from custodian.core.exceptions import PolicyNotFoundError
from custodian.db.models.compliance import ComplianceAudit
from custodian.db.models.lifecycle import LifecycleRecord
from custodian.db.models.policy import RetentionPolicy
from custodian.db.repositories.compliance import ComplianceAuditRepository
from custodian.db.repositories.lifecycle import LifecycleRepository
from custodian.db.repositories.policy import PolicyRepository
from custodian.observability.metrics import set_compliance_rate
from custodian.retention.resolver import find_priority_conflicts, resolve_effective_policy
from custodian.retention.types import (
    HOLD_STATUSES,
    LifecycleStatus,
    PolicyTerms,
    RiskLevel,
    SecurelyErasedState,
)

logger = structlog.get_logger()

_OVERDUE_STATUSES = frozenset({LifecycleStatus.ACTIVE, LifecycleStatus.RETENTION_PENDING})


def risk_level_for(compliance_rate: float, overdue_records: int) -> RiskLevel:
    """Risk level from the compliance rate and the overdue backlog."""
    if compliance_rate < 70 or overdue_records > 100:
        return RiskLevel.CRITICAL
    if compliance_rate < 85 or overdue_records > 50:
        return RiskLevel.HIGH
    if compliance_rate < 95 or overdue_records > 10:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass
class _Tally:
    total: int = 0
    compliant: int = 0
    overdue: int = 0
    errors: int = 0
    late: int = 0
    processed: int = 0
    held: int = 0
    retention_days: list[float] = field(default_factory=list)
    oldest: datetime | None = None

    @property
    def rate(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.compliant / self.total * 100, 2)


class ComplianceAuditor:
    """Produces ComplianceAudit snapshots."""

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings
        self._policies = PolicyRepository(session)
        self._records = LifecycleRepository(session)
        self._audits = ComplianceAuditRepository(session)

    async def audit(
        self,
        organisation_id: str,
        policy_id: UUID,
        now: datetime | None = None,
    ) -> ComplianceAudit:
        """Audit one policy and persist the snapshot.

        Raises:
            PolicyNotFoundError: If the policy does not exist in the organisation.
        """
        now = now or datetime.now(UTC)
        started = time.monotonic()

        policy = await self._policies.get(policy_id, refresh=True)
        if policy is None or policy.organisation_id != organisation_id:
            raise PolicyNotFoundError(organisation_id, policy_id=policy_id)

        records = await self._records.list_for_partition(organisation_id, policy.data_type)
        tally = self._classify(records, PolicyTerms.from_policy(policy), now)
        issues = await self._issues(policy, tally, now)
        rate = tally.rate
        risk = risk_level_for(rate, tally.overdue)

        audit = ComplianceAudit(
            organisation_id=organisation_id,
            policy_id=policy.policy_id,
            data_type=policy.data_type,
            audit_date=now,
            total_records=tally.total,
            compliant_records=tally.compliant,
            overdue_records=tally.overdue,
            error_records=tally.errors,
            processed_records=tally.processed,
            held_records=tally.held,
            compliance_rate=rate,
            is_compliant=rate >= self.settings.compliance_threshold,
            risk_level=risk.value,
            issues=issues,
            recommendations=self._recommendations(policy, tally),
            average_retention_days=(
                round(sum(tally.retention_days) / len(tally.retention_days), 2)
                if tally.retention_days
                else None
            ),
            oldest_record_at=tally.oldest,
            next_audit_due=now + timedelta(days=self.settings.audit_interval_days),
            audit_duration_ms=int((time.monotonic() - started) * 1000),
            created_at=now,
        )
        self.session.add(audit)
        await self.session.commit()

        set_compliance_rate(organisation_id, policy.data_type, rate)
        logger.info(
            "compliance_audit_completed",
            organisation_id=organisation_id,
            policy_id=str(policy.policy_id),
            data_type=policy.data_type,
            compliance_rate=rate,
            risk_level=risk.value,
            total_records=tally.total,
            overdue_records=tally.overdue,
            error_records=tally.errors,
        )
        return audit

    async def audit_organisation(
        self, organisation_id: str, now: datetime | None = None
    ) -> list[ComplianceAudit]:
        """Audit every enabled policy of an organisation."""
        now = now or datetime.now(UTC)
        policies = await self._policies.list_for_organisation(organisation_id, enabled=True)
        return [await self.audit(organisation_id, p.policy_id, now) for p in policies]

    async def policies_due(self, now: datetime) -> list[RetentionPolicy]:
        """Enabled policies never audited or whose next audit is due."""
        due = []
        for policy in await self._policies.list_enabled():
            latest = await self._audits.latest_for_policy(policy.policy_id)
            if latest is None or latest.next_audit_due <= now:
                due.append(policy)
        return due

    def _classify(
        self, records: list[LifecycleRecord], terms: PolicyTerms, now: datetime
    ) -> _Tally:
        tally = _Tally()
        tolerance = timedelta(hours=self.settings.compliance_tolerance_hours)

        for record in records:
            status = record.lifecycle_status
            if status in HOLD_STATUSES:
                tally.held += 1
                continue

            tally.total += 1
            eligible = record.retention_eligible_at
            deadline = eligible + terms.erase_delay + tolerance if eligible else None

            state = record.state
            if isinstance(state, SecurelyErasedState):
                tally.processed += 1
                erased_at = state.secure_erased_at
                tally.retention_days.append(
                    (erased_at - record.data_created_at).total_seconds() / 86400
                )
                if deadline is None or erased_at <= deadline:
                    tally.compliant += 1
                else:
                    tally.late += 1
                continue

            if tally.oldest is None or record.data_created_at < tally.oldest:
                tally.oldest = record.data_created_at

            if record.retry_count > self.settings.max_erase_retries:
                tally.errors += 1
            elif status in _OVERDUE_STATUSES and eligible is not None and now > eligible:
                tally.overdue += 1
            elif deadline is None or now <= deadline:
                tally.compliant += 1
            else:
                tally.late += 1

        return tally

    async def _issues(
        self, policy: RetentionPolicy, tally: _Tally, now: datetime
    ) -> list[dict[str, Any]]:
        issues: list[dict[str, Any]] = []
        if tally.overdue:
            issues.append(
                {
                    "type": "overdue_records",
                    "count": tally.overdue,
                    "description": f"{tally.overdue} records are past their retention period",
                }
            )
        if tally.errors:
            issues.append(
                {
                    "type": "erase_failures",
                    "count": tally.errors,
                    "description": f"{tally.errors} records exhausted their erase retries",
                }
            )
        if tally.late:
            issues.append(
                {
                    "type": "late_processing",
                    "count": tally.late,
                    "description": f"{tally.late} records missed their erase deadline",
                }
            )
        if tally.held:
            issues.append(
                {
                    "type": "held_records",
                    "count": tally.held,
                    "description": f"{tally.held} records are archived or frozen",
                }
            )

        candidates = await self._policies.list_candidates(policy.organisation_id, policy.data_type)
        conflicts = find_priority_conflicts(
            candidates, policy.organisation_id, policy.data_type, now
        )
        if conflicts:
            issues.append(
                {
                    "type": "conflicting_priorities",
                    "count": len(conflicts),
                    "policy_ids": [str(p.policy_id) for p in conflicts],
                    "description": (
                        f"{len(conflicts)} enabled policies share priority {conflicts[0].priority}"
                    ),
                }
            )
        effective = resolve_effective_policy(
            candidates, policy.organisation_id, policy.data_type, now
        )
        if effective is not None and effective.policy_id != policy.policy_id:
            issues.append(
                {
                    "type": "policy_not_effective",
                    "count": 1,
                    "effective_policy_id": str(effective.policy_id),
                    "description": "Another policy currently governs this data type",
                }
            )
        return issues

    def _recommendations(self, policy: RetentionPolicy, tally: _Tally) -> list[dict[str, Any]]:
        recommendations: list[dict[str, Any]] = []
        if tally.rate < self.settings.compliance_threshold:
            recommendations.append(
                {
                    "type": "compliance_improvement",
                    "priority": "high",
                    "description": "Review failed and overdue records and resolve processing errors",
                }
            )
        if tally.overdue:
            recommendations.append(
                {
                    "type": "overdue_processing",
                    "priority": "medium",
                    "description": f"Process {tally.overdue} overdue records",
                }
            )
        if not policy.automatic_deletion or policy.requires_manual_review:
            recommendations.append(
                {
                    "type": "automation",
                    "priority": "low",
                    "description": "Enable automatic deletion to reduce manual review backlog",
                }
            )
        return recommendations
