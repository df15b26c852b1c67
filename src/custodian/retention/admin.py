"""Administrative surface of the retention engine.

Policy CRUD, read-only listings, manual review decisions, holds, erase
retry recovery and certificate access. Every mutating action runs under a
human operation context and appends an audit event in the same commit as
the change it describes.

Record updates are guarded by the record's version column: if a sweep
changed the record in the meantime the commit raises StaleDataError and
the caller should reload and retry.
"""

from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.config.settings import Settings
from custodian.core.audit import AuditLogger
from custodian.core.context import ActorType, create_context, operation_context
from custodian.core.exceptions import (
    CertificateNotFoundError,
    InvalidTransitionError,
    PolicyInUseError,
    PolicyNotFoundError,
    RecordNotFoundError,
)
from custodian.db.models.audit import AuditEventType, AuditSeverity
from custodian.db.models.certificate import SecureDeletionCertificate
from custodian.db.models.compliance import ComplianceAudit
from custodian.db.models.lifecycle import LifecycleRecord
from custodian.db.models.policy import RetentionPolicy
from custodian.db.repositories.certificate import CertificateRepository
from custodian.db.repositories.compliance import ComplianceAuditRepository
from custodian.db.repositories.lifecycle import LifecycleRepository
from custodian.db.repositories.policy import PolicyRepository
from custodian.observability.metrics import record_transition
from custodian.retention import state_machine
from custodian.retention.certificates import CertificateIssuer
from custodian.retention.types import (
    DeletionPendingState,
    DeletionScheduledState,
    LifecycleStatus,
    PolicyDraft,
    PolicyTerms,
    PolicyUpdate,
)

logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RetentionAdminService:
    """Operator actions on policies, lifecycle records and certificates."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        issuer: CertificateIssuer | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.session = session
        self.settings = settings
        self.issuer = issuer or CertificateIssuer.from_settings(settings)
        self._clock = clock
        self._policies = PolicyRepository(session)
        self._records = LifecycleRepository(session)
        self._certificates = CertificateRepository(session)
        self._audits = ComplianceAuditRepository(session)
        self._audit_log = AuditLogger(session)

    @contextmanager
    def _acting(self, organisation_id: str, actor_id: str | None):
        ctx = create_context(
            worker_id=self.settings.worker_id,
            organisation_id=organisation_id,
            actor_id=actor_id,
            actor_type=ActorType.HUMAN,
        )
        with operation_context(ctx):
            yield ctx

    # =========================================================================
    # Policies
    # =========================================================================

    async def create_policy(self, draft: PolicyDraft, *, actor_id: str | None = None) -> RetentionPolicy:
        now = self._clock()
        with self._acting(draft.organisation_id, actor_id):
            policy = RetentionPolicy(
                **draft.model_dump(mode="json"),
                revision=1,
                created_at=now,
                updated_at=now,
            )
            if policy.created_by is None:
                policy.created_by = actor_id
            self.session.add(policy)
            await self.session.flush()
            await self._audit_log.log_event(
                AuditEventType.POLICY_CREATED,
                draft.model_dump(mode="json"),
                organisation_id=draft.organisation_id,
                resource_type="retention_policy",
                resource_id=str(policy.policy_id),
            )
            await self.session.commit()
        logger.info(
            "retention_policy_created",
            organisation_id=policy.organisation_id,
            policy_id=str(policy.policy_id),
            data_type=policy.data_type,
        )
        return policy

    async def get_policy(self, organisation_id: str, policy_id: UUID) -> RetentionPolicy:
        policy = await self._policies.get(policy_id)
        if policy is None or policy.organisation_id != organisation_id:
            raise PolicyNotFoundError(organisation_id, policy_id=policy_id)
        return policy

    async def list_policies(
        self,
        organisation_id: str,
        *,
        data_type: str | None = None,
        enabled: bool | None = None,
    ) -> list[RetentionPolicy]:
        return await self._policies.list_for_organisation(
            organisation_id, data_type=data_type, enabled=enabled
        )

    async def update_policy(
        self,
        organisation_id: str,
        policy_id: UUID,
        update: PolicyUpdate,
        *,
        actor_id: str | None = None,
    ) -> RetentionPolicy:
        """Apply a partial update and bump the policy revision.

        Records governed by the policy pick up the new terms on the next sweep.
        """
        changes = update.model_dump(mode="json", exclude_unset=True)
        with self._acting(organisation_id, actor_id):
            policy = await self.get_policy(organisation_id, policy_id)
            if not changes:
                return policy
            for field, value in changes.items():
                setattr(policy, field, value)
            policy.revision += 1
            policy.updated_at = self._clock()
            await self._audit_log.log_event(
                AuditEventType.POLICY_UPDATED,
                {"changes": changes, "revision": policy.revision},
                organisation_id=organisation_id,
                resource_type="retention_policy",
                resource_id=str(policy_id),
            )
            await self.session.commit()
        logger.info(
            "retention_policy_updated",
            policy_id=str(policy_id),
            revision=policy.revision,
            fields=sorted(changes),
        )
        return policy

    async def delete_policy(
        self, organisation_id: str, policy_id: UUID, *, actor_id: str | None = None
    ) -> None:
        """Delete a policy that nothing references; disable it otherwise.

        Raises:
            PolicyInUseError: If lifecycle records or audits reference the policy.
        """
        with self._acting(organisation_id, actor_id):
            policy = await self.get_policy(organisation_id, policy_id)
            in_use = await self._records.count_for_policy(policy_id)
            in_use += len(await self._audits.list_audits(organisation_id, policy_id=policy_id, limit=1))
            if in_use:
                raise PolicyInUseError(policy_id, in_use)
            await self._audit_log.log_event(
                AuditEventType.POLICY_DELETED,
                {"name": policy.name, "data_type": policy.data_type},
                organisation_id=organisation_id,
                resource_type="retention_policy",
                resource_id=str(policy_id),
            )
            await self.session.delete(policy)
            await self.session.commit()
        logger.info("retention_policy_deleted", policy_id=str(policy_id))

    # =========================================================================
    # Listings
    # =========================================================================

    async def get_record(self, organisation_id: str, record_id: UUID) -> LifecycleRecord:
        record = await self._records.get(record_id, refresh=True)
        if record is None or record.organisation_id != organisation_id:
            raise RecordNotFoundError(record_id)
        return record

    async def list_records(
        self,
        organisation_id: str,
        *,
        status: LifecycleStatus | str | None = None,
        data_type: str | None = None,
        user_id: str | None = None,
        attention_required: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LifecycleRecord]:
        return await self._records.list_records(
            organisation_id,
            status=status,
            data_type=data_type,
            user_id=user_id,
            attention_required=attention_required,
            limit=limit,
            offset=offset,
        )

    async def list_audits(
        self,
        organisation_id: str,
        *,
        data_type: str | None = None,
        policy_id: UUID | None = None,
        risk_level: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ComplianceAudit]:
        return await self._audits.list_audits(
            organisation_id,
            data_type=data_type,
            policy_id=policy_id,
            risk_level=risk_level,
            limit=limit,
            offset=offset,
        )

    async def retention_status(self, organisation_id: str) -> dict[str, Any]:
        """Summary of an organisation's retention state."""
        counts = await self._records.count_by_status(organisation_id)
        attention = await self._records.list_records(
            organisation_id, attention_required=True, limit=1000
        )
        policies = await self._policies.list_for_organisation(organisation_id)
        audits = await self._audits.list_audits(organisation_id, limit=len(policies) or 1)
        return {
            "organisation_id": organisation_id,
            "records_by_status": {s.value: counts.get(s.value, 0) for s in LifecycleStatus},
            "total_records": sum(counts.values()),
            "attention_required": [str(r.record_id) for r in attention],
            "policies": {
                "total": len(policies),
                "enabled": sum(1 for p in policies if p.enabled),
            },
            "latest_audits": [
                {
                    "policy_id": str(a.policy_id),
                    "data_type": a.data_type,
                    "audit_date": a.audit_date.isoformat(),
                    "compliance_rate": a.compliance_rate,
                    "risk_level": a.risk_level,
                }
                for a in audits
            ],
        }

    # =========================================================================
    # Manual Review
    # =========================================================================

    async def _terms_for(self, record: LifecycleRecord) -> PolicyTerms | None:
        if record.policy_id is None:
            return None
        policy = await self._policies.get(record.policy_id)
        return PolicyTerms.from_policy(policy) if policy is not None else None

    async def approve_review(
        self, organisation_id: str, record_id: UUID, *, approver: str
    ) -> LifecycleRecord:
        """Schedule deletion of a record awaiting manual review.

        Raises:
            InvalidTransitionError: If the record is not in retention_pending.
            PolicyNotFoundError: If the record is not governed by a policy.
        """
        now = self._clock()
        with self._acting(organisation_id, approver):
            record = await self.get_record(organisation_id, record_id)
            terms = await self._terms_for(record)
            if terms is None:
                raise PolicyNotFoundError(organisation_id, record.data_type)
            new_state = state_machine.approve(record.state, approver=approver, terms=terms, now=now)
            record.apply_state(
                new_state,
                at=now,
                next_action_at=state_machine.due_at(
                    new_state, retention_eligible_at=record.retention_eligible_at, terms=terms
                ),
                reason=f"approved by {approver}",
            )
            await self._audit_log.log_event(
                AuditEventType.REVIEW_APPROVED,
                {"soft_delete_scheduled_at": new_state.soft_delete_scheduled_at.isoformat()},
                organisation_id=organisation_id,
                resource_type="lifecycle_record",
                resource_id=str(record_id),
            )
            await self.session.commit()
        record_transition(new_state.status)
        logger.info("review_approved", record_id=str(record_id), approver=approver)
        return record

    async def reject_review(
        self, organisation_id: str, record_id: UUID, *, reviewer: str, reason: str
    ) -> LifecycleRecord:
        """Keep a record awaiting review: it is archived with the reason."""
        now = self._clock()
        with self._acting(organisation_id, reviewer):
            record = await self.get_record(organisation_id, record_id)
            new_state = state_machine.reject(record.state, reviewer=reviewer, reason=reason, now=now)
            record.apply_state(new_state, at=now, next_action_at=None, reason=reason)
            await self._audit_log.log_event(
                AuditEventType.REVIEW_REJECTED,
                {"reason": reason},
                organisation_id=organisation_id,
                resource_type="lifecycle_record",
                resource_id=str(record_id),
            )
            await self.session.commit()
        record_transition(new_state.status)
        logger.info("review_rejected", record_id=str(record_id), reviewer=reviewer)
        return record

    # =========================================================================
    # Holds
    # =========================================================================

    async def _hold(
        self,
        organisation_id: str,
        record_id: UUID,
        kind: state_machine.HoldKind,
        reason: str,
        actor_id: str | None,
        event_type: AuditEventType,
    ) -> LifecycleRecord:
        now = self._clock()
        with self._acting(organisation_id, actor_id):
            record = await self.get_record(organisation_id, record_id)
            previous = record.status
            new_state = state_machine.hold(
                record.state, kind=kind, reason=reason, actor=actor_id, now=now
            )
            record.apply_state(new_state, at=now, next_action_at=None, reason=reason)
            await self._audit_log.log_event(
                event_type,
                {"reason": reason, "held_from": previous},
                organisation_id=organisation_id,
                severity=AuditSeverity.WARNING,
                resource_type="lifecycle_record",
                resource_id=str(record_id),
            )
            await self.session.commit()
        record_transition(new_state.status)
        logger.info("record_held", record_id=str(record_id), kind=kind, held_from=previous)
        return record

    async def _release(
        self,
        organisation_id: str,
        record_id: UUID,
        kind: state_machine.HoldKind,
        actor_id: str | None,
        event_type: AuditEventType,
    ) -> LifecycleRecord:
        now = self._clock()
        with self._acting(organisation_id, actor_id):
            record = await self.get_record(organisation_id, record_id)
            restored = state_machine.release_hold(record.state, kind=kind)
            terms = await self._terms_for(record)
            record.apply_state(
                restored,
                at=now,
                next_action_at=state_machine.due_at(
                    restored, retention_eligible_at=record.retention_eligible_at, terms=terms
                ),
                reason=f"{kind} hold released",
            )
            await self._audit_log.log_event(
                event_type,
                {"restored_status": restored.status},
                organisation_id=organisation_id,
                resource_type="lifecycle_record",
                resource_id=str(record_id),
            )
            await self.session.commit()
        record_transition(restored.status)
        logger.info("record_released", record_id=str(record_id), kind=kind, status=restored.status)
        return record

    async def freeze(
        self, organisation_id: str, record_id: UUID, *, reason: str, actor_id: str | None = None
    ) -> LifecycleRecord:
        """Temporarily halt automatic processing of a record.

        Raises:
            EraseInFlightError: If a secure erase of the record has started.
            InvalidTransitionError: If the record is erased or already held.
        """
        return await self._hold(
            organisation_id, record_id, "frozen", reason, actor_id, AuditEventType.RECORD_FROZEN
        )

    async def unfreeze(
        self, organisation_id: str, record_id: UUID, *, actor_id: str | None = None
    ) -> LifecycleRecord:
        return await self._release(
            organisation_id, record_id, "frozen", actor_id, AuditEventType.RECORD_UNFROZEN
        )

    async def archive(
        self, organisation_id: str, record_id: UUID, *, reason: str, actor_id: str | None = None
    ) -> LifecycleRecord:
        """Place a record under an indefinite hold, e.g. legal preservation."""
        return await self._hold(
            organisation_id, record_id, "archived", reason, actor_id, AuditEventType.RECORD_ARCHIVED
        )

    async def unarchive(
        self, organisation_id: str, record_id: UUID, *, actor_id: str | None = None
    ) -> LifecycleRecord:
        return await self._release(
            organisation_id, record_id, "archived", actor_id, AuditEventType.RECORD_UNARCHIVED
        )

    # =========================================================================
    # Erase Recovery
    # =========================================================================

    async def retry_erasure(
        self, organisation_id: str, record_id: UUID, *, actor_id: str | None = None
    ) -> LifecycleRecord:
        """Return a record whose erase or tombstone retries are exhausted to the queue.

        The retry budget starts over; earlier errors stay on the record.
        """
        now = self._clock()
        with self._acting(organisation_id, actor_id):
            record = await self.get_record(organisation_id, record_id)
            state = record.state
            failed_attempts = record.retry_count
            if isinstance(state, DeletionPendingState) and state.attention_required:
                record.retry_count = 0
                record.apply_state(
                    state_machine.set_attention(state, False),
                    at=now,
                    next_action_at=now,
                    reason="erase retry requested",
                )
            elif (
                isinstance(state, DeletionScheduledState)
                and record.next_action_at is None
                and failed_attempts > self.settings.max_erase_retries
            ):
                record.retry_count = 0
                record.apply_state(
                    state, at=now, next_action_at=now, reason="tombstone retry requested"
                )
            else:
                raise InvalidTransitionError(record.status, "retry erasure of")
            await self._audit_log.log_event(
                AuditEventType.ERASE_RETRY_RESET,
                {"failed_attempts": failed_attempts, "status": record.status},
                organisation_id=organisation_id,
                resource_type="lifecycle_record",
                resource_id=str(record_id),
            )
            await self.session.commit()
        logger.info("erase_retry_reset", record_id=str(record_id), failed_attempts=failed_attempts)
        return record

    # =========================================================================
    # Certificates
    # =========================================================================

    async def _find_certificate(
        self, organisation_id: str, reference: UUID | str
    ) -> SecureDeletionCertificate:
        if isinstance(reference, UUID):
            certificate = await self._certificates.get(reference)
        else:
            certificate = await self._certificates.get_by_number(reference)
        if certificate is None or certificate.organisation_id != organisation_id:
            raise CertificateNotFoundError(str(reference))
        return certificate

    async def get_certificate(
        self,
        organisation_id: str,
        reference: UUID | str,
        *,
        actor_id: str | None = None,
    ) -> SecureDeletionCertificate:
        """Download a certificate by id or certificate number; the access is audited."""
        with self._acting(organisation_id, actor_id):
            certificate = await self._find_certificate(organisation_id, reference)
            await self._audit_log.log_event(
                AuditEventType.CERTIFICATE_DOWNLOADED,
                {"certificate_number": certificate.certificate_number},
                organisation_id=organisation_id,
                resource_type="secure_deletion_certificate",
                resource_id=str(certificate.certificate_id),
            )
            await self.session.commit()
        return certificate

    async def certificate_for_record(
        self, organisation_id: str, record_id: UUID
    ) -> SecureDeletionCertificate:
        """The certificate covering an erased record."""
        record = await self.get_record(organisation_id, record_id)
        if record.certificate_number is None:
            raise CertificateNotFoundError(f"record:{record_id}")
        return await self._find_certificate(organisation_id, record.certificate_number)

    async def verify_certificate(self, organisation_id: str, reference: UUID | str) -> bool:
        """Check a certificate's manifest hash and signature."""
        certificate = await self._find_certificate(organisation_id, reference)
        return self.issuer.verify(certificate)
