"""Tests for the lifecycle state machine."""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from custodian.core.exceptions import EraseInFlightError, InvalidTransitionError
from custodian.retention import state_machine as sm
from custodian.retention.types import (
    ActiveState,
    ArchivedState,
    DeletionMethod,
    DeletionPendingState,
    DeletionScheduledState,
    FrozenState,
    LegalBasis,
    PolicyTerms,
    RetentionPendingState,
    SecureEraseMethod,
    SecurelyErasedState,
    SoftDeletedState,
    TriggerType,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
CREATED = NOW - timedelta(days=400)
ELIGIBLE = CREATED + timedelta(days=365)


def _terms(**overrides) -> PolicyTerms:
    values = {
        "policy_id": UUID(int=1),
        "revision": 1,
        "retention_period_days": 365,
        "grace_period_days": 30,
        "deletion_method": DeletionMethod.SOFT,
        "secure_erase_method": SecureEraseMethod.OVERWRITE_MULTIPLE,
        "legal_basis": LegalBasis.LEGITIMATE_INTERESTS,
    }
    values.update(overrides)
    return PolicyTerms(**values)


TERMS = _terms()
REVIEW_TERMS = _terms(requires_manual_review=True)


def _pending(**overrides) -> DeletionPendingState:
    values = {
        "soft_deleted_at": NOW - timedelta(days=31),
        "secure_erase_scheduled_at": NOW - timedelta(days=1),
        "entered_at": NOW,
    }
    values.update(overrides)
    return DeletionPendingState(**values)


class TestTimeDrivenTransitions:
    """Tests for next_state along the pipeline."""

    def test_active_not_due_before_eligibility(self) -> None:
        state = sm.next_state(
            ActiveState(),
            retention_eligible_at=NOW + timedelta(days=1),
            terms=TERMS,
            now=NOW,
        )
        assert state is None

    def test_active_becomes_retention_pending_at_eligibility(self) -> None:
        state = sm.next_state(ActiveState(), retention_eligible_at=ELIGIBLE, terms=TERMS, now=NOW)

        assert isinstance(state, RetentionPendingState)
        assert state.entered_at == NOW
        assert state.trigger == TriggerType.TIME_BASED

    def test_ungoverned_record_stays_active(self) -> None:
        assert sm.next_state(ActiveState(), retention_eligible_at=None, terms=None, now=NOW) is None
        assert sm.due_at(ActiveState(), retention_eligible_at=ELIGIBLE, terms=None) is None

    def test_schedule_anchored_at_eligibility(self) -> None:
        state = sm.next_state(
            RetentionPendingState(entered_at=NOW),
            retention_eligible_at=ELIGIBLE,
            terms=TERMS,
            now=NOW,
        )

        assert isinstance(state, DeletionScheduledState)
        assert state.scheduled_at == NOW
        assert state.soft_delete_scheduled_at == ELIGIBLE
        assert state.secure_erase_scheduled_at == ELIGIBLE + timedelta(days=30)

    def test_hard_deletion_has_no_grace(self) -> None:
        state = sm.next_state(
            RetentionPendingState(entered_at=NOW),
            retention_eligible_at=ELIGIBLE,
            terms=_terms(deletion_method=DeletionMethod.HARD),
            now=NOW,
        )

        assert state.secure_erase_scheduled_at == state.soft_delete_scheduled_at

    @pytest.mark.parametrize(
        "terms",
        [_terms(requires_manual_review=True), _terms(automatic_deletion=False)],
    )
    def test_review_required_blocks_scheduling(self, terms: PolicyTerms) -> None:
        pending = RetentionPendingState(entered_at=NOW)

        assert sm.next_state(pending, retention_eligible_at=ELIGIBLE, terms=terms, now=NOW) is None
        assert sm.due_at(pending, retention_eligible_at=ELIGIBLE, terms=terms) is None

    def test_scheduled_soft_deletes_when_due(self) -> None:
        scheduled = DeletionScheduledState(
            scheduled_at=NOW,
            soft_delete_scheduled_at=NOW + timedelta(hours=1),
            secure_erase_scheduled_at=NOW + timedelta(days=30, hours=1),
        )

        assert sm.next_state(scheduled, retention_eligible_at=ELIGIBLE, terms=TERMS, now=NOW) is None

        later = NOW + timedelta(hours=2)
        state = sm.next_state(scheduled, retention_eligible_at=ELIGIBLE, terms=TERMS, now=later)
        assert isinstance(state, SoftDeletedState)
        assert state.soft_deleted_at == later
        assert state.secure_erase_scheduled_at == scheduled.secure_erase_scheduled_at

    def test_soft_deleted_waits_for_grace_period(self) -> None:
        soft = SoftDeletedState(
            soft_delete_scheduled_at=NOW,
            soft_deleted_at=NOW,
            secure_erase_scheduled_at=NOW + timedelta(days=30),
            trigger=TriggerType.ACCOUNT_DELETION,
        )

        early = NOW + timedelta(days=29)
        assert sm.next_state(soft, retention_eligible_at=None, terms=TERMS, now=early) is None

        due = NOW + timedelta(days=30)
        state = sm.next_state(soft, retention_eligible_at=None, terms=TERMS, now=due)
        assert isinstance(state, DeletionPendingState)
        assert state.entered_at == due
        assert state.trigger == TriggerType.ACCOUNT_DELETION
        assert state.erase_started_at is None

    def test_deletion_pending_needs_certified_erase(self) -> None:
        assert sm.next_state(_pending(), retention_eligible_at=ELIGIBLE, terms=TERMS, now=NOW) is None

    def test_overdue_record_reaches_soft_deleted_in_one_pass(self) -> None:
        state = ActiveState()
        for _ in range(3):
            state = sm.next_state(state, retention_eligible_at=ELIGIBLE, terms=TERMS, now=NOW)

        assert isinstance(state, SoftDeletedState)
        assert state.soft_delete_scheduled_at == ELIGIBLE
        # Erase date (eligible + 30 days) has already passed
        assert state.secure_erase_scheduled_at == CREATED + timedelta(days=395)
        assert state.secure_erase_scheduled_at <= NOW

    def test_erased_state_never_advances(self) -> None:
        erased = sm.erased(
            _pending(), at=NOW, certificate_number="SDEL-ACME-00000000", manifest_hash="ab" * 32
        )

        assert sm.next_state(erased, retention_eligible_at=ELIGIBLE, terms=TERMS, now=NOW) is None


class TestDueAt:
    """Tests for due_at."""

    def test_retry_time_overrides_entry(self) -> None:
        retry_at = NOW + timedelta(minutes=5)

        assert sm.due_at(_pending(), retention_eligible_at=None, retry_at=retry_at) == retry_at

    def test_attention_required_stalls(self) -> None:
        flagged = sm.set_attention(_pending(), True)

        assert sm.due_at(flagged, retention_eligible_at=None) is None

    def test_holds_and_terminal_not_due(self) -> None:
        frozen = FrozenState(frozen_at=NOW, reason="dispute", held_from=ActiveState())

        assert sm.due_at(frozen, retention_eligible_at=ELIGIBLE, terms=TERMS) is None


class TestShortCircuit:
    """Tests for event-triggered scheduling."""

    def test_active_scheduled_immediately(self) -> None:
        state = sm.short_circuit(
            ActiveState(),
            terms=TERMS,
            trigger=TriggerType.ACCOUNT_DELETION,
            reason="account closed",
            now=NOW,
        )

        assert isinstance(state, DeletionScheduledState)
        assert state.soft_delete_scheduled_at == NOW
        assert state.secure_erase_scheduled_at == NOW + timedelta(days=30)
        assert state.trigger == TriggerType.ACCOUNT_DELETION
        assert state.reason == "account closed"

    def test_review_required_waits_in_pending(self) -> None:
        state = sm.short_circuit(
            ActiveState(),
            terms=REVIEW_TERMS,
            trigger=TriggerType.CONSENT_WITHDRAWAL,
            reason=None,
            now=NOW,
        )

        assert isinstance(state, RetentionPendingState)
        assert state.trigger == TriggerType.CONSENT_WITHDRAWAL

    def test_time_based_is_not_an_event(self) -> None:
        with pytest.raises(ValueError):
            sm.short_circuit(
                ActiveState(), terms=TERMS, trigger=TriggerType.TIME_BASED, reason=None, now=NOW
            )

    def test_future_schedule_pulled_forward(self) -> None:
        scheduled = DeletionScheduledState(
            scheduled_at=NOW - timedelta(days=1),
            soft_delete_scheduled_at=NOW + timedelta(days=10),
            secure_erase_scheduled_at=NOW + timedelta(days=40),
            approved_by="dpo@acme.test",
        )

        state = sm.short_circuit(
            scheduled, terms=TERMS, trigger=TriggerType.MANUAL_REQUEST, reason=None, now=NOW
        )

        assert state.soft_delete_scheduled_at == NOW
        assert state.secure_erase_scheduled_at == NOW + timedelta(days=30)
        assert state.approved_by == "dpo@acme.test"

    @pytest.mark.parametrize(
        "state",
        [
            SoftDeletedState(
                soft_delete_scheduled_at=NOW,
                soft_deleted_at=NOW,
                secure_erase_scheduled_at=NOW + timedelta(days=30),
            ),
            FrozenState(frozen_at=NOW, reason="dispute", held_from=ActiveState()),
        ],
    )
    def test_event_cannot_affect_tombstoned_or_held(self, state) -> None:
        result = sm.short_circuit(
            state, terms=TERMS, trigger=TriggerType.ACCOUNT_DELETION, reason=None, now=NOW
        )
        assert result is None


class TestAdministrativeTransitions:
    """Tests for review decisions and holds."""

    def test_approve_schedules_from_now(self) -> None:
        state = sm.approve(
            RetentionPendingState(entered_at=NOW - timedelta(days=3)),
            approver="dpo",
            terms=REVIEW_TERMS,
            now=NOW,
        )

        assert state.soft_delete_scheduled_at == NOW
        assert state.approved_by == "dpo"

    def test_approve_requires_pending(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.approve(ActiveState(), approver="dpo", terms=TERMS, now=NOW)

        assert exc_info.value.current_status == "active"

    def test_reject_archives(self) -> None:
        pending = RetentionPendingState(entered_at=NOW)

        state = sm.reject(pending, reviewer="dpo", reason="litigation", now=NOW)

        assert isinstance(state, ArchivedState)
        assert state.held_from == pending
        assert state.reason == "litigation"

    def test_hold_and_release_restore_exact_state(self) -> None:
        soft = SoftDeletedState(
            soft_delete_scheduled_at=NOW,
            soft_deleted_at=NOW,
            secure_erase_scheduled_at=NOW + timedelta(days=30),
        )

        held = sm.hold(soft, kind="archived", reason="legal hold", actor="counsel", now=NOW)

        assert isinstance(held, ArchivedState)
        assert sm.release_hold(held, kind="archived") == soft

    def test_release_wrong_hold_kind(self) -> None:
        frozen = sm.hold(ActiveState(), kind="frozen", reason="dispute", actor=None, now=NOW)

        with pytest.raises(InvalidTransitionError):
            sm.release_hold(frozen, kind="archived")

    def test_cannot_hold_once_erase_started(self) -> None:
        started = sm.begin_erase(_pending(), now=NOW)

        with pytest.raises(EraseInFlightError) as exc_info:
            sm.hold(started, kind="frozen", reason="dispute", actor=None, now=NOW)

        assert exc_info.value.code == "ERASE_IN_FLIGHT"

    def test_pending_erase_not_started_can_be_held(self) -> None:
        held = sm.hold(_pending(), kind="frozen", reason="dispute", actor=None, now=NOW)

        assert isinstance(held, FrozenState)

    def test_cannot_hold_erased_or_held(self) -> None:
        erased = SecurelyErasedState(
            soft_deleted_at=NOW,
            secure_erased_at=NOW,
            certificate_number="SDEL-ACME-00000000",
            manifest_hash="00" * 32,
        )
        frozen = sm.hold(ActiveState(), kind="frozen", reason="x", actor=None, now=NOW)

        with pytest.raises(InvalidTransitionError):
            sm.hold(erased, kind="archived", reason="x", actor=None, now=NOW)
        with pytest.raises(InvalidTransitionError):
            sm.hold(frozen, kind="archived", reason="x", actor=None, now=NOW)


class TestEraseBookkeeping:
    """Tests for erase start, attention flag and completion."""

    def test_begin_erase_keeps_first_time(self) -> None:
        first = sm.begin_erase(_pending(), now=NOW)
        again = sm.begin_erase(first, now=NOW + timedelta(hours=1))

        assert again.erase_started_at == NOW

    def test_erased_is_terminal(self) -> None:
        pending = _pending()

        state = sm.erased(
            pending, at=NOW, certificate_number="SDEL-ACME-1234ABCD", manifest_hash="ff" * 32
        )

        assert state.soft_deleted_at == pending.soft_deleted_at
        assert state.certificate_number == "SDEL-ACME-1234ABCD"

    def test_erased_requires_pending(self) -> None:
        with pytest.raises(InvalidTransitionError):
            sm.erased(ActiveState(), at=NOW, certificate_number="x", manifest_hash="y")
