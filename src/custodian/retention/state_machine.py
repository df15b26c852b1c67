"""Lifecycle state machine.

Pure functions over LifecycleState variants. They never touch storage or
the clock: callers pass ``now`` and the effective PolicyTerms and persist
whatever state comes back. Functions that advance the pipeline return
``None`` when nothing is due, which makes re-running them on a record
already in (or past) its target state a no-op.

Pipeline:
    active -> retention_pending -> deletion_scheduled -> soft_deleted
           -> deletion_pending -> securely_erased

Any non-terminal state can be held as archived or frozen; holds are only
released by an explicit administrative action, which restores the state
the record was held from.
"""

from datetime import datetime
from typing import Literal

from custodian.core.exceptions import EraseInFlightError, InvalidTransitionError
from custodian.retention.types import (
    ActiveState,
    ArchivedState,
    DeletionPendingState,
    DeletionScheduledState,
    FrozenState,
    PolicyTerms,
    RetentionPendingState,
    SecurelyErasedState,
    SoftDeletedState,
    TriggerType,
)

HoldKind = Literal["archived", "frozen"]


def due_at(
    state,
    *,
    retention_eligible_at: datetime | None,
    terms: PolicyTerms | None = None,
    retry_at: datetime | None = None,
) -> datetime | None:
    """When a record in ``state`` next needs attention from a sweep.

    Returns None for records that only an administrator can move: ungoverned,
    awaiting review, flagged for attention, held, or terminal.
    """
    match state:
        case ActiveState():
            return retention_eligible_at if terms is not None else None
        case RetentionPendingState():
            if terms is None or terms.needs_review:
                return None
            return state.entered_at
        case DeletionScheduledState():
            return state.soft_delete_scheduled_at
        case SoftDeletedState():
            return state.secure_erase_scheduled_at
        case DeletionPendingState():
            if state.attention_required:
                return None
            return retry_at or state.entered_at
        case _:
            return None


def _schedule(
    *,
    anchor: datetime,
    now: datetime,
    terms: PolicyTerms,
    trigger: TriggerType,
    reason: str | None,
    approved_by: str | None = None,
) -> DeletionScheduledState:
    return DeletionScheduledState(
        scheduled_at=now,
        soft_delete_scheduled_at=anchor,
        secure_erase_scheduled_at=anchor + terms.erase_delay,
        trigger=trigger,
        reason=reason,
        approved_by=approved_by,
    )


def next_state(
    state,
    *,
    retention_eligible_at: datetime | None,
    terms: PolicyTerms | None,
    now: datetime,
):
    """The state a time-driven sweep moves the record to, or None if not due.

    ``deletion_pending -> securely_erased`` is not produced here: it requires
    a successful erase and a certificate (see ``erased``).
    """
    match state:
        case ActiveState():
            if terms is None or retention_eligible_at is None or now < retention_eligible_at:
                return None
            return RetentionPendingState(entered_at=now)

        case RetentionPendingState():
            if terms is None or terms.needs_review:
                return None
            anchor = state.entered_at
            if state.trigger == TriggerType.TIME_BASED and retention_eligible_at is not None:
                anchor = retention_eligible_at
            return _schedule(
                anchor=anchor, now=now, terms=terms, trigger=state.trigger, reason=state.reason
            )

        case DeletionScheduledState():
            if now < state.soft_delete_scheduled_at:
                return None
            return SoftDeletedState(
                soft_delete_scheduled_at=state.soft_delete_scheduled_at,
                soft_deleted_at=now,
                secure_erase_scheduled_at=state.secure_erase_scheduled_at,
                trigger=state.trigger,
            )

        case SoftDeletedState():
            if now < state.secure_erase_scheduled_at:
                return None
            return DeletionPendingState(
                soft_deleted_at=state.soft_deleted_at,
                secure_erase_scheduled_at=state.secure_erase_scheduled_at,
                entered_at=now,
                trigger=state.trigger,
            )

        case _:
            return None


def short_circuit(
    state,
    *,
    terms: PolicyTerms,
    trigger: TriggerType,
    reason: str | None,
    now: datetime,
):
    """Schedule deletion immediately in response to an event.

    Bypasses the retention time gate but honours manual review: when the
    policy needs review the record waits in retention_pending instead.
    Returns None when the event changes nothing (already scheduled no later
    than now, already tombstoned, erased or held).
    """
    if trigger == TriggerType.TIME_BASED:
        raise ValueError("time_based is not an event trigger")

    match state:
        case ActiveState():
            if terms.needs_review:
                return RetentionPendingState(entered_at=now, trigger=trigger, reason=reason)
            return _schedule(anchor=now, now=now, terms=terms, trigger=trigger, reason=reason)

        case RetentionPendingState():
            if terms.needs_review:
                if state.trigger != TriggerType.TIME_BASED:
                    return None
                return state.model_copy(update={"trigger": trigger, "reason": reason})
            return _schedule(anchor=now, now=now, terms=terms, trigger=trigger, reason=reason)

        case DeletionScheduledState():
            if state.soft_delete_scheduled_at <= now:
                return None
            return DeletionScheduledState(
                scheduled_at=now,
                soft_delete_scheduled_at=now,
                secure_erase_scheduled_at=min(
                    state.secure_erase_scheduled_at, now + terms.erase_delay
                ),
                trigger=trigger,
                reason=reason,
                approved_by=state.approved_by,
            )

        case _:
            return None


# =============================================================================
# Administrative Transitions
# =============================================================================


def approve(state, *, approver: str, terms: PolicyTerms, now: datetime) -> DeletionScheduledState:
    """Manual approval of a record awaiting review."""
    if not isinstance(state, RetentionPendingState):
        raise InvalidTransitionError(state.status, "approve")
    return _schedule(
        anchor=now,
        now=now,
        terms=terms,
        trigger=state.trigger,
        reason=state.reason,
        approved_by=approver,
    )


def reject(state, *, reviewer: str, reason: str, now: datetime) -> ArchivedState:
    """Manual rejection: the data is retained under an indefinite hold."""
    if not isinstance(state, RetentionPendingState):
        raise InvalidTransitionError(state.status, "reject")
    return ArchivedState(archived_at=now, reason=reason, actor=reviewer, held_from=state)


def hold(state, *, kind: HoldKind, reason: str, actor: str | None, now: datetime):
    """Place an archive or freeze hold on a non-terminal record."""
    action = "archive" if kind == "archived" else "freeze"
    match state:
        case SecurelyErasedState() | ArchivedState() | FrozenState():
            raise InvalidTransitionError(state.status, action)
        case DeletionPendingState() if state.erase_started_at is not None:
            raise EraseInFlightError(action)
    if kind == "archived":
        return ArchivedState(archived_at=now, reason=reason, actor=actor, held_from=state)
    return FrozenState(frozen_at=now, reason=reason, actor=actor, held_from=state)


def release_hold(state, *, kind: HoldKind):
    """Return a held record to the state it was held from."""
    expected = ArchivedState if kind == "archived" else FrozenState
    if not isinstance(state, expected):
        raise InvalidTransitionError(state.status, "unarchive" if kind == "archived" else "unfreeze")
    return state.held_from


# =============================================================================
# Erase Bookkeeping
# =============================================================================


def begin_erase(state: DeletionPendingState, *, now: datetime) -> DeletionPendingState:
    """Mark the first destructive attempt; later attempts keep the first time."""
    if state.erase_started_at is not None:
        return state
    return state.model_copy(update={"erase_started_at": now})


def set_attention(state: DeletionPendingState, required: bool) -> DeletionPendingState:
    """Flag (or clear) a record whose erase retries are exhausted."""
    if not isinstance(state, DeletionPendingState):
        raise InvalidTransitionError(state.status, "change retry state of")
    return state.model_copy(update={"attention_required": required})


def erased(
    state: DeletionPendingState,
    *,
    at: datetime,
    certificate_number: str,
    manifest_hash: str,
) -> SecurelyErasedState:
    """Terminal state after a certified erase."""
    if not isinstance(state, DeletionPendingState):
        raise InvalidTransitionError(state.status, "mark erased")
    return SecurelyErasedState(
        soft_deleted_at=state.soft_deleted_at,
        secure_erased_at=at,
        certificate_number=certificate_number,
        manifest_hash=manifest_hash,
    )
