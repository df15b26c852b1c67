"""Exception taxonomy for the retention lifecycle engine.

Every engine error carries a machine-readable ``code`` and structured
``details`` so sweeps can record it on a LifecycleRecord and the
administrative surface can report it without string parsing.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from custodian.utils.exceptions import CustodianError


class RetentionError(CustodianError):
    """Base exception for retention engine errors."""

    def __init__(
        self,
        message: str,
        code: str = "RETENTION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


# =============================================================================
# Lookup Errors
# =============================================================================


class PolicyNotFoundError(RetentionError):
    """No enabled policy governs the organisation and data type.

    Non-fatal when resolving: the data stays ungoverned ("active
    indefinitely"). Raised by lookups of a specific policy id as well.
    """

    def __init__(
        self,
        organisation_id: str,
        data_type: str | None = None,
        policy_id: UUID | None = None,
    ) -> None:
        if policy_id is not None:
            message = f"Retention policy {policy_id} not found for {organisation_id}"
        else:
            message = f"No effective retention policy for {organisation_id}/{data_type}"
        super().__init__(
            message,
            code="POLICY_NOT_FOUND",
            details={
                "organisation_id": organisation_id,
                "data_type": data_type,
                "policy_id": str(policy_id) if policy_id else None,
            },
        )
        self.organisation_id = organisation_id
        self.data_type = data_type
        self.policy_id = policy_id


class RecordNotFoundError(RetentionError):
    """Lifecycle record does not exist."""

    def __init__(self, record_id: UUID) -> None:
        super().__init__(
            f"Lifecycle record {record_id} not found",
            code="RECORD_NOT_FOUND",
            details={"record_id": str(record_id)},
        )
        self.record_id = record_id


class CertificateNotFoundError(RetentionError):
    """Secure deletion certificate does not exist."""

    def __init__(self, reference: str) -> None:
        super().__init__(
            f"Certificate {reference} not found",
            code="CERTIFICATE_NOT_FOUND",
            details={"reference": reference},
        )


class PolicyInUseError(RetentionError):
    """Policy cannot be deleted while lifecycle records reference it."""

    def __init__(self, policy_id: UUID, record_count: int) -> None:
        super().__init__(
            f"Policy {policy_id} is referenced by {record_count} lifecycle records",
            code="POLICY_IN_USE",
            details={"policy_id": str(policy_id), "record_count": record_count},
        )


# =============================================================================
# State Errors
# =============================================================================


class InvalidTransitionError(RetentionError):
    """Requested transition is not valid from the record's current state."""

    def __init__(self, current_status: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} a record in state {current_status}",
            code="INVALID_TRANSITION",
            details={"current_status": current_status, "action": action},
        )
        self.current_status = current_status
        self.action = action


class EraseInFlightError(InvalidTransitionError):
    """Hold refused because a secure erase has already started."""

    def __init__(self, action: str) -> None:
        super().__init__("deletion_pending", action)
        self.code = "ERASE_IN_FLIGHT"
        self.message = f"Cannot {action} a record whose secure erase has started"
        self.args = (self.message,)


# =============================================================================
# Lock Errors
# =============================================================================


class LockError(RetentionError):
    """Base exception for execution lock errors."""


class LockBusyError(LockError):
    """Lease is held by another worker.

    Non-fatal: callers skip the partition and retry on a later cycle.
    """

    def __init__(
        self,
        lock_type: str,
        resource_id: str,
        holder: str | None = None,
        expires_at: datetime | None = None,
        queue_position: int | None = None,
        correlation_id: UUID | None = None,
    ) -> None:
        super().__init__(
            f"Lock {lock_type}:{resource_id} is held by {holder or 'another worker'}",
            code="LOCK_BUSY",
            details={
                "lock_type": lock_type,
                "resource_id": resource_id,
                "holder": holder,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "queue_position": queue_position,
                "correlation_id": str(correlation_id) if correlation_id else None,
            },
        )
        self.lock_type = lock_type
        self.resource_id = resource_id
        self.holder = holder
        self.expires_at = expires_at
        self.queue_position = queue_position
        self.correlation_id = correlation_id


class LockExpiredError(LockError):
    """Lease was lost before it could be renewed or released."""

    def __init__(self, lock_type: str, resource_id: str, holder: str) -> None:
        super().__init__(
            f"Lock {lock_type}:{resource_id} is no longer held by {holder}",
            code="LOCK_EXPIRED",
            details={"lock_type": lock_type, "resource_id": resource_id, "holder": holder},
        )
        self.lock_type = lock_type
        self.resource_id = resource_id
        self.holder = holder


# =============================================================================
# Execution Errors
# =============================================================================


class EraseExecutionError(RetentionError):
    """Secure erase failed; retryable until the retry budget is spent.

    ``completed`` holds the ErasureResult for records of the batch that were
    destroyed before the failure, when the store allows partial success.
    """

    def __init__(
        self,
        message: str,
        method: str,
        failed_record_ids: list[UUID] | None = None,
        completed: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="ERASE_FAILED",
            details={
                "method": method,
                "failed_record_ids": [str(r) for r in failed_record_ids or []],
            },
        )
        self.method = method
        self.failed_record_ids = failed_record_ids or []
        self.completed = completed


class CertificateIssuanceError(RetentionError):
    """Certificate could not be issued; the whole erase batch rolls back."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CERTIFICATE_FAILED", details=details)
