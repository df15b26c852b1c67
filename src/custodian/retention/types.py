"""Retention lifecycle type definitions.

This module defines the core types of the retention engine:
- DataType: Categories of personal data governed by retention policies
- DeletionMethod / SecureEraseMethod: How data is removed and destroyed
- TriggerType / LegalBasis: Why data becomes eligible for deletion
- LifecycleState: Tagged variant holding the state of one governed item
- PolicyTerms, ErasureManifest, ErasureResult, SweepResult: Value objects
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class DataType(str, Enum):
    """Categories of personal data subject to retention policies."""

    USER_PROFILE = "user_profile"
    """Learner and administrator profile information."""

    USER_AUTHENTICATION = "user_authentication"
    """Credentials, sessions and login history."""

    COURSE_PROGRESS = "course_progress"
    """Course completions and progress records."""

    CERTIFICATES = "certificates"
    """Issued training certificates."""

    COMMUNICATIONS = "communications"
    """Email and notification logs."""

    AUDIT_LOGS = "audit_logs"
    """Application audit trail."""

    SUPPORT_TICKETS = "support_tickets"
    """Support conversations."""

    BILLING_RECORDS = "billing_records"
    """Invoices and payment records."""

    CONSENT_RECORDS = "consent_records"
    """Consent grants and withdrawals."""

    ANALYTICS_DATA = "analytics_data"
    """Usage analytics tied to a person."""

    UPLOADED_FILES = "uploaded_files"
    """Files uploaded by users."""

    SYSTEM_LOGS = "system_logs"
    """Operational logs containing personal data."""

    BACKUP_DATA = "backup_data"
    """Backups containing personal data."""


class DeletionMethod(str, Enum):
    """How a record is removed once scheduled."""

    SOFT = "soft"
    """Tombstone first and keep it for the grace period before erasing."""

    HARD = "hard"
    """Tombstone and erase with no grace period."""


class SecureEraseMethod(str, Enum):
    """Strategies for the irreversible destruction step."""

    SIMPLE_DELETE = "simple_delete"
    OVERWRITE_ONCE = "overwrite_once"
    OVERWRITE_MULTIPLE = "overwrite_multiple"
    CRYPTOGRAPHIC_ERASE = "cryptographic_erase"
    PHYSICAL_DESTRUCTION = "physical_destruction"


class TriggerType(str, Enum):
    """What causes data to become eligible for deletion."""

    TIME_BASED = "time_based"
    """Retention period elapsed since data creation."""

    EVENT_BASED = "event_based"
    """A business event ended the purpose of processing."""

    CONSENT_WITHDRAWAL = "consent_withdrawal"
    """Data subject withdrew consent."""

    ACCOUNT_DELETION = "account_deletion"
    """Data subject's account was deleted."""

    CONTRACT_TERMINATION = "contract_termination"
    """Organisation contract ended."""

    MANUAL_REQUEST = "manual_request"
    """Administrator or data subject requested deletion."""

    LEGAL_OBLIGATION = "legal_obligation"
    """A legal obligation requires deletion."""


class LegalBasis(str, Enum):
    """GDPR Article 6 lawful bases."""

    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class LifecycleStatus(str, Enum):
    """Lifecycle state names, in pipeline order followed by the hold states."""

    ACTIVE = "active"
    RETENTION_PENDING = "retention_pending"
    DELETION_SCHEDULED = "deletion_scheduled"
    SOFT_DELETED = "soft_deleted"
    DELETION_PENDING = "deletion_pending"
    SECURELY_ERASED = "securely_erased"
    ARCHIVED = "archived"
    FROZEN = "frozen"


class RequestOrigin(str, Enum):
    """Originating request type recorded on a certificate."""

    RETENTION_POLICY = "retention_policy"
    USER_REQUEST = "user_request"
    ADMIN_ACTION = "admin_action"


class RiskLevel(str, Enum):
    """Risk level derived from a compliance audit."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRE_ERASE_STATUSES = frozenset(
    {
        LifecycleStatus.ACTIVE,
        LifecycleStatus.RETENTION_PENDING,
        LifecycleStatus.DELETION_SCHEDULED,
    }
)
"""States from which an event trigger can still schedule deletion."""

HOLD_STATUSES = frozenset({LifecycleStatus.ARCHIVED, LifecycleStatus.FROZEN})

ERASE_QUEUE_STATUSES = frozenset(
    {LifecycleStatus.SOFT_DELETED, LifecycleStatus.DELETION_PENDING}
)


# =============================================================================
# Lifecycle State (tagged variant)
# =============================================================================


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def lifecycle_status(self) -> LifecycleStatus:
        return LifecycleStatus(self.status)  # type: ignore[attr-defined]


class ActiveState(_State):
    """Data is live and within its retention period (or ungoverned)."""

    status: Literal["active"] = "active"


class RetentionPendingState(_State):
    """Retention period has elapsed; waiting to be scheduled or reviewed."""

    status: Literal["retention_pending"] = "retention_pending"
    entered_at: datetime
    trigger: TriggerType = TriggerType.TIME_BASED
    reason: str | None = None


class DeletionScheduledState(_State):
    """Deletion is scheduled; the tombstone runs at soft_delete_scheduled_at."""

    status: Literal["deletion_scheduled"] = "deletion_scheduled"
    scheduled_at: datetime
    soft_delete_scheduled_at: datetime
    secure_erase_scheduled_at: datetime
    trigger: TriggerType = TriggerType.TIME_BASED
    reason: str | None = None
    approved_by: str | None = None


class SoftDeletedState(_State):
    """Resource is tombstoned; irreversible erase follows after the grace period."""

    status: Literal["soft_deleted"] = "soft_deleted"
    soft_delete_scheduled_at: datetime
    soft_deleted_at: datetime
    secure_erase_scheduled_at: datetime
    trigger: TriggerType = TriggerType.TIME_BASED


class DeletionPendingState(_State):
    """Waiting for (or retrying) the secure erase."""

    status: Literal["deletion_pending"] = "deletion_pending"
    soft_deleted_at: datetime
    secure_erase_scheduled_at: datetime
    entered_at: datetime
    trigger: TriggerType = TriggerType.TIME_BASED
    erase_started_at: datetime | None = None
    """Set before the first destructive call; once set the record cannot be held."""

    attention_required: bool = False
    """Retries exhausted; automatic processing stops until an operator intervenes."""


class SecurelyErasedState(_State):
    """Terminal: data destroyed and certified."""

    status: Literal["securely_erased"] = "securely_erased"
    soft_deleted_at: datetime
    secure_erased_at: datetime
    certificate_number: str
    manifest_hash: str


ProcessingState = Annotated[
    ActiveState
    | RetentionPendingState
    | DeletionScheduledState
    | SoftDeletedState
    | DeletionPendingState,
    Field(discriminator="status"),
]
"""Non-terminal pipeline states that a hold can be placed on."""


class ArchivedState(_State):
    """Indefinite hold, e.g. legal preservation."""

    status: Literal["archived"] = "archived"
    archived_at: datetime
    reason: str
    actor: str | None = None
    held_from: ProcessingState


class FrozenState(_State):
    """Temporary hold, e.g. an open user-rights dispute."""

    status: Literal["frozen"] = "frozen"
    frozen_at: datetime
    reason: str
    actor: str | None = None
    held_from: ProcessingState


LifecycleState = Annotated[
    ActiveState
    | RetentionPendingState
    | DeletionScheduledState
    | SoftDeletedState
    | DeletionPendingState
    | SecurelyErasedState
    | ArchivedState
    | FrozenState,
    Field(discriminator="status"),
]

LIFECYCLE_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(LifecycleState)


def load_state(data: dict[str, Any]) -> Any:
    """Parse a stored state document into its variant."""
    return LIFECYCLE_STATE_ADAPTER.validate_python(data)


def dump_state(state: _State) -> dict[str, Any]:
    """Serialise a state variant for storage."""
    return state.model_dump(mode="json")


# =============================================================================
# Policy Terms
# =============================================================================


@dataclass(frozen=True)
class PolicyTerms:
    """The parts of a retention policy the state machine depends on."""

    policy_id: UUID
    revision: int
    retention_period_days: int
    grace_period_days: int
    deletion_method: DeletionMethod
    secure_erase_method: SecureEraseMethod
    legal_basis: LegalBasis
    automatic_deletion: bool = True
    requires_manual_review: bool = False

    @property
    def retention_period(self) -> timedelta:
        return timedelta(days=self.retention_period_days)

    @property
    def erase_delay(self) -> timedelta:
        """Time between tombstone and secure erase."""
        if self.deletion_method == DeletionMethod.HARD:
            return timedelta(0)
        return timedelta(days=self.grace_period_days)

    @property
    def needs_review(self) -> bool:
        return self.requires_manual_review or not self.automatic_deletion

    @classmethod
    def from_policy(cls, policy: Any) -> "PolicyTerms":
        """Build terms from a RetentionPolicy row."""
        return cls(
            policy_id=policy.policy_id,
            revision=policy.revision,
            retention_period_days=policy.retention_period_days,
            grace_period_days=policy.grace_period_days,
            deletion_method=DeletionMethod(policy.deletion_method),
            secure_erase_method=SecureEraseMethod(policy.secure_erase_method),
            legal_basis=LegalBasis(policy.legal_basis),
            automatic_deletion=policy.automatic_deletion,
            requires_manual_review=policy.requires_manual_review,
        )


# =============================================================================
# Policy Input Models
# =============================================================================


class PolicyDraft(BaseModel):
    """Validated input for creating a retention policy."""

    organisation_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    data_type: DataType
    retention_period_days: int = Field(ge=0)
    grace_period_days: int = Field(default=30, ge=0)
    deletion_method: DeletionMethod = DeletionMethod.SOFT
    secure_erase_method: SecureEraseMethod = SecureEraseMethod.OVERWRITE_MULTIPLE
    trigger_type: TriggerType = TriggerType.TIME_BASED
    legal_basis: LegalBasis = LegalBasis.LEGITIMATE_INTERESTS
    regulatory_requirement: str | None = None
    priority: int = 100
    """Higher number wins when several enabled policies match."""

    enabled: bool = True
    automatic_deletion: bool = True
    requires_manual_review: bool = False
    created_by: str | None = None


class PolicyUpdate(BaseModel):
    """Partial update of a retention policy; unset fields are left alone."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    retention_period_days: int | None = Field(default=None, ge=0)
    grace_period_days: int | None = Field(default=None, ge=0)
    deletion_method: DeletionMethod | None = None
    secure_erase_method: SecureEraseMethod | None = None
    trigger_type: TriggerType | None = None
    legal_basis: LegalBasis | None = None
    regulatory_requirement: str | None = None
    priority: int | None = None
    enabled: bool | None = None
    automatic_deletion: bool | None = None
    requires_manual_review: bool | None = None


# =============================================================================
# Erasure Results
# =============================================================================


class ManifestEntry(BaseModel):
    """One destroyed resource."""

    record_id: UUID
    user_id: str | None = None
    data_type: DataType
    resource_table: str
    resource_id: str
    action: str
    """What was physically done, e.g. ``overwritten_3x_and_deleted``."""

    erased_at: datetime


class ErasureManifest(BaseModel):
    """Deletion manifest whose hash is embedded in the certificate."""

    organisation_id: str
    method: SecureEraseMethod
    started_at: datetime
    completed_at: datetime
    entries: list[ManifestEntry]

    @field_validator("entries")
    @classmethod
    def entries_not_empty(cls, v: list[ManifestEntry]) -> list[ManifestEntry]:
        if not v:
            raise ValueError("manifest must list at least one erased resource")
        return v


class ErasureResult(BaseModel):
    """Outcome of a successful secure erase batch."""

    manifest: ErasureManifest
    manifest_hash: str

    @property
    def record_count(self) -> int:
        return len(self.manifest.entries)

    @property
    def record_ids(self) -> list[UUID]:
        return [entry.record_id for entry in self.manifest.entries]

    @property
    def user_ids(self) -> list[str]:
        return sorted({e.user_id for e in self.manifest.entries if e.user_id})

    @property
    def data_types(self) -> list[str]:
        return sorted({e.data_type.value for e in self.manifest.entries})


# =============================================================================
# Sweep Results
# =============================================================================


@dataclass
class SweepResult:
    """Summary of one partition sweep."""

    organisation_id: str
    data_type: DataType
    started_at: datetime
    completed_at: datetime | None = None
    skipped: bool = False
    """Partition lease was held by another worker; nothing was mutated."""

    aborted: bool = False
    """Lease was lost mid-sweep; remaining work left for a later cycle."""

    policy_id: UUID | None = None
    records_governed: int = 0
    transitions: int = 0
    records_erased: int = 0
    erase_failures: int = 0
    certificates: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "organisation_id": self.organisation_id,
            "data_type": self.data_type.value,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "policy_id": str(self.policy_id) if self.policy_id else None,
            "records_governed": self.records_governed,
            "transitions": self.transitions,
            "records_erased": self.records_erased,
            "erase_failures": self.erase_failures,
            "certificates": len(self.certificates),
            "errors": len(self.errors),
        }
