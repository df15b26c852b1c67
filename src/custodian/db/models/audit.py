"""Audit event models for accountability of engine and operator actions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid7

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableJSON, PortableUUID, UTCDateTime, utc_now


class AuditEventType(str, Enum):
    """Types of audit events tracked by the engine."""

    # Policy administration
    POLICY_CREATED = "policy.created"
    POLICY_UPDATED = "policy.updated"
    POLICY_DELETED = "policy.deleted"

    # Administrative overrides
    REVIEW_APPROVED = "lifecycle.review_approved"
    REVIEW_REJECTED = "lifecycle.review_rejected"
    RECORD_FROZEN = "lifecycle.frozen"
    RECORD_UNFROZEN = "lifecycle.unfrozen"
    RECORD_ARCHIVED = "lifecycle.archived"
    RECORD_UNARCHIVED = "lifecycle.unarchived"
    ERASE_RETRY_RESET = "lifecycle.erase_retry_reset"

    # Engine
    DELETION_TRIGGERED = "lifecycle.deletion_triggered"
    DATA_ERASED = "data.erased"
    ERASE_FAILED = "data.erase_failed"
    TOMBSTONE_FAILED = "data.tombstone_failed"
    CERTIFICATE_DOWNLOADED = "certificate.downloaded"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(Base):
    """Immutable audit log entry.

    Audit events are append-only and capture every administrative override
    and every destructive engine action.
    """

    __tablename__ = "audit_events"

    # UUIDv7 is time-ordered, making audit events naturally sortable by ID
    audit_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="info")

    organisation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="system")
    correlation_id: Mapped[UUID] = mapped_column(PortableUUID(), nullable=False)

    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_data: Mapped[dict] = mapped_column(PortableJSON(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_audit_org", "organisation_id"),
        Index("idx_audit_correlation", "correlation_id"),
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_created", "created_at"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent(id={self.audit_id}, type={self.event_type}, "
            f"severity={self.severity})>"
        )
