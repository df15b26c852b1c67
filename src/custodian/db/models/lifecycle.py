"""Lifecycle record model: one row per governed data item."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid7

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from custodian.retention.types import LifecycleStatus, dump_state, load_state

from .base import Base, PortableJSON, PortableUUID, TimestampMixin, UTCDateTime


class LifecycleRecord(Base, TimestampMixin):
    """Retention lifecycle of a single resource.

    The current state is a tagged variant stored in ``state_data``; ``status``
    mirrors its tag for filtering and ``next_action_at`` holds the instant the
    record next needs attention from a sweep (NULL when stalled, held or
    terminal). Records are never deleted: they remain the proof trail after
    the underlying resource is gone.
    """

    __tablename__ = "lifecycle_records"

    record_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)

    # Identity of the governed resource
    organisation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_table: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # State
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")
    state_data: Mapped[dict[str, Any]] = mapped_column(
        PortableJSON(), nullable=False, default=lambda: {"status": "active"}
    )
    next_action_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Schedule
    data_created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    retention_eligible_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Applied policy snapshot
    policy_id: Mapped[UUID | None] = mapped_column(
        PortableUUID(), ForeignKey("retention_policies.policy_id"), nullable=True
    )
    policy_revision: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deletion_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    secure_erase_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    legal_basis: Mapped[str | None] = mapped_column(String(30), nullable=True)
    certificate_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Processing trail
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        PortableJSON(), nullable=False, default=list
    )
    history: Mapped[list[dict[str, Any]]] = mapped_column(
        PortableJSON(), nullable=False, default=list
    )
    last_processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint(
            "organisation_id",
            "data_type",
            "resource_table",
            "resource_id",
            name="uq_lifecycle_resource",
        ),
        Index("idx_lifecycle_partition_due", "organisation_id", "data_type", "next_action_at"),
        Index("idx_lifecycle_org_status", "organisation_id", "status"),
        Index("idx_lifecycle_user", "organisation_id", "user_id"),
        Index("idx_lifecycle_certificate", "certificate_number"),
    )

    @property
    def state(self):
        """Current state as a LifecycleState variant."""
        return load_state(self.state_data)

    @property
    def lifecycle_status(self) -> LifecycleStatus:
        return LifecycleStatus(self.status)

    def apply_state(
        self,
        state,
        *,
        at: datetime,
        next_action_at: datetime | None,
        reason: str | None = None,
    ) -> None:
        """Move to a new state and log the transition."""
        previous = self.status
        self.state_data = dump_state(state)
        self.status = state.status
        self.next_action_at = next_action_at
        self.last_processed_at = at
        self.history = [
            *(self.history or []),
            {
                "event": "transition",
                "at": at.isoformat(),
                "from": previous,
                "to": state.status,
                "reason": reason,
            },
        ]

    def record_deferral(self, reason: str, *, at: datetime) -> None:
        """Log that processing was skipped or postponed."""
        self.last_processed_at = at
        self.history = [
            *(self.history or []),
            {"event": "deferred", "at": at.isoformat(), "status": self.status, "reason": reason},
        ]

    def record_error(self, message: str, *, code: str, at: datetime) -> None:
        """Append a processing error and count the failed attempt."""
        self.retry_count = (self.retry_count or 0) + 1
        self.last_processed_at = at
        self.processing_errors = [
            *(self.processing_errors or []),
            {
                "at": at.isoformat(),
                "code": code,
                "message": message,
                "attempt": self.retry_count,
            },
        ]

    def __repr__(self) -> str:
        return (
            f"<LifecycleRecord(id={self.record_id}, org={self.organisation_id}, "
            f"resource={self.resource_table}/{self.resource_id}, status={self.status})>"
        )
