"""Compliance audit snapshot model."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid7

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableJSON, PortableUUID, UTCDateTime, utc_now


class ComplianceAudit(Base):
    """Point-in-time score of how well one policy is being honoured.

    Snapshots are append-only; a newer audit supersedes an older one.
    """

    __tablename__ = "compliance_audits"

    audit_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    organisation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_id: Mapped[UUID] = mapped_column(
        PortableUUID(), ForeignKey("retention_policies.policy_id"), nullable=False
    )
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    audit_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Counts
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compliant_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overdue_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    held_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Score
    compliance_rate: Mapped[float] = mapped_column(Float, nullable=False)
    is_compliant: Mapped[bool] = mapped_column(Boolean, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    issues: Mapped[list[dict[str, Any]]] = mapped_column(PortableJSON(), nullable=False)
    recommendations: Mapped[list[dict[str, Any]]] = mapped_column(PortableJSON(), nullable=False)

    # Observed retention
    average_retention_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    oldest_record_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    next_audit_due: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    audit_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_compliance_audit_policy", "organisation_id", "policy_id", "audit_date"),
        Index("idx_compliance_audit_risk", "organisation_id", "risk_level"),
    )

    def __repr__(self) -> str:
        return (
            f"<ComplianceAudit(id={self.audit_id}, policy={self.policy_id}, "
            f"rate={self.compliance_rate:.1f}, risk={self.risk_level})>"
        )


@event.listens_for(ComplianceAudit, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise ValueError(f"Compliance audit {target.audit_id} is immutable")
