"""Retention policy model."""

from uuid import UUID, uuid7

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableUUID, TimestampMixin


class RetentionPolicy(Base, TimestampMixin):
    """Per-organisation retention policy for one data type.

    Several enabled policies may match the same organisation and data type;
    the effective one is chosen at evaluation time by the policy resolver.
    ``revision`` increments on every update so lifecycle records can detect
    that their retention schedule must be recomputed.
    """

    __tablename__ = "retention_policies"

    policy_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    organisation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scope and schedule
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    retention_period_days: Mapped[int] = mapped_column(Integer, nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # Methods
    deletion_method: Mapped[str] = mapped_column(String(20), nullable=False, default="soft")
    secure_erase_method: Mapped[str] = mapped_column(
        String(30), nullable=False, default="overwrite_multiple"
    )
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False, default="time_based")

    # Legal
    legal_basis: Mapped[str] = mapped_column(
        String(30), nullable=False, default="legitimate_interests"
    )
    regulatory_requirement: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Selection and automation
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    automatic_deletion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("idx_retention_policy_scope", "organisation_id", "data_type", "enabled"),
    )

    def __repr__(self) -> str:
        return (
            f"<RetentionPolicy(id={self.policy_id}, org={self.organisation_id}, "
            f"data_type={self.data_type}, priority={self.priority})>"
        )
