"""Execution lock (lease) model."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid7

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableJSON, PortableUUID, UTCDateTime


class ExecutionLock(Base):
    """Lease on a (lock type, resource id) pair.

    Uniqueness on the pair gives mutual exclusion; the expiry index lets
    acquirers reclaim expired leases inline, without a background reaper.
    """

    __tablename__ = "execution_locks"

    lock_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    lock_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    renewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    queue_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    """Number of acquisition attempts refused while this lease was held."""

    correlation_id: Mapped[UUID] = mapped_column(PortableUUID(), nullable=False)
    lock_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", PortableJSON(), nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("lock_type", "resource_id", name="uq_execution_lock_resource"),
        Index("idx_execution_lock_expiry", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExecutionLock({self.lock_type}:{self.resource_id}, holder={self.holder}, "
            f"expires_at={self.expires_at})>"
        )
