"""Secure deletion certificate model."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid7

from sqlalchemy import Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableJSON, PortableUUID, UTCDateTime, utc_now


class SecureDeletionCertificate(Base):
    """Proof that a batch of lifecycle records was securely erased.

    Written only by the certificate issuer, in the same transaction that
    marks the covered records as securely erased. Immutable once flushed.
    """

    __tablename__ = "secure_deletion_certificates"

    certificate_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    certificate_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Scope
    organisation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data_types: Mapped[list[str]] = mapped_column(PortableJSON(), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    record_ids: Mapped[list[str]] = mapped_column(PortableJSON(), nullable=False)

    # Erasure
    secure_erase_method: Mapped[str] = mapped_column(String(30), nullable=False)
    deletion_started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    deletion_completed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    manifest: Mapped[dict[str, Any]] = mapped_column(PortableJSON(), nullable=False)

    # Verification
    verification_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    verification_method: Mapped[str] = mapped_column(
        String(50), nullable=False, default="sha256_hash_verification"
    )
    digital_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    witness_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    witness_statement: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Legal
    legal_basis: Mapped[str] = mapped_column(String(30), nullable=False)
    regulatory_requirement: Mapped[str] = mapped_column(String(255), nullable=False)
    request_origin: Mapped[str] = mapped_column(String(30), nullable=False)

    # Validity
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    issued_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_certificate_org", "organisation_id", "created_at"),
        Index("idx_certificate_user", "organisation_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SecureDeletionCertificate(number={self.certificate_number}, "
            f"records={self.record_count}, method={self.secure_erase_method})>"
        )


@event.listens_for(SecureDeletionCertificate, "before_update")
def _reject_certificate_update(mapper, connection, target) -> None:
    raise ValueError(f"Certificate {target.certificate_number} is immutable")
