"""Per-resource data encryption keys."""

from datetime import datetime
from uuid import UUID, uuid7

from sqlalchemy import LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableUUID, UTCDateTime, utc_now


class DataEncryptionKey(Base):
    """Wrapped AES-256 key protecting one resource's personal data.

    Cryptographic erase destroys ``wrapped_key``; the row stays behind with
    ``destroyed_at`` set as evidence.
    """

    __tablename__ = "data_encryption_keys"

    key_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    resource_table: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    wrapped_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    destroyed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("resource_table", "resource_id", name="uq_data_key_resource"),
    )

    def __repr__(self) -> str:
        state = "destroyed" if self.destroyed_at else "live"
        return f"<DataEncryptionKey({self.resource_table}/{self.resource_id}, {state})>"
