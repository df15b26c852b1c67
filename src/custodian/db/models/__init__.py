"""Database models."""

from .audit import AuditEvent, AuditEventType, AuditSeverity
from .base import Base, PortableJSON, PortableUUID, TimestampMixin, UTCDateTime, utc_now
from .certificate import SecureDeletionCertificate
from .compliance import ComplianceAudit
from .data_key import DataEncryptionKey
from .lifecycle import LifecycleRecord
from .lock import ExecutionLock
from .policy import RetentionPolicy

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
    "Base",
    "ComplianceAudit",
    "DataEncryptionKey",
    "ExecutionLock",
    "LifecycleRecord",
    "PortableJSON",
    "PortableUUID",
    "RetentionPolicy",
    "SecureDeletionCertificate",
    "TimestampMixin",
    "UTCDateTime",
    "utc_now",
]
