"""Repositories for database access."""

from custodian.db.repositories.base import BaseRepository
from custodian.db.repositories.certificate import CertificateRepository
from custodian.db.repositories.compliance import ComplianceAuditRepository
from custodian.db.repositories.lifecycle import LifecycleRepository
from custodian.db.repositories.policy import PolicyRepository

__all__ = [
    "BaseRepository",
    "CertificateRepository",
    "ComplianceAuditRepository",
    "LifecycleRepository",
    "PolicyRepository",
]
