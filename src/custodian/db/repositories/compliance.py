"""Repository for compliance audit snapshots."""

from uuid import UUID

from sqlalchemy import select

from custodian.db.models.compliance import ComplianceAudit
from custodian.db.repositories.base import BaseRepository


class ComplianceAuditRepository(BaseRepository[ComplianceAudit, UUID]):
    """Append-only access to ComplianceAudit rows."""

    async def latest_for_policy(self, policy_id: UUID) -> ComplianceAudit | None:
        stmt = (
            select(ComplianceAudit)
            .where(ComplianceAudit.policy_id == policy_id)
            .order_by(ComplianceAudit.audit_date.desc(), ComplianceAudit.audit_id.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_audits(
        self,
        organisation_id: str,
        *,
        data_type: str | None = None,
        policy_id: UUID | None = None,
        risk_level: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ComplianceAudit]:
        """Audits of an organisation, newest first."""
        stmt = select(ComplianceAudit).where(ComplianceAudit.organisation_id == organisation_id)
        if data_type is not None:
            stmt = stmt.where(ComplianceAudit.data_type == data_type)
        if policy_id is not None:
            stmt = stmt.where(ComplianceAudit.policy_id == policy_id)
        if risk_level is not None:
            stmt = stmt.where(ComplianceAudit.risk_level == risk_level)
        stmt = (
            stmt.order_by(ComplianceAudit.audit_date.desc(), ComplianceAudit.audit_id.desc())
            .limit(min(limit, 1000))
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
