"""Repository for secure deletion certificates."""

from uuid import UUID

from sqlalchemy import select

from custodian.db.models.certificate import SecureDeletionCertificate
from custodian.db.repositories.base import BaseRepository


class CertificateRepository(BaseRepository[SecureDeletionCertificate, UUID]):
    """Read access to certificates; rows are written only by the issuer."""

    async def get_by_number(self, certificate_number: str) -> SecureDeletionCertificate | None:
        stmt = select(SecureDeletionCertificate).where(
            SecureDeletionCertificate.certificate_number == certificate_number
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_organisation(
        self,
        organisation_id: str,
        *,
        user_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecureDeletionCertificate]:
        stmt = select(SecureDeletionCertificate).where(
            SecureDeletionCertificate.organisation_id == organisation_id
        )
        if user_id is not None:
            stmt = stmt.where(SecureDeletionCertificate.user_id == user_id)
        stmt = (
            stmt.order_by(SecureDeletionCertificate.created_at.desc())
            .limit(min(limit, 1000))
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
