"""Repository for retention policies."""

from uuid import UUID

from sqlalchemy import select

from custodian.db.models.policy import RetentionPolicy
from custodian.db.repositories.base import BaseRepository


class PolicyRepository(BaseRepository[RetentionPolicy, UUID]):
    """Data access for RetentionPolicy rows."""

    async def list_candidates(self, organisation_id: str, data_type: str) -> list[RetentionPolicy]:
        """Enabled policies scoped to one organisation and data type."""
        stmt = select(RetentionPolicy).where(
            RetentionPolicy.organisation_id == organisation_id,
            RetentionPolicy.data_type == data_type,
            RetentionPolicy.enabled.is_(True),
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_for_organisation(
        self,
        organisation_id: str,
        *,
        data_type: str | None = None,
        enabled: bool | None = None,
    ) -> list[RetentionPolicy]:
        """Policies of an organisation, highest priority first."""
        stmt = select(RetentionPolicy).where(RetentionPolicy.organisation_id == organisation_id)
        if data_type is not None:
            stmt = stmt.where(RetentionPolicy.data_type == data_type)
        if enabled is not None:
            stmt = stmt.where(RetentionPolicy.enabled.is_(enabled))
        stmt = stmt.order_by(
            RetentionPolicy.data_type,
            RetentionPolicy.priority.desc(),
            RetentionPolicy.created_at.desc(),
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_enabled(self) -> list[RetentionPolicy]:
        """All enabled policies across organisations."""
        stmt = select(RetentionPolicy).where(RetentionPolicy.enabled.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def enabled_partitions(self) -> set[tuple[str, str]]:
        """Distinct (organisation, data type) pairs with an enabled policy."""
        stmt = (
            select(RetentionPolicy.organisation_id, RetentionPolicy.data_type)
            .where(RetentionPolicy.enabled.is_(True))
            .distinct()
        )
        result = await self.db.execute(stmt)
        return {(row[0], row[1]) for row in result.all()}
