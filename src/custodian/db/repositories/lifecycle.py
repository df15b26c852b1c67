"""Repository for lifecycle records."""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, or_, select

from custodian.db.models.lifecycle import LifecycleRecord
from custodian.db.repositories.base import BaseRepository
from custodian.retention.types import (
    ERASE_QUEUE_STATUSES,
    PRE_ERASE_STATUSES,
    LifecycleStatus,
)

_PRE_ERASE = [s.value for s in PRE_ERASE_STATUSES]
_ERASE_QUEUE = [s.value for s in ERASE_QUEUE_STATUSES]
_GOVERNABLE = [LifecycleStatus.ACTIVE.value, LifecycleStatus.RETENTION_PENDING.value]


class LifecycleRepository(BaseRepository[LifecycleRecord, UUID]):
    """Data access for LifecycleRecord rows."""

    async def get_by_resource(
        self,
        organisation_id: str,
        data_type: str,
        resource_table: str,
        resource_id: str,
    ) -> LifecycleRecord | None:
        """Look up a record by the identity of the resource it governs."""
        stmt = select(LifecycleRecord).where(
            LifecycleRecord.organisation_id == organisation_id,
            LifecycleRecord.data_type == data_type,
            LifecycleRecord.resource_table == resource_table,
            LifecycleRecord.resource_id == resource_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, record_ids: Iterable[UUID], *, refresh: bool = False) -> list[LifecycleRecord]:
        ids = list(record_ids)
        if not ids:
            return []
        stmt = (
            select(LifecycleRecord)
            .where(LifecycleRecord.record_id.in_(ids))
            .order_by(LifecycleRecord.record_id)
            .execution_options(populate_existing=refresh)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Sweep queries
    # -------------------------------------------------------------------------

    async def ids_needing_governance(
        self,
        organisation_id: str,
        data_type: str,
        policy_id: UUID | None,
        policy_revision: int | None,
    ) -> list[UUID]:
        """Active or retention-pending records whose policy snapshot is stale."""
        stmt = select(LifecycleRecord.record_id).where(
            LifecycleRecord.organisation_id == organisation_id,
            LifecycleRecord.data_type == data_type,
            LifecycleRecord.status.in_(_GOVERNABLE),
        )
        if policy_id is None:
            stmt = stmt.where(LifecycleRecord.policy_id.is_not(None))
        else:
            stmt = stmt.where(
                or_(
                    LifecycleRecord.policy_id.is_(None),
                    LifecycleRecord.policy_id != policy_id,
                    LifecycleRecord.policy_revision.is_(None),
                    LifecycleRecord.policy_revision != policy_revision,
                )
            )
        result = await self.db.execute(stmt.order_by(LifecycleRecord.record_id))
        return list(result.scalars().all())

    async def ids_due_before_erase(
        self, organisation_id: str, data_type: str, now: datetime
    ) -> list[UUID]:
        """Pre-erase records whose next action time has arrived."""
        stmt = (
            select(LifecycleRecord.record_id)
            .where(
                LifecycleRecord.organisation_id == organisation_id,
                LifecycleRecord.data_type == data_type,
                LifecycleRecord.status.in_(_PRE_ERASE),
                LifecycleRecord.next_action_at.is_not(None),
                LifecycleRecord.next_action_at <= now,
            )
            .order_by(LifecycleRecord.next_action_at, LifecycleRecord.record_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def ids_due_for_erase(
        self, organisation_id: str, data_type: str, now: datetime
    ) -> list[UUID]:
        """Tombstoned or erase-pending records whose erase time has arrived."""
        stmt = (
            select(LifecycleRecord.record_id)
            .where(
                LifecycleRecord.organisation_id == organisation_id,
                LifecycleRecord.data_type == data_type,
                LifecycleRecord.status.in_(_ERASE_QUEUE),
                LifecycleRecord.next_action_at.is_not(None),
                LifecycleRecord.next_action_at <= now,
            )
            .order_by(LifecycleRecord.next_action_at, LifecycleRecord.record_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def due_partitions(self, now: datetime) -> set[tuple[str, str]]:
        """Distinct (organisation, data type) pairs with records due for action."""
        stmt = (
            select(LifecycleRecord.organisation_id, LifecycleRecord.data_type)
            .where(
                LifecycleRecord.next_action_at.is_not(None),
                LifecycleRecord.next_action_at <= now,
            )
            .distinct()
        )
        result = await self.db.execute(stmt)
        return {(row[0], row[1]) for row in result.all()}

    async def list_for_user(
        self,
        organisation_id: str,
        user_id: str,
        data_type: str,
    ) -> list[LifecycleRecord]:
        """Records of one data subject within a partition."""
        stmt = (
            select(LifecycleRecord)
            .where(
                LifecycleRecord.organisation_id == organisation_id,
                LifecycleRecord.user_id == user_id,
                LifecycleRecord.data_type == data_type,
            )
            .order_by(LifecycleRecord.record_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Reporting queries
    # -------------------------------------------------------------------------

    async def list_records(
        self,
        organisation_id: str,
        *,
        status: LifecycleStatus | str | None = None,
        data_type: str | None = None,
        user_id: str | None = None,
        attention_required: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LifecycleRecord]:
        """Filter records of an organisation, most recently processed first."""
        stmt = select(LifecycleRecord).where(LifecycleRecord.organisation_id == organisation_id)
        if status is not None:
            stmt = stmt.where(LifecycleRecord.status == LifecycleStatus(status).value)
        if data_type is not None:
            stmt = stmt.where(LifecycleRecord.data_type == data_type)
        if user_id is not None:
            stmt = stmt.where(LifecycleRecord.user_id == user_id)
        if attention_required is not None:
            # Flagged records are the only erase-pending rows with no next action
            flagged = and_(
                LifecycleRecord.status == LifecycleStatus.DELETION_PENDING.value,
                LifecycleRecord.next_action_at.is_(None),
            )
            stmt = stmt.where(flagged if attention_required else ~flagged)
        stmt = (
            stmt.order_by(LifecycleRecord.updated_at.desc(), LifecycleRecord.record_id.desc())
            .limit(min(limit, 1000))
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_for_partition(self, organisation_id: str, data_type: str) -> list[LifecycleRecord]:
        """All records of a partition (used by the compliance auditor)."""
        stmt = (
            select(LifecycleRecord)
            .where(
                LifecycleRecord.organisation_id == organisation_id,
                LifecycleRecord.data_type == data_type,
            )
            .order_by(LifecycleRecord.record_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self, organisation_id: str) -> dict[str, int]:
        """Number of records per lifecycle status."""
        stmt = (
            select(LifecycleRecord.status, func.count(LifecycleRecord.record_id))
            .where(LifecycleRecord.organisation_id == organisation_id)
            .group_by(LifecycleRecord.status)
        )
        result = await self.db.execute(stmt)
        return {row[0]: row[1] for row in result.all()}

    async def count_for_policy(self, policy_id: UUID) -> int:
        """Number of records that reference a policy."""
        stmt = select(func.count(LifecycleRecord.record_id)).where(
            LifecycleRecord.policy_id == policy_id
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0
