"""Effective retention policy resolution.

Several enabled policies may cover the same organisation and data type.
The effective one is chosen at evaluation time:

1. only enabled policies for the organisation and data type that already
   existed at ``as_of`` are candidates;
2. the highest ``priority`` value wins;
3. ties go to the most recently created policy, then to the highest id.

Resolution is a pure function of the candidate list and ``as_of``; the
async ``PolicyResolver`` only loads candidates from the database.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from custodian.db.models.policy import RetentionPolicy
from custodian.db.repositories.policy import PolicyRepository
from custodian.retention.types import DataType


def _data_type_value(data_type: DataType | str) -> str:
    return data_type.value if isinstance(data_type, DataType) else data_type


def _candidates(
    policies: Iterable[Any],
    organisation_id: str,
    data_type: DataType | str,
    as_of: datetime,
) -> list[Any]:
    dt = _data_type_value(data_type)
    return [
        p
        for p in policies
        if p.enabled
        and p.organisation_id == organisation_id
        and p.data_type == dt
        and p.created_at <= as_of
    ]


def _rank(policy: Any) -> tuple:
    return (policy.priority, policy.created_at, policy.policy_id)


def resolve_effective_policy(
    policies: Iterable[Any],
    organisation_id: str,
    data_type: DataType | str,
    as_of: datetime,
) -> Any | None:
    """Select the effective policy, or None when the data is ungoverned.

    Args:
        policies: Candidate policies (any organisation/data type; filtered here).
        organisation_id: Tenant the data belongs to.
        data_type: Data category.
        as_of: Evaluation instant; policies created later are ignored.

    Returns:
        The winning policy, or None if no enabled policy matches.
    """
    candidates = _candidates(policies, organisation_id, data_type, as_of)
    if not candidates:
        return None
    return max(candidates, key=_rank)


def find_priority_conflicts(
    policies: Iterable[Any],
    organisation_id: str,
    data_type: DataType | str,
    as_of: datetime,
) -> list[Any]:
    """Enabled policies sharing the top priority, when there is more than one.

    A tie is resolved deterministically but usually means the tenant's
    configuration is ambiguous, so it is reported as an audit issue.
    """
    candidates = _candidates(policies, organisation_id, data_type, as_of)
    if len(candidates) < 2:
        return []
    top = max(p.priority for p in candidates)
    tied = [p for p in candidates if p.priority == top]
    if len(tied) < 2:
        return []
    return sorted(tied, key=_rank, reverse=True)


class PolicyResolver:
    """Loads candidate policies and resolves the effective one."""

    def __init__(self, db: AsyncSession):
        self._policies = PolicyRepository(db)

    async def candidates(
        self, organisation_id: str, data_type: DataType | str
    ) -> Sequence[RetentionPolicy]:
        return await self._policies.list_candidates(organisation_id, _data_type_value(data_type))

    async def resolve(
        self,
        organisation_id: str,
        data_type: DataType | str,
        as_of: datetime,
    ) -> RetentionPolicy | None:
        """Effective policy at ``as_of``, or None when ungoverned."""
        policies = await self.candidates(organisation_id, data_type)
        return resolve_effective_policy(policies, organisation_id, data_type, as_of)
