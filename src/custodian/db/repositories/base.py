"""Base repository for engine models.

Usage:
    from custodian.db.repositories.base import BaseRepository

    class PolicyRepository(BaseRepository[RetentionPolicy, UUID]):
        pass

    repo = PolicyRepository(db_session)
    policy = await repo.get(policy_id)

Writes go through the session directly: callers own the transaction that
commits them together with related rows.
"""

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from custodian.db.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)
PKType = TypeVar("PKType", bound=UUID | int | str)


class BaseRepository(Generic[ModelType, PKType]):
    """Generic repository for SQLAlchemy models.

    Type Parameters:
        ModelType: The SQLAlchemy model class
        PKType: The type of the primary key

    Attributes:
        model: The model class
        db: The database session
    """

    model: type[ModelType]

    def __init__(self, db: AsyncSession):
        self.db = db

    def __init_subclass__(cls, **kwargs):
        """Extract model type from generic parameter."""
        super().__init_subclass__(**kwargs)
        for base in getattr(cls, "__orig_bases__", []):
            args = getattr(base, "__args__", None)
            if args and isinstance(args[0], type) and issubclass(args[0], Base):
                cls.model = args[0]
                break

    async def get(self, pk: PKType, *, refresh: bool = False) -> ModelType | None:
        """Get a single record by primary key.

        Args:
            pk: Primary key value
            refresh: Reload from the database even if the row is in the identity map

        Returns:
            Model instance or None if not found
        """
        return await self.db.get(self.model, pk, populate_existing=refresh)
