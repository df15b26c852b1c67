"""Secure erase execution.

The executor destroys the resources behind a batch of lifecycle records
with the strategy the record's policy selected, and returns a manifest of
what was destroyed together with its SHA-256 hash. Every strategy produces
the same manifest shape even though the strength of destruction differs.

Resources live behind a ResourceStore:
- InMemoryResourceStore: process-local tables, with injectable failures.
- SqlResourceStore: application tables reached through the caller's
  session, so destruction commits or rolls back together with the
  certificate and the terminal state transition.
"""

import hashlib
import json
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog
from sqlalchemy import column, delete, table, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.core.encryption import KeyRing
from custodian.core.exceptions import EraseExecutionError
from custodian.db.models.lifecycle import LifecycleRecord
from custodian.retention.types import (
    DataType,
    ErasureManifest,
    ErasureResult,
    ManifestEntry,
    SecureEraseMethod,
)
from custodian.utils.exceptions import ResourceStoreError

logger = structlog.get_logger()


def compute_manifest_hash(manifest: ErasureManifest) -> str:
    """SHA-256 of the canonical JSON form of a manifest."""
    canonical = json.dumps(manifest.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Resource Stores
# =============================================================================


class ResourceStore(Protocol):
    """Where governed resources live."""

    async def tombstone(
        self, session: AsyncSession, resource_table: str, resource_id: str, at: datetime
    ) -> bool:
        """Reversibly hide a resource. Returns False if it no longer exists."""
        ...

    async def overwrite(
        self, session: AsyncSession, resource_table: str, resource_id: str, pass_number: int
    ) -> bool:
        """Replace a resource's personal data with random values."""
        ...

    async def delete(self, session: AsyncSession, resource_table: str, resource_id: str) -> bool:
        """Remove a resource. Returns False if it was already gone."""
        ...


class InMemoryResourceStore:
    """In-memory resource tables for tests and local runs.

    ``fail_resources`` makes operations on the listed resource ids raise, and
    ``unavailable`` makes every operation raise, imitating an outage.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.tombstones: dict[tuple[str, str], datetime] = {}
        self.overwrites: list[tuple[str, str, int]] = []
        self.fail_resources: set[str] = set()
        self.unavailable = False

    def add(self, resource_table: str, resource_id: str, row: dict[str, Any]) -> None:
        self.tables.setdefault(resource_table, {})[resource_id] = dict(row)

    def get(self, resource_table: str, resource_id: str) -> dict[str, Any] | None:
        return self.tables.get(resource_table, {}).get(resource_id)

    def is_tombstoned(self, resource_table: str, resource_id: str) -> bool:
        return (resource_table, resource_id) in self.tombstones

    def _check(self, resource_id: str) -> None:
        if self.unavailable:
            raise ResourceStoreError("resource store unreachable")
        if resource_id in self.fail_resources:
            raise ResourceStoreError(f"write to resource {resource_id} failed")

    async def tombstone(
        self, session: AsyncSession, resource_table: str, resource_id: str, at: datetime
    ) -> bool:
        self._check(resource_id)
        if self.get(resource_table, resource_id) is None:
            return False
        self.tombstones[(resource_table, resource_id)] = at
        return True

    async def overwrite(
        self, session: AsyncSession, resource_table: str, resource_id: str, pass_number: int
    ) -> bool:
        self._check(resource_id)
        row = self.get(resource_table, resource_id)
        if row is None:
            return False
        for key in row:
            row[key] = secrets.token_hex(8)
        self.overwrites.append((resource_table, resource_id, pass_number))
        return True

    async def delete(self, session: AsyncSession, resource_table: str, resource_id: str) -> bool:
        self._check(resource_id)
        self.tombstones.pop((resource_table, resource_id), None)
        return self.tables.get(resource_table, {}).pop(resource_id, None) is not None


@dataclass(frozen=True)
class ResourceTableSpec:
    """How to reach one application table holding personal data."""

    table: str
    id_column: str = "id"
    personal_columns: tuple[str, ...] = ()
    tombstone_column: str = "deleted_at"


DEFAULT_RESOURCE_TABLES: dict[DataType, ResourceTableSpec] = {
    DataType.USER_PROFILE: ResourceTableSpec(
        "users", personal_columns=("email", "first_name", "last_name", "phone")
    ),
    DataType.USER_AUTHENTICATION: ResourceTableSpec(
        "user_sessions", personal_columns=("ip_address", "user_agent")
    ),
    DataType.COURSE_PROGRESS: ResourceTableSpec("completions", personal_columns=("score_data",)),
    DataType.CERTIFICATES: ResourceTableSpec(
        "certificates", personal_columns=("recipient_name", "recipient_email")
    ),
    DataType.COMMUNICATIONS: ResourceTableSpec(
        "email_logs", personal_columns=("recipient", "subject", "body")
    ),
    DataType.AUDIT_LOGS: ResourceTableSpec("audit_logs", personal_columns=("ip_address", "details")),
    DataType.SUPPORT_TICKETS: ResourceTableSpec(
        "support_tickets", personal_columns=("subject", "description", "contact_email")
    ),
    DataType.CONSENT_RECORDS: ResourceTableSpec(
        "consent_records", personal_columns=("ip_address", "user_agent")
    ),
    DataType.BILLING_RECORDS: ResourceTableSpec(
        "billing_records", personal_columns=("billing_name", "billing_email", "billing_address")
    ),
    DataType.ANALYTICS_DATA: ResourceTableSpec(
        "analytics_data", personal_columns=("ip_address", "user_agent", "properties")
    ),
    DataType.UPLOADED_FILES: ResourceTableSpec(
        "uploaded_files", personal_columns=("file_name", "storage_key")
    ),
    DataType.SYSTEM_LOGS: ResourceTableSpec("system_logs", personal_columns=("ip_address", "message")),
    DataType.BACKUP_DATA: ResourceTableSpec("backup_data", personal_columns=("payload",)),
}


class SqlResourceStore:
    """Application tables in the engine's own database.

    Operations run on the caller's session, so a failed batch is undone by
    rolling that session back.
    """

    def __init__(self, tables: dict[str, ResourceTableSpec] | None = None):
        specs = tables or {spec.table: spec for spec in DEFAULT_RESOURCE_TABLES.values()}
        self._specs = dict(specs)

    def _table(self, resource_table: str):
        spec = self._specs.get(resource_table)
        if spec is None:
            raise ResourceStoreError(f"No resource table mapping for {resource_table}")
        cols = {spec.id_column, spec.tombstone_column, *spec.personal_columns}
        return spec, table(spec.table, *(column(name) for name in sorted(cols)))

    async def tombstone(
        self, session: AsyncSession, resource_table: str, resource_id: str, at: datetime
    ) -> bool:
        spec, t = self._table(resource_table)
        result = await session.execute(
            update(t)
            .where(t.c[spec.id_column] == resource_id)
            .values({spec.tombstone_column: at})
        )
        return result.rowcount > 0

    async def overwrite(
        self, session: AsyncSession, resource_table: str, resource_id: str, pass_number: int
    ) -> bool:
        spec, t = self._table(resource_table)
        if not spec.personal_columns:
            return False
        result = await session.execute(
            update(t)
            .where(t.c[spec.id_column] == resource_id)
            .values({name: secrets.token_hex(16) for name in spec.personal_columns})
        )
        return result.rowcount > 0

    async def delete(self, session: AsyncSession, resource_table: str, resource_id: str) -> bool:
        spec, t = self._table(resource_table)
        result = await session.execute(delete(t).where(t.c[spec.id_column] == resource_id))
        return result.rowcount > 0


# =============================================================================
# Strategies
# =============================================================================


class EraseStrategy(ABC):
    """Destroys one resource and describes what was done."""

    method: SecureEraseMethod

    @abstractmethod
    async def erase(
        self, session: AsyncSession, store: ResourceStore, record: LifecycleRecord, at: datetime
    ) -> str:
        """Destroy the record's resource and return the manifest action."""


class SimpleDeleteStrategy(EraseStrategy):
    method = SecureEraseMethod.SIMPLE_DELETE

    async def erase(self, session, store, record, at):
        deleted = await store.delete(session, record.resource_table, record.resource_id)
        return "deleted" if deleted else "already_absent"


class OverwriteStrategy(EraseStrategy):
    """Overwrite personal data ``passes`` times, then delete the row."""

    def __init__(self, passes: int, method: SecureEraseMethod):
        if passes < 1:
            raise ValueError("passes must be at least 1")
        self.passes = passes
        self.method = method

    async def erase(self, session, store, record, at):
        present = True
        for pass_number in range(1, self.passes + 1):
            present = await store.overwrite(
                session, record.resource_table, record.resource_id, pass_number
            )
            if not present:
                break
        deleted = await store.delete(session, record.resource_table, record.resource_id)
        if not (present or deleted):
            return "already_absent"
        return f"overwritten_{self.passes}x_and_deleted"


class CryptographicEraseStrategy(EraseStrategy):
    """Destroy the resource's data key, then delete the row.

    Resources that were never encrypted under a data key fall back to a
    single overwrite before deletion.
    """

    method = SecureEraseMethod.CRYPTOGRAPHIC_ERASE

    def __init__(self, key_ring: KeyRing | None):
        self.key_ring = key_ring
        self._fallback = OverwriteStrategy(1, SecureEraseMethod.OVERWRITE_ONCE)

    async def erase(self, session, store, record, at):
        destroyed = False
        if self.key_ring is not None:
            destroyed = await self.key_ring.destroy(
                session, record.resource_table, record.resource_id, at
            )
        if not destroyed:
            action = await self._fallback.erase(session, store, record, at)
            return f"no_data_key_{action}"
        await store.delete(session, record.resource_table, record.resource_id)
        return "data_key_destroyed_and_deleted"


class PhysicalDestructionStrategy(EraseStrategy):
    """Delete the row and mark the storage media for witnessed destruction."""

    method = SecureEraseMethod.PHYSICAL_DESTRUCTION

    async def erase(self, session, store, record, at):
        await store.delete(session, record.resource_table, record.resource_id)
        return "deleted_media_destruction_required"


# =============================================================================
# Executor
# =============================================================================


@dataclass
class _BatchOutcome:
    entries: list[ManifestEntry] = field(default_factory=list)
    failed: list[LifecycleRecord] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


class SecureEraseExecutor:
    """Runs secure erase strategies over batches of lifecycle records."""

    def __init__(
        self,
        store: ResourceStore,
        *,
        key_ring: KeyRing | None = None,
        overwrite_multiple_passes: int = 3,
    ):
        self.store = store
        self._strategies: dict[SecureEraseMethod, EraseStrategy] = {
            SecureEraseMethod.SIMPLE_DELETE: SimpleDeleteStrategy(),
            SecureEraseMethod.OVERWRITE_ONCE: OverwriteStrategy(1, SecureEraseMethod.OVERWRITE_ONCE),
            SecureEraseMethod.OVERWRITE_MULTIPLE: OverwriteStrategy(
                overwrite_multiple_passes, SecureEraseMethod.OVERWRITE_MULTIPLE
            ),
            SecureEraseMethod.CRYPTOGRAPHIC_ERASE: CryptographicEraseStrategy(key_ring),
            SecureEraseMethod.PHYSICAL_DESTRUCTION: PhysicalDestructionStrategy(),
        }

    def strategy_for(self, method: SecureEraseMethod | str) -> EraseStrategy:
        return self._strategies[SecureEraseMethod(method)]

    async def tombstone(self, session: AsyncSession, record: LifecycleRecord, at: datetime) -> bool:
        """Reversible soft delete ahead of the erase."""
        return await self.store.tombstone(session, record.resource_table, record.resource_id, at)

    async def erase(
        self,
        session: AsyncSession,
        records: Sequence[LifecycleRecord],
        method: SecureEraseMethod | str,
        *,
        now: datetime,
    ) -> ErasureResult:
        """Destroy the resources of a batch of records.

        Args:
            session: Unit of work shared with certificate issuance.
            records: Records in deletion_pending from one partition.
            method: Strategy recorded on the records from their policy.
            now: Logical start time of the erase.

        Returns:
            ErasureResult listing every destroyed resource.

        Raises:
            EraseExecutionError: If any resource could not be destroyed. When
                the store allows partial success, ``completed`` carries the
                result for the records that were destroyed.
        """
        method = SecureEraseMethod(method)
        if not records:
            raise ValueError("erase batch is empty")
        organisation_ids = {r.organisation_id for r in records}
        if len(organisation_ids) != 1:
            raise ValueError("erase batch spans organisations")

        strategy = self.strategy_for(method)
        started = time.monotonic()
        outcome = _BatchOutcome()

        for record in records:
            try:
                action = await strategy.erase(session, self.store, record, now)
            except SQLAlchemyError as e:
                # The shared transaction is unusable; nothing from this batch can be certified
                logger.warning(
                    "erase_batch_storage_failure",
                    method=method.value,
                    record_id=str(record.record_id),
                    error=str(e),
                )
                raise EraseExecutionError(
                    f"Storage failure during {method.value}: {e}",
                    method.value,
                    failed_record_ids=[r.record_id for r in records],
                ) from e
            except (ResourceStoreError, OSError) as e:
                outcome.failed.append(record)
                outcome.messages.append(f"{record.resource_table}/{record.resource_id}: {e}")
                continue
            outcome.entries.append(
                ManifestEntry(
                    record_id=record.record_id,
                    user_id=record.user_id,
                    data_type=DataType(record.data_type),
                    resource_table=record.resource_table,
                    resource_id=record.resource_id,
                    action=action,
                    erased_at=now,
                )
            )

        completed = None
        if outcome.entries:
            manifest = ErasureManifest(
                organisation_id=organisation_ids.pop(),
                method=method,
                started_at=now,
                completed_at=now + timedelta(seconds=time.monotonic() - started),
                entries=outcome.entries,
            )
            completed = ErasureResult(manifest=manifest, manifest_hash=compute_manifest_hash(manifest))

        if outcome.failed or completed is None:
            raise EraseExecutionError(
                f"{len(outcome.failed)} of {len(records)} resources could not be erased: "
                + "; ".join(outcome.messages),
                method.value,
                failed_record_ids=[r.record_id for r in outcome.failed],
                completed=completed,
            )

        logger.info(
            "erase_batch_completed",
            method=method.value,
            record_count=completed.record_count,
            manifest_hash=completed.manifest_hash,
        )
        return completed
