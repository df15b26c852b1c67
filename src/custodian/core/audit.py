"""Audit logging service for engine and operator accountability."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from custodian.core.context import get_current_context_or_none
from custodian.db.models.audit import AuditEvent, AuditEventType, AuditSeverity


class AuditLogger:
    """Service for creating and querying audit events.

    Audit events are immutable, append-only entries. Correlation id and
    actor default to the current OperationContext, so callers inside a
    sweep or an administrative action only supply what happened.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_event(
        self,
        event_type: AuditEventType | str,
        event_data: dict[str, Any],
        *,
        organisation_id: str | None = None,
        severity: AuditSeverity | str = AuditSeverity.INFO,
        resource_type: str | None = None,
        resource_id: str | None = None,
        actor_id: str | None = None,
        correlation_id: UUID | None = None,
    ) -> AuditEvent:
        """Add an audit event to the current unit of work.

        The event is flushed but not committed, so it lands atomically with
        the change it describes.

        Args:
            event_type: Type of event (lifecycle.frozen, data.erased, etc.)
            event_data: Structured event details (must be JSON serializable)
            organisation_id: Tenant the event belongs to
            severity: Event severity level (default: INFO)
            resource_type: Optional resource type (lifecycle_record, policy, ...)
            resource_id: Optional resource ID
            actor_id: Who acted (defaults to the context actor or worker)
            correlation_id: Correlation id (defaults to the context's)

        Returns:
            Created AuditEvent instance
        """
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value
        if isinstance(severity, AuditSeverity):
            severity = severity.value

        ctx = get_current_context_or_none()
        if correlation_id is None:
            if ctx is None:
                raise ValueError("correlation_id is required outside an operation context")
            correlation_id = ctx.correlation_id
        if actor_id is None and ctx is not None:
            actor_id = ctx.actor_id or ctx.worker_id

        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            organisation_id=organisation_id,
            actor_id=actor_id,
            actor_type=ctx.actor_type.value if ctx is not None else "system",
            correlation_id=correlation_id,
            resource_type=resource_type,
            resource_id=resource_id,
            event_data=event_data,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def query_events(
        self,
        organisation_id: str | None = None,
        event_type: AuditEventType | str | None = None,
        resource_id: str | None = None,
        correlation_id: UUID | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEvent]:
        """Query audit events, newest first.

        Args:
            organisation_id: Filter by tenant
            event_type: Filter by event type
            resource_id: Filter by affected resource
            correlation_id: Filter by correlation ID
            start_date: Filter events after this date
            end_date: Filter events before this date
            limit: Max results (max 1000)
            offset: Pagination offset
        """
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value

        query = select(AuditEvent).order_by(
            AuditEvent.created_at.desc(),
            AuditEvent.audit_id.desc(),
        )
        if organisation_id is not None:
            query = query.where(AuditEvent.organisation_id == organisation_id)
        if event_type is not None:
            query = query.where(AuditEvent.event_type == event_type)
        if resource_id is not None:
            query = query.where(AuditEvent.resource_id == resource_id)
        if correlation_id is not None:
            query = query.where(AuditEvent.correlation_id == correlation_id)
        if start_date is not None:
            query = query.where(AuditEvent.created_at >= start_date)
        if end_date is not None:
            query = query.where(AuditEvent.created_at <= end_date)

        query = query.limit(min(limit, 1000)).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())
