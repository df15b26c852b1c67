"""Operation context for background retention work.

Carries the correlation id, worker identity and the partition being
processed through async call chains using contextvars, so log entries,
lock rows and audit events emitted deep inside a sweep can be tied back
to the operation that caused them.

Usage:
    from custodian.core.context import create_context, operation_context

    ctx = create_context(worker_id="worker-1", organisation_id="org-1")
    with operation_context(ctx):
        await engine.sweep_partition("org-1", DataType.COMMUNICATIONS)
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid7

from pydantic import BaseModel, Field


class ActorType(str, Enum):
    """Type of actor performing the operation."""

    HUMAN = "human"  # Administrator acting through the admin surface
    SERVICE = "service"  # Collaborator flow (account deletion, consent withdrawal)
    SYSTEM = "system"  # Scheduled sweep or audit


class OperationContext(BaseModel):
    """Context for a single engine operation."""

    correlation_id: UUID = Field(default_factory=uuid7)
    worker_id: str | None = None
    organisation_id: str | None = None
    data_type: str | None = None
    actor_id: str | None = None
    actor_type: ActorType = ActorType.SYSTEM
    initiated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_log_dict(self) -> dict[str, Any]:
        """Fields added to every log entry emitted under this context."""
        data: dict[str, Any] = {
            "correlation_id": str(self.correlation_id),
            "actor_type": self.actor_type.value,
        }
        for key in ("worker_id", "organisation_id", "data_type", "actor_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


# =============================================================================
# Context Variable Management
# =============================================================================

_operation_context: ContextVar[OperationContext | None] = ContextVar(
    "operation_context", default=None
)


def get_current_context_or_none() -> OperationContext | None:
    """Get the current operation context, or None if not set."""
    return _operation_context.get()


def get_correlation_id() -> UUID:
    """Correlation id of the current operation, or a fresh one outside any."""
    ctx = _operation_context.get()
    return ctx.correlation_id if ctx is not None else uuid7()


def set_context(ctx: OperationContext) -> Token[OperationContext | None]:
    """Set the operation context and return a token for restoration."""
    return _operation_context.set(ctx)


def reset_context(token: Token[OperationContext | None]) -> None:
    """Reset the context to its previous value using a token."""
    _operation_context.reset(token)


@contextmanager
def operation_context(ctx: OperationContext):
    """Context manager for setting the operation context.

    Works for both sync and async code because contextvars are
    propagated to tasks created inside the block.
    """
    token = set_context(ctx)
    try:
        yield ctx
    finally:
        reset_context(token)


def create_context(
    *,
    worker_id: str | None = None,
    organisation_id: str | None = None,
    data_type: str | None = None,
    actor_id: str | None = None,
    actor_type: ActorType = ActorType.SYSTEM,
    correlation_id: UUID | None = None,
) -> OperationContext:
    """Factory function to create an OperationContext with defaults."""
    return OperationContext(
        correlation_id=correlation_id or uuid7(),
        worker_id=worker_id,
        organisation_id=organisation_id,
        data_type=data_type,
        actor_id=actor_id,
        actor_type=actor_type,
    )
