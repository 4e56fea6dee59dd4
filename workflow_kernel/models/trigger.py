"""
Module: workflow_kernel.models.trigger
Responsibility: ORM persistence for event triggers, their execution log and
    the system event log.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Valid enum values: check constraints on action_type and action_result.
    - Execution logs and system events are append-only (ORM listeners).
    - Execution logs carry the trigger id without a foreign key, so the
      audit trail survives deletion of the trigger.

Failure modes:
    - ImmutabilityViolationError on log/event UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base, TimestampedBase, UUIDString
from workflow_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from workflow_kernel.domain.triggers import (
        SystemEvent,
        TriggerExecutionLog,
        WorkflowTrigger,
    )


class WorkflowTriggerModel(TimestampedBase):
    """Standing rule: when ``event_type`` fires and conditions hold, run an action."""

    __tablename__ = "workflow_triggers"

    __table_args__ = (
        CheckConstraint(
            "action_type IN ('send_email', 'create_task', 'update_status', "
            "'webhook', 'notify')",
            name="ck_workflow_triggers_action_type",
        ),
        Index("ix_workflow_triggers_event", "event_type", "is_active", "priority"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(String(200), nullable=False)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<WorkflowTrigger {self.id} {self.name!r} "
            f"{self.event_type}->{self.action_type} priority={self.priority}>"
        )

    def to_dto(self) -> WorkflowTrigger:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.triggers import (
            ActionType,
            WorkflowTrigger as WorkflowTriggerDTO,
        )

        return WorkflowTriggerDTO(
            trigger_id=self.id,
            name=self.name,
            event_type=self.event_type,
            action_type=ActionType(self.action_type),
            action_config=dict(self.action_config or {}),
            conditions=dict(self.conditions) if self.conditions is not None else None,
            description=self.description,
            is_active=self.is_active,
            priority=self.priority,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class TriggerExecutionLogModel(Base):
    """One evaluation of a trigger against an emitted event. Append-only."""

    __tablename__ = "trigger_execution_logs"

    __table_args__ = (
        CheckConstraint(
            "action_result IN ('success', 'failed', 'skipped')",
            name="ck_trigger_execution_logs_result",
        ),
        Index("ix_trigger_execution_logs_trigger", "trigger_id", "created_at"),
        Index("ix_trigger_execution_logs_result", "action_result", "created_at"),
        UniqueConstraint("sequence", name="uq_trigger_execution_logs_sequence"),
    )

    trigger_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(200), nullable=False)
    event_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    action_result: Mapped[str] = mapped_column(String(50), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_ms: Mapped[float] = mapped_column(nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    # Global write order from SequenceService; timestamps from a fixed clock can tie
    sequence: Mapped[int] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<TriggerExecutionLog {self.id} trigger={self.trigger_id} "
            f"{self.event_type} result={self.action_result}>"
        )

    def to_dto(self) -> TriggerExecutionLog:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.triggers import (
            ActionResult,
            TriggerExecutionLog as TriggerExecutionLogDTO,
        )

        return TriggerExecutionLogDTO(
            log_id=self.id,
            trigger_id=self.trigger_id,
            event_type=self.event_type,
            action_result=ActionResult(self.action_result),
            execution_time_ms=self.execution_time_ms,
            created_at=self.created_at,
            event_data=self.event_data,
            error_message=self.error_message,
        )


class SystemEventModel(Base):
    """Every emitted event, written before trigger fan-out. Append-only."""

    __tablename__ = "system_events"

    __table_args__ = (
        Index("ix_system_events_type", "event_type", "created_at"),
        Index("ix_system_events_entity", "entity_type", "entity_id"),
    )

    event_type: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[int | None] = mapped_column(nullable=True)
    event_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(200), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<SystemEvent {self.id} {self.event_type}>"

    def to_dto(self) -> SystemEvent:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.triggers import SystemEvent as SystemEventDTO

        return SystemEventDTO(
            event_id=self.id,
            event_type=self.event_type,
            created_at=self.created_at,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            event_data=self.event_data,
            triggered_by=self.triggered_by,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(TriggerExecutionLogModel, "before_update")
def prevent_execution_log_update(mapper, connection, target):
    """Prevent updates to trigger execution logs."""
    raise ImmutabilityViolationError(
        entity_type="TriggerExecutionLog",
        entity_id=str(target.id),
        reason="Execution logs are append-only -- cannot modify",
    )


@event.listens_for(TriggerExecutionLogModel, "before_delete")
def prevent_execution_log_delete(mapper, connection, target):
    """Prevent deletion of trigger execution logs."""
    raise ImmutabilityViolationError(
        entity_type="TriggerExecutionLog",
        entity_id=str(target.id),
        reason="Execution logs are append-only -- cannot delete",
    )


@event.listens_for(SystemEventModel, "before_update")
def prevent_system_event_update(mapper, connection, target):
    """Prevent updates to system events."""
    raise ImmutabilityViolationError(
        entity_type="SystemEvent",
        entity_id=str(target.id),
        reason="System events are append-only -- cannot modify",
    )


@event.listens_for(SystemEventModel, "before_delete")
def prevent_system_event_delete(mapper, connection, target):
    """Prevent deletion of system events."""
    raise ImmutabilityViolationError(
        entity_type="SystemEvent",
        entity_id=str(target.id),
        reason="System events are append-only -- cannot delete",
    )
