"""
Module: workflow_kernel.models.approval
Responsibility: ORM persistence for approval instances, per-approver
    requests and the instance history trail.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Lifecycle values: check constraints limit instance and request status.
    - One running instance per entity: a partial unique index on
      (entity_type, entity_id) covers the pending/in_progress statuses.
    - Optimistic concurrency: ``version`` is the mapper's version_id_col, so
      a write based on a stale read raises StaleDataError.
    - History is append-only: UPDATE and DELETE are rejected by ORM
      listeners below.  Terminal instances and resolved requests are frozen
      by the listeners in db/immutability.py.

Failure modes:
    - IntegrityError on a second running instance for the same entity.
    - StaleDataError on a concurrent instance update.
    - ImmutabilityViolationError on history UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import Base, UUIDString
from workflow_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from workflow_kernel.domain.approval import (
        ApprovalHistoryEntry,
        ApprovalInstance,
        ApprovalRequest,
    )

_ACTIVE_STATUS_PREDICATE = "status IN ('pending', 'in_progress')"


class ApprovalInstanceModel(Base):
    """Persistent run of a workflow definition against one entity.

    Contract:
        Reaches a terminal status (approved, rejected, cancelled) at most
        once; the row is frozen afterwards.
    """

    __tablename__ = "approval_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'approved', 'rejected', "
            "'cancelled')",
            name="ck_approval_instances_status",
        ),
        Index(
            "uq_approval_instances_active_entity",
            "entity_type", "entity_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_PREDICATE),
            postgresql_where=text(_ACTIVE_STATUS_PREDICATE),
        ),
        Index("ix_approval_instances_status", "status", "initiated_at"),
        Index("ix_approval_instances_definition", "definition_id"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_definitions.id"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    current_step: Mapped[int] = mapped_column(nullable=False, default=1)
    initiated_by: Mapped[str] = mapped_column(String(200), nullable=False)
    initiated_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    definition: Mapped["WorkflowDefinitionModel"] = relationship(
        "WorkflowDefinitionModel", lazy="joined", innerjoin=True,
    )
    requests: Mapped[list["ApprovalRequestModel"]] = relationship(
        "ApprovalRequestModel",
        back_populates="instance",
        order_by="ApprovalRequestModel.step_order",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.id} {self.entity_type}#{self.entity_id} "
            f"status={self.status} step={self.current_step}>"
        )

    def to_dto(self) -> ApprovalInstance:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ApprovalInstance as ApprovalInstanceDTO,
            EntityType,
            InstanceStatus,
            WorkflowType,
        )

        definition = self.definition
        return ApprovalInstanceDTO(
            instance_id=self.id,
            definition_id=self.definition_id,
            entity_type=EntityType(self.entity_type),
            entity_id=self.entity_id,
            status=InstanceStatus(self.status),
            current_step=self.current_step,
            initiated_by=self.initiated_by,
            initiated_at=self.initiated_at,
            completed_at=self.completed_at,
            notes=self.notes,
            workflow_type=(
                WorkflowType(definition.workflow_type) if definition else None
            ),
            workflow_name=definition.name if definition else None,
        )


class ApprovalRequestModel(Base):
    """One approver's unit of work on one step of an instance.

    Contract:
        Leaves ``pending`` exactly once.  ``step_order`` and ``is_optional``
        are snapshots of the step at creation time.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'skipped')",
            name="ck_approval_requests_status",
        ),
        Index("ix_approval_requests_instance", "instance_id", "status"),
        Index("ix_approval_requests_approver", "approver", "status"),
        Index("ix_approval_requests_deadline", "status", "auto_approve_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_instances.id"),
        nullable=False,
    )
    step_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id", ondelete="SET NULL"),
        nullable=True,
    )
    step_order: Mapped[int] = mapped_column(nullable=False)
    is_optional: Mapped[bool] = mapped_column(nullable=False, default=False)
    approver: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    auto_approve_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decision_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reminder_count: Mapped[int] = mapped_column(nullable=False, default=0)

    instance: Mapped["ApprovalInstanceModel"] = relationship(
        "ApprovalInstanceModel",
        back_populates="requests",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} instance={self.instance_id} "
            f"step={self.step_order} approver={self.approver} "
            f"status={self.status}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            RequestStatus,
        )

        return ApprovalRequestDTO(
            request_id=self.id,
            instance_id=self.instance_id,
            step_id=self.step_id,
            step_order=self.step_order,
            approver=self.approver,
            status=RequestStatus(self.status),
            is_optional=self.is_optional,
            created_at=self.created_at,
            auto_approve_at=self.auto_approve_at,
            decision_at=self.decision_at,
            decided_by=self.decided_by,
            comment=self.comment,
            reminder_sent_at=self.reminder_sent_at,
            reminder_count=self.reminder_count,
        )


class ApprovalHistoryModel(Base):
    """Append-only audit record for an instance."""

    __tablename__ = "approval_history"

    __table_args__ = (
        CheckConstraint(
            "action IN ('initiated', 'approved', 'rejected', 'auto_approved', "
            "'skipped', 'cancelled')",
            name="ck_approval_history_action",
        ),
        Index("ix_approval_history_instance", "instance_id", "created_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_instances.id"),
        nullable=False,
    )
    step_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_steps.id", ondelete="SET NULL"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    # Insertion order within one timestamp
    sequence: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<ApprovalHistory {self.id} instance={self.instance_id} "
            f"action={self.action} actor={self.actor}>"
        )

    def to_dto(self) -> ApprovalHistoryEntry:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ApprovalHistoryEntry as ApprovalHistoryEntryDTO,
            HistoryAction,
        )

        return ApprovalHistoryEntryDTO(
            entry_id=self.id,
            instance_id=self.instance_id,
            action=HistoryAction(self.action),
            actor=self.actor,
            created_at=self.created_at,
            step_id=self.step_id,
            comment=self.comment,
        )


# =============================================================================
# ORM-Level Immutability for History (Append-Only)
# =============================================================================


@event.listens_for(ApprovalHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    """Prevent updates to approval history records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot modify",
    )


@event.listens_for(ApprovalHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """Prevent deletion of approval history records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot delete",
    )
