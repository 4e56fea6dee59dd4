"""
Module: workflow_kernel.models.workflow
Responsibility: ORM persistence for workflow definitions and their steps.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Valid enum values: check constraints on entity_type, workflow_type and
      approver_type.
    - Single default: a partial unique index allows at most one active
      default definition per entity_type.
    - Unique step order: UNIQUE(definition_id, step_order).
    - Positive auto-approval windows: auto_approve_after_hours > 0 or NULL.

Failure modes:
    - IntegrityError on a second active default for an entity type.
    - IntegrityError on a duplicate step_order within a definition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import TimestampedBase, UUIDString

if TYPE_CHECKING:
    from workflow_kernel.domain.approval import WorkflowDefinition, WorkflowStep


class WorkflowDefinitionModel(TimestampedBase):
    """Persistent approval workflow template.

    Contract:
        Edited only through DefinitionService; the approval engine reads it
        but never writes it.
    """

    __tablename__ = "workflow_definitions"

    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('proposal', 'invoice', 'contract', "
            "'deliverable', 'project')",
            name="ck_workflow_definitions_entity_type",
        ),
        CheckConstraint(
            "workflow_type IN ('sequential', 'parallel', 'any_one')",
            name="ck_workflow_definitions_workflow_type",
        ),
        Index(
            "uq_workflow_definitions_active_default",
            "entity_type",
            unique=True,
            sqlite_where=text("is_default = 1 AND is_active = 1"),
            postgresql_where=text("is_default AND is_active"),
        ),
        Index("ix_workflow_definitions_entity_type", "entity_type", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    workflow_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default="sequential",
    )
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(nullable=False, default=False)

    steps: Mapped[list["WorkflowStepModel"]] = relationship(
        "WorkflowStepModel",
        back_populates="definition",
        order_by="WorkflowStepModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowDefinition {self.id} {self.name!r} "
            f"{self.entity_type}/{self.workflow_type}>"
        )

    def to_dto(self) -> WorkflowDefinition:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            EntityType,
            WorkflowDefinition as WorkflowDefinitionDTO,
            WorkflowType,
        )

        return WorkflowDefinitionDTO(
            definition_id=self.id,
            name=self.name,
            entity_type=EntityType(self.entity_type),
            workflow_type=WorkflowType(self.workflow_type),
            description=self.description,
            is_active=self.is_active,
            is_default=self.is_default,
            steps=tuple(s.to_dto() for s in self.steps),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class WorkflowStepModel(TimestampedBase):
    """One ordered stage of a definition."""

    __tablename__ = "workflow_steps"

    __table_args__ = (
        UniqueConstraint(
            "definition_id", "step_order",
            name="uq_workflow_steps_definition_order",
        ),
        CheckConstraint(
            "approver_type IN ('user', 'role', 'client')",
            name="ck_workflow_steps_approver_type",
        ),
        CheckConstraint(
            "auto_approve_after_hours IS NULL OR auto_approve_after_hours > 0",
            name="ck_workflow_steps_auto_approve_positive",
        ),
        CheckConstraint("step_order > 0", name="ck_workflow_steps_order_positive"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(nullable=False)
    approver_type: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_value: Mapped[str] = mapped_column(String(200), nullable=False)
    is_optional: Mapped[bool] = mapped_column(nullable=False, default=False)
    auto_approve_after_hours: Mapped[int | None] = mapped_column(nullable=True)

    definition: Mapped["WorkflowDefinitionModel"] = relationship(
        "WorkflowDefinitionModel",
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowStep {self.id} order={self.step_order} "
            f"{self.approver_type}:{self.approver_value}>"
        )

    def to_dto(self) -> WorkflowStep:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ApproverType,
            WorkflowStep as WorkflowStepDTO,
        )

        return WorkflowStepDTO(
            step_id=self.id,
            definition_id=self.definition_id,
            step_order=self.step_order,
            approver_type=ApproverType(self.approver_type),
            approver_value=self.approver_value,
            is_optional=self.is_optional,
            auto_approve_after_hours=self.auto_approve_after_hours,
        )
