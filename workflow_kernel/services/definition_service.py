"""
DefinitionService -- workflow definition and step administration.

Responsibility:
    Create, update, delete and list workflow definitions; add, remove and
    list their steps.  Guards the one-default-per-entity-type rule and
    refuses edits that would change the path of an instance already
    running on the definition.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only: the caller owns the
    transaction (``with session_scope(factory) as session: ...``).

Invariants enforced:
    - At most one active default per entity type.  A second default raises
      DuplicateDefaultWorkflowError unless ``replace_default=True``, which
      demotes the existing one in the same transaction.
    - ``step_order`` is unique per definition.
    - Step lock: a step referenced by a running instance's requests, or at
      or before a running sequential instance's current step, cannot be
      removed; no step may be inserted at or before that point either.
    - A definition with running instances cannot be deleted or change its
      entity/workflow type.  One with only finished instances is
      deactivated instead of deleted, keeping their history intact.

Failure modes:
    - ValidationError on malformed input.
    - DefinitionNotFoundError / StepNotFoundError on unknown ids.
    - DuplicateDefaultWorkflowError, DuplicateStepOrderError.
    - StepLockedError, DefinitionInUseError.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from workflow_kernel.domain.approval import (
    ApproverType,
    EntityType,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowType,
)
from workflow_kernel.domain.clock import Clock
from workflow_kernel.exceptions import (
    DefinitionInUseError,
    DefinitionNotFoundError,
    DuplicateDefaultWorkflowError,
    DuplicateStepOrderError,
    StepLockedError,
    StepNotFoundError,
    ValidationError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.approval import ApprovalInstanceModel, ApprovalRequestModel
from workflow_kernel.models.workflow import WorkflowDefinitionModel, WorkflowStepModel

logger = get_logger("services.definitions")

_RUNNING = ("pending", "in_progress")

_UNSET: Any = object()


@dataclass(frozen=True)
class StepDraft:
    """Input shape for a new step."""

    step_order: int
    approver_type: ApproverType | str
    approver_value: str
    is_optional: bool = False
    auto_approve_after_hours: int | None = None


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(
            f"{field_name} must be one of: {allowed} (got {value!r})",
            field=field_name,
        ) from None


def _coerce_step(raw: StepDraft | Mapping[str, Any]) -> StepDraft:
    if isinstance(raw, StepDraft):
        draft = raw
    elif isinstance(raw, Mapping):
        try:
            draft = StepDraft(**raw)
        except TypeError as exc:
            raise ValidationError(f"invalid step: {exc}", field="steps") from None
    else:
        raise ValidationError("steps must be StepDraft or mapping items", field="steps")

    if isinstance(draft.step_order, bool) or not isinstance(draft.step_order, int) or draft.step_order < 1:
        raise ValidationError("step_order must be a positive integer", field="step_order")
    _parse_enum(ApproverType, draft.approver_type, "approver_type")
    if not isinstance(draft.approver_value, str) or not draft.approver_value.strip():
        raise ValidationError("approver_value is required", field="approver_value")
    hours = draft.auto_approve_after_hours
    if hours is not None and (isinstance(hours, bool) or not isinstance(hours, int) or hours < 1):
        raise ValidationError(
            "auto_approve_after_hours must be a positive integer",
            field="auto_approve_after_hours",
        )
    return draft


class DefinitionService:
    """Administration of workflow definitions and steps."""

    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock

    # =====================================================================
    # Loading helpers
    # =====================================================================

    def _load(self, definition_id: UUID) -> WorkflowDefinitionModel:
        model = self.session.get(WorkflowDefinitionModel, definition_id)
        if model is None:
            raise DefinitionNotFoundError(str(definition_id))
        return model

    def _active_default(self, entity_type: str) -> WorkflowDefinitionModel | None:
        with self.session.no_autoflush:
            return self.session.execute(
                select(WorkflowDefinitionModel).where(
                    WorkflowDefinitionModel.entity_type == entity_type,
                    WorkflowDefinitionModel.is_default.is_(True),
                    WorkflowDefinitionModel.is_active.is_(True),
                )
            ).scalar_one_or_none()

    def _running_instances(self, definition_id: UUID) -> list[ApprovalInstanceModel]:
        return list(self.session.execute(
            select(ApprovalInstanceModel).where(
                ApprovalInstanceModel.definition_id == definition_id,
                ApprovalInstanceModel.status.in_(_RUNNING),
            )
        ).scalars())

    def _claim_default(
        self,
        model: WorkflowDefinitionModel,
        replace_default: bool,
    ) -> None:
        """Make ``model`` the only active default for its entity type."""
        existing = self._active_default(model.entity_type)
        if existing is None or existing.id == model.id:
            return
        if not replace_default:
            raise DuplicateDefaultWorkflowError(model.entity_type, str(existing.id))
        existing.is_default = False
        existing.updated_at = self.clock.now()
        # Demotion must reach the database before the promotion does
        self.session.flush()
        logger.info(
            "default_workflow_replaced",
            extra={
                "entity_type": model.entity_type,
                "previous_definition_id": str(existing.id),
            },
        )

    def _flush(self, model: WorkflowDefinitionModel) -> None:
        try:
            self.session.flush()
        except IntegrityError:
            # Lost a race for the default slot; the session must be rolled back
            raise DuplicateDefaultWorkflowError(model.entity_type, "unknown") from None

    # =====================================================================
    # Definitions
    # =====================================================================

    def create_definition(
        self,
        name: str,
        entity_type: EntityType | str,
        workflow_type: WorkflowType | str = WorkflowType.SEQUENTIAL,
        description: str | None = None,
        is_active: bool = True,
        is_default: bool = False,
        steps: Iterable[StepDraft | Mapping[str, Any]] = (),
        replace_default: bool = False,
    ) -> WorkflowDefinition:
        """Create a definition, optionally with its steps.

        Raises:
            ValidationError: blank name, unknown entity/workflow type, bad step.
            DuplicateStepOrderError: two steps share an order.
            DuplicateDefaultWorkflowError: another active default exists and
                ``replace_default`` is False.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required", field="name")
        entity = _parse_enum(EntityType, entity_type, "entity_type")
        wf_type = _parse_enum(WorkflowType, workflow_type, "workflow_type")
        drafts = [_coerce_step(s) for s in steps]
        orders = [d.step_order for d in drafts]
        duplicates = sorted({o for o in orders if orders.count(o) > 1})
        if duplicates:
            raise DuplicateStepOrderError(name.strip(), duplicates[0])

        now = self.clock.now()
        model = WorkflowDefinitionModel(
            name=name.strip(),
            description=description,
            entity_type=entity.value,
            workflow_type=wf_type.value,
            is_active=is_active,
            is_default=is_default,
            created_at=now,
            updated_at=now,
        )
        if is_default and is_active:
            self._claim_default(model, replace_default)
        self.session.add(model)
        self._flush(model)

        for draft in drafts:
            self._insert_step(model, draft)
        self.session.flush()
        self.session.refresh(model)

        logger.info(
            "workflow_definition_created",
            extra={
                "definition_id": str(model.id),
                "entity_type": model.entity_type,
                "workflow_type": model.workflow_type,
                "is_default": model.is_default,
                "step_count": len(drafts),
            },
        )
        return model.to_dto()

    def update_definition(
        self,
        definition_id: UUID,
        *,
        name: str | None = None,
        description: str | None = _UNSET,
        entity_type: EntityType | str | None = None,
        workflow_type: WorkflowType | str | None = None,
        is_active: bool | None = None,
        is_default: bool | None = None,
        replace_default: bool = False,
    ) -> WorkflowDefinition:
        """Update the given fields; omitted fields keep their value.

        Raises:
            DefinitionNotFoundError, ValidationError,
            DuplicateDefaultWorkflowError,
            DefinitionInUseError: entity or workflow type change while
                instances are running.
        """
        model = self._load(definition_id)

        if name is not None:
            if not name.strip():
                raise ValidationError("name is required", field="name")
            model.name = name.strip()
        if description is not _UNSET:
            model.description = description

        structural = {}
        if entity_type is not None:
            structural["entity_type"] = _parse_enum(EntityType, entity_type, "entity_type").value
        if workflow_type is not None:
            structural["workflow_type"] = _parse_enum(WorkflowType, workflow_type, "workflow_type").value
        changed = {k: v for k, v in structural.items() if getattr(model, k) != v}
        if changed:
            running = self._running_instances(model.id)
            if running:
                raise DefinitionInUseError(str(model.id), len(running))
            for key, value in changed.items():
                setattr(model, key, value)

        target_active = model.is_active if is_active is None else is_active
        target_default = model.is_default if is_default is None else is_default
        if target_default and target_active:
            self._claim_default(model, replace_default)
        model.is_active = target_active
        model.is_default = target_default

        model.updated_at = self.clock.now()
        self._flush(model)

        logger.info(
            "workflow_definition_updated",
            extra={
                "definition_id": str(model.id),
                "is_active": model.is_active,
                "is_default": model.is_default,
            },
        )
        return model.to_dto()

    def delete_definition(self, definition_id: UUID) -> bool:
        """Delete a definition.

        Returns:
            True if the row was removed; False if it was only deactivated
            because finished instances still reference it.

        Raises:
            DefinitionNotFoundError, DefinitionInUseError.
        """
        model = self._load(definition_id)
        running = self._running_instances(model.id)
        if running:
            raise DefinitionInUseError(str(model.id), len(running))

        referenced = self.session.execute(
            select(func.count()).select_from(ApprovalInstanceModel).where(
                ApprovalInstanceModel.definition_id == model.id,
            )
        ).scalar_one()

        if referenced:
            model.is_active = False
            model.is_default = False
            model.updated_at = self.clock.now()
            self.session.flush()
            logger.info(
                "workflow_definition_deactivated",
                extra={"definition_id": str(model.id), "finished_instances": referenced},
            )
            return False

        self.session.delete(model)
        self.session.flush()
        logger.info("workflow_definition_deleted", extra={"definition_id": str(definition_id)})
        return True

    def get_definition(self, definition_id: UUID) -> WorkflowDefinition:
        return self._load(definition_id).to_dto()

    def list_definitions(
        self,
        entity_type: EntityType | str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        stmt = select(WorkflowDefinitionModel)
        if entity_type is not None:
            entity = _parse_enum(EntityType, entity_type, "entity_type")
            stmt = stmt.where(WorkflowDefinitionModel.entity_type == entity.value)
        if active_only:
            stmt = stmt.where(WorkflowDefinitionModel.is_active.is_(True))
        stmt = stmt.order_by(
            WorkflowDefinitionModel.entity_type,
            WorkflowDefinitionModel.is_default.desc(),
            WorkflowDefinitionModel.name,
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def get_default(self, entity_type: EntityType | str) -> WorkflowDefinition | None:
        entity = _parse_enum(EntityType, entity_type, "entity_type")
        model = self._active_default(entity.value)
        return model.to_dto() if model else None

    # =====================================================================
    # Steps
    # =====================================================================

    def _insert_step(self, model: WorkflowDefinitionModel, draft: StepDraft) -> WorkflowStepModel:
        now = self.clock.now()
        step = WorkflowStepModel(
            definition_id=model.id,
            step_order=draft.step_order,
            approver_type=ApproverType(draft.approver_type).value,
            approver_value=draft.approver_value.strip(),
            is_optional=bool(draft.is_optional),
            auto_approve_after_hours=draft.auto_approve_after_hours,
            created_at=now,
            updated_at=now,
        )
        self.session.add(step)
        return step

    def _current_orders(self, definition: WorkflowDefinitionModel) -> dict[UUID, int]:
        """Step order each running sequential instance has reached."""
        if definition.workflow_type != WorkflowType.SEQUENTIAL.value:
            return {}
        rows = self.session.execute(
            select(
                ApprovalRequestModel.instance_id,
                func.max(ApprovalRequestModel.step_order),
            )
            .join(ApprovalInstanceModel, ApprovalInstanceModel.id == ApprovalRequestModel.instance_id)
            .where(
                ApprovalInstanceModel.definition_id == definition.id,
                ApprovalInstanceModel.status.in_(_RUNNING),
            )
            .group_by(ApprovalRequestModel.instance_id)
        ).all()
        return {instance_id: order for instance_id, order in rows}

    def add_step(
        self,
        definition_id: UUID,
        step_order: int,
        approver_type: ApproverType | str,
        approver_value: str,
        is_optional: bool = False,
        auto_approve_after_hours: int | None = None,
    ) -> WorkflowStep:
        """Append or insert a step.

        Raises:
            DuplicateStepOrderError: order already used on this definition.
            StepLockedError: a running sequential instance already reached
                or passed ``step_order``.
        """
        definition = self._load(definition_id)
        draft = _coerce_step(StepDraft(
            step_order=step_order,
            approver_type=approver_type,
            approver_value=approver_value,
            is_optional=is_optional,
            auto_approve_after_hours=auto_approve_after_hours,
        ))
        if any(s.step_order == draft.step_order for s in definition.steps):
            raise DuplicateStepOrderError(str(definition.id), draft.step_order)

        for instance_id, reached in self._current_orders(definition).items():
            if draft.step_order <= reached:
                raise StepLockedError(str(definition.id), draft.step_order, str(instance_id))

        step = self._insert_step(definition, draft)
        definition.updated_at = self.clock.now()
        self.session.flush()
        self.session.refresh(definition)

        logger.info(
            "workflow_step_added",
            extra={
                "definition_id": str(definition.id),
                "step_id": str(step.id),
                "step_order": step.step_order,
            },
        )
        return step.to_dto()

    def remove_step(self, definition_id: UUID, step_id: UUID) -> None:
        """Remove a step that no running instance depends on.

        Raises:
            StepNotFoundError: step is not on this definition.
            StepLockedError: a running instance has requests on it, or a
                running sequential instance is at or past it.
        """
        definition = self._load(definition_id)
        step = next((s for s in definition.steps if s.id == step_id), None)
        if step is None:
            raise StepNotFoundError(str(step_id))

        holder = self.session.execute(
            select(ApprovalRequestModel.instance_id)
            .join(ApprovalInstanceModel, ApprovalInstanceModel.id == ApprovalRequestModel.instance_id)
            .where(
                ApprovalRequestModel.step_id == step.id,
                ApprovalInstanceModel.status.in_(_RUNNING),
            )
            .limit(1)
        ).scalar()
        if holder is not None:
            raise StepLockedError(str(definition.id), step.step_order, str(holder))

        for instance_id, reached in self._current_orders(definition).items():
            if step.step_order <= reached:
                raise StepLockedError(str(definition.id), step.step_order, str(instance_id))

        definition.steps.remove(step)
        definition.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "workflow_step_removed",
            extra={
                "definition_id": str(definition.id),
                "step_id": str(step_id),
                "step_order": step.step_order,
            },
        )

    def list_steps(self, definition_id: UUID) -> list[WorkflowStep]:
        definition = self._load(definition_id)
        return [s.to_dto() for s in definition.steps]
