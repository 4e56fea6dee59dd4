"""
TriggerService -- event trigger administration.

Responsibility:
    Create, update, toggle, delete and list workflow triggers, validating
    each against the static event and action catalogs, the condition
    grammar and the per-action configuration contract.  Also answers the
    "which triggers fire for this event" query used by the TriggerEngine.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only: the caller owns
    the transaction.

Invariants enforced:
    - event_type is a catalog event or a wildcard pattern matching at
      least one catalog event.
    - conditions are None or a mapping accepted by validate_conditions.
    - action_config carries every key its action type requires.
    - Matching triggers are ordered by ascending priority, then id.

Failure modes:
    - TriggerNotFoundError on unknown ids.
    - UnknownEventTypeError, UnknownActionTypeError, InvalidConditionsError,
      InvalidActionConfigError, ValidationError on malformed input.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from workflow_engines.conditions import validate_conditions
from workflow_kernel.domain.clock import Clock
from workflow_kernel.domain.triggers import (
    ACTION_DESCRIPTIONS,
    EVENT_TYPES,
    WILDCARD,
    ActionType,
    WorkflowTrigger,
    event_matches,
    is_known_event_pattern,
)
from workflow_kernel.exceptions import (
    TriggerNotFoundError,
    UnknownEventTypeError,
    ValidationError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.trigger import WorkflowTriggerModel
from workflow_kernel.services.action_dispatcher import validate_action_config

logger = get_logger("services.triggers")

_UNSET: Any = object()


def _check_event_type(event_type: Any) -> str:
    if not isinstance(event_type, str) or not is_known_event_pattern(event_type):
        raise UnknownEventTypeError(str(event_type))
    return event_type


def _check_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required", field="name")
    return name.strip()


def _check_priority(priority: Any) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority must be an integer", field="priority")
    return priority


def _check_conditions(conditions: Any) -> dict[str, Any] | None:
    if conditions is None:
        return None
    validate_conditions(conditions)
    return dict(conditions)


class TriggerService:
    """CRUD and lookup for workflow triggers."""

    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock

    # =====================================================================
    # Catalogs
    # =====================================================================

    @staticmethod
    def event_types() -> list[str]:
        """Every event type a trigger may listen to."""
        return list(EVENT_TYPES)

    @staticmethod
    def action_types() -> list[dict[str, str]]:
        """Every action type with its human-readable description."""
        return [
            {"type": action.value, "description": ACTION_DESCRIPTIONS[action]}
            for action in ActionType
        ]

    # =====================================================================
    # CRUD
    # =====================================================================

    def _load(self, trigger_id: UUID) -> WorkflowTriggerModel:
        model = self.session.get(WorkflowTriggerModel, trigger_id)
        if model is None:
            raise TriggerNotFoundError(str(trigger_id))
        return model

    def create_trigger(
        self,
        name: str,
        event_type: str,
        action_type: ActionType | str,
        action_config: Mapping[str, Any] | None = None,
        conditions: Mapping[str, Any] | None = None,
        description: str | None = None,
        is_active: bool = True,
        priority: int = 0,
    ) -> WorkflowTrigger:
        """Create a trigger after validating it end to end."""
        config = dict(action_config or {})
        action = validate_action_config(action_type, config)
        now = self.clock.now()
        model = WorkflowTriggerModel(
            name=_check_name(name),
            description=description,
            event_type=_check_event_type(event_type),
            conditions=_check_conditions(conditions),
            action_type=action.value,
            action_config=config,
            is_active=bool(is_active),
            priority=_check_priority(priority),
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "trigger_created",
            extra={
                "trigger_id": str(model.id),
                "event_type": model.event_type,
                "action_type": model.action_type,
                "priority": model.priority,
            },
        )
        return model.to_dto()

    def update_trigger(
        self,
        trigger_id: UUID,
        *,
        name: str | None = None,
        event_type: str | None = None,
        action_type: ActionType | str | None = None,
        action_config: Mapping[str, Any] | None = None,
        conditions: Mapping[str, Any] | None = _UNSET,
        description: str | None = _UNSET,
        is_active: bool | None = None,
        priority: int | None = None,
    ) -> WorkflowTrigger:
        """Partial update.  Pass ``conditions=None`` to clear conditions.

        Action type and config are validated together, so changing the
        action type without a matching config is rejected.
        """
        model = self._load(trigger_id)

        new_action = action_type if action_type is not None else model.action_type
        new_config = dict(action_config) if action_config is not None else dict(model.action_config or {})
        if action_type is not None or action_config is not None:
            model.action_type = validate_action_config(new_action, new_config).value
            model.action_config = new_config

        if name is not None:
            model.name = _check_name(name)
        if event_type is not None:
            model.event_type = _check_event_type(event_type)
        if conditions is not _UNSET:
            model.conditions = _check_conditions(conditions)
        if description is not _UNSET:
            model.description = description
        if is_active is not None:
            model.is_active = bool(is_active)
        if priority is not None:
            model.priority = _check_priority(priority)
        model.updated_at = self.clock.now()
        self.session.flush()

        logger.info("trigger_updated", extra={"trigger_id": str(trigger_id)})
        return model.to_dto()

    def toggle_trigger(self, trigger_id: UUID) -> WorkflowTrigger:
        """Flip ``is_active``."""
        model = self._load(trigger_id)
        model.is_active = not model.is_active
        model.updated_at = self.clock.now()
        self.session.flush()
        logger.info(
            "trigger_toggled",
            extra={"trigger_id": str(trigger_id), "is_active": model.is_active},
        )
        return model.to_dto()

    def delete_trigger(self, trigger_id: UUID) -> None:
        """Delete a trigger.  Its execution logs are kept."""
        model = self._load(trigger_id)
        self.session.delete(model)
        self.session.flush()
        logger.info("trigger_deleted", extra={"trigger_id": str(trigger_id)})

    def get_trigger(self, trigger_id: UUID) -> WorkflowTrigger:
        return self._load(trigger_id).to_dto()

    def list_triggers(
        self,
        event_type: str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowTrigger]:
        """Triggers ordered by priority, then name.

        ``event_type`` filters on the stored pattern itself, so listing
        ``invoice.*`` returns the wildcard triggers, not every invoice one.
        """
        stmt = select(WorkflowTriggerModel)
        if event_type is not None:
            stmt = stmt.where(WorkflowTriggerModel.event_type == event_type)
        if active_only:
            stmt = stmt.where(WorkflowTriggerModel.is_active.is_(True))
        stmt = stmt.order_by(
            WorkflowTriggerModel.priority,
            WorkflowTriggerModel.name,
            WorkflowTriggerModel.id,
        )
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def matching_triggers(self, event_type: str) -> list[WorkflowTrigger]:
        """Active triggers that fire for ``event_type``, in execution order."""
        rows = self.session.execute(
            select(WorkflowTriggerModel).where(
                WorkflowTriggerModel.is_active.is_(True),
                or_(
                    WorkflowTriggerModel.event_type == event_type,
                    WorkflowTriggerModel.event_type.contains(WILDCARD),
                ),
            )
        ).scalars()
        matched = [row.to_dto() for row in rows if event_matches(row.event_type, event_type)]
        matched.sort(key=lambda t: (t.priority, str(t.trigger_id)))
        return matched
