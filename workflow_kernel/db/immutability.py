"""
ORM-Level Immutability Enforcement for approval state.

===============================================================================
WHY THIS EXISTS
===============================================================================

An approval instance reaches a terminal status exactly once.  Once approved,
rejected or cancelled, nothing about it may change: not its status, not its
step pointer, not its completion time.  The same holds for a request that
has left ``pending``.  History rows, execution logs and system events are
append-only from the moment they are written; their listeners live next to
their models (models/approval.py, models/trigger.py).

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update] --> _check_instance_immutability() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

The check looks at attribute history: the transition INTO a terminal
status is allowed (it IS the decision), any change AFTER it is blocked.

===============================================================================
USAGE
===============================================================================

Called by create_tables() and by the runtime at start-up:

    from workflow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from workflow_kernel.exceptions import ImmutabilityViolationError
from workflow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_TERMINAL_INSTANCE = frozenset({"approved", "rejected", "cancelled"})


def _status_before_flush(target) -> str | None:
    """Status the row had before this flush, or None when unknown."""
    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0]
    if not history.added:
        return target.status
    return None


def _blocked(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_instance_immutability(mapper, connection, target):
    """Block any change to an instance that was already terminal."""
    previous = _status_before_flush(target)
    if previous in _TERMINAL_INSTANCE:
        changed = [
            attr.key for attr in inspect(target).attrs
            if attr.key not in ("requests", "definition")
            and attr.history.has_changes()
        ]
        if changed:
            _blocked(
                "ApprovalInstance", target, "UPDATE",
                f"Instance is {previous}; cannot modify {', '.join(sorted(changed))}",
            )


def _check_instance_delete(mapper, connection, target):
    """Instances are never deleted; their history references them."""
    _blocked(
        "ApprovalInstance", target, "DELETE",
        "Approval instances cannot be deleted -- cancel instead",
    )


def _check_request_immutability(mapper, connection, target):
    """Block any change to a request that already left pending."""
    previous = _status_before_flush(target)
    if previous is not None and previous != "pending":
        _blocked(
            "ApprovalRequest", target, "UPDATE",
            f"Request is {previous}; resolved requests cannot be modified",
        )


def _check_request_delete(mapper, connection, target):
    """Requests are never deleted."""
    _blocked(
        "ApprovalRequest", target, "DELETE",
        "Approval requests cannot be deleted",
    )


def _listeners():
    from workflow_kernel.models.approval import (
        ApprovalInstanceModel,
        ApprovalRequestModel,
    )

    return (
        (ApprovalInstanceModel, "before_update", _check_instance_immutability),
        (ApprovalInstanceModel, "before_delete", _check_instance_delete),
        (ApprovalRequestModel, "before_update", _check_request_immutability),
        (ApprovalRequestModel, "before_delete", _check_request_delete),
    )


def register_immutability_listeners() -> None:
    """Register the instance/request listeners.  Safe to call repeatedly."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove the instance/request listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
