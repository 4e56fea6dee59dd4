"""
Trigger domain types (``workflow_kernel.domain.triggers``).

Responsibility
--------------
Static event/action catalogs, trigger and execution-log snapshots, the
dispatch outcome type, and the paging envelope used by log queries.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects, ZERO I/O.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID


class ActionType(str, Enum):
    """Actions a trigger can dispatch."""

    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    UPDATE_STATUS = "update_status"
    WEBHOOK = "webhook"
    NOTIFY = "notify"


ACTION_DESCRIPTIONS: dict[ActionType, str] = {
    ActionType.SEND_EMAIL: "Send an email using a template",
    ActionType.CREATE_TASK: "Create a task for the project",
    ActionType.UPDATE_STATUS: "Update entity status",
    ActionType.WEBHOOK: "Call an external webhook URL",
    ActionType.NOTIFY: "Send in-app notification",
}


class ActionResult(str, Enum):
    """Outcome recorded in a trigger execution log."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# =========================================================================
# Event catalog
# =========================================================================

EVENT_TYPES: tuple[str, ...] = (
    "invoice.created", "invoice.sent", "invoice.paid", "invoice.overdue",
    "invoice.cancelled",
    "contract.created", "contract.sent", "contract.signed", "contract.expired",
    "project.created", "project.started", "project.completed",
    "project.status_changed", "project.milestone_completed",
    "client.created", "client.activated", "client.deactivated",
    "message.created", "message.read",
    "file.uploaded", "file.downloaded",
    "proposal.created", "proposal.sent", "proposal.accepted",
    "proposal.rejected",
    "lead.created", "lead.converted", "lead.stage_changed",
    "deliverable.submitted", "deliverable.approved", "deliverable.rejected",
    "task.created", "task.completed", "task.overdue",
    "approval.initiated", "approval.approved", "approval.rejected",
    "approval.cancelled", "approval.completed",
)

WILDCARD = "*"


def entity_type_of(event_type: str) -> str | None:
    """Namespace prefix of a dot-namespaced event type."""
    head, _, _ = event_type.partition(".")
    return head or None


def is_known_event_pattern(pattern: str) -> bool:
    """True if ``pattern`` names a catalog event or is a usable wildcard."""
    if pattern in EVENT_TYPES:
        return True
    if WILDCARD not in pattern:
        return False
    return any(fnmatch.fnmatchcase(e, pattern) for e in EVENT_TYPES)


def event_matches(pattern: str, event_type: str) -> bool:
    """Exact match, or shell-style wildcard match (``invoice.*``, ``*``)."""
    if pattern == event_type:
        return True
    return WILDCARD in pattern and fnmatch.fnmatchcase(event_type, pattern)


# Sample payloads for test-emit, keyed by event namespace.
SAMPLE_CONTEXTS: dict[str, dict[str, Any]] = {
    "invoice": {
        "entityId": 1001, "invoiceId": 1001, "projectId": 42, "clientId": 7,
        "clientEmail": "client@example.com", "status": "sent",
        "invoice": {"number": "INV-1001", "amount": 2500.0, "status": "sent"},
    },
    "contract": {
        "entityId": 301, "projectId": 42, "clientId": 7,
        "clientEmail": "client@example.com", "status": "sent",
        "contract": {"title": "Website Redesign", "status": "sent"},
    },
    "project": {
        "entityId": 42, "projectId": 42, "clientId": 7, "status": "active",
        "project": {"name": "Website Redesign", "status": "active"},
    },
    "client": {
        "entityId": 7, "clientId": 7, "clientEmail": "client@example.com",
        "status": "active", "client": {"name": "Acme Co", "status": "active"},
    },
    "proposal": {
        "entityId": 55, "projectId": 42, "clientId": 7,
        "clientEmail": "client@example.com", "status": "sent",
        "proposal": {"title": "Phase 2", "amount": 12000.0},
    },
    "approval": {
        "entityId": 55, "entityType": "proposal", "status": "approved",
        "workflowName": "Standard Proposal Approval",
    },
}

DEFAULT_SAMPLE_CONTEXT: dict[str, Any] = {"entityId": 1, "status": "active"}


def sample_context(event_type: str) -> dict[str, Any]:
    """Synthesised context for manually testing a trigger."""
    base = SAMPLE_CONTEXTS.get(entity_type_of(event_type) or "", DEFAULT_SAMPLE_CONTEXT)
    # Copy nested dicts so callers can mutate freely
    return {k: dict(v) if isinstance(v, dict) else v for k, v in base.items()}


# =========================================================================
# Snapshots
# =========================================================================


@dataclass(frozen=True)
class WorkflowTrigger:
    """Standing rule reacting to a domain event."""

    trigger_id: UUID
    name: str
    event_type: str
    action_type: ActionType
    action_config: dict[str, Any] = field(default_factory=dict)
    conditions: dict[str, Any] | None = None
    description: str | None = None
    is_active: bool = True
    priority: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TriggerExecutionLog:
    """One evaluation of a trigger against an event."""

    log_id: UUID
    trigger_id: UUID
    event_type: str
    action_result: ActionResult
    execution_time_ms: float
    created_at: datetime
    event_data: dict[str, Any] | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class SystemEvent:
    """Every emitted event, recorded before trigger fan-out."""

    event_id: UUID
    event_type: str
    created_at: datetime
    entity_type: str | None = None
    entity_id: int | None = None
    event_data: dict[str, Any] | None = None
    triggered_by: str = "system"


@dataclass(frozen=True)
class DispatchOutcome:
    """What the action dispatcher reports for one dispatch."""

    result: ActionResult
    error_message: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result == ActionResult.SUCCESS


T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """A page of query results."""

    items: tuple[T, ...]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    @property
    def has_next(self) -> bool:
        return self.page < self.pages
