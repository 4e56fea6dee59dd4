"""
Approval domain types (``workflow_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval engine: the lifecycle enums and their
transition tables, definition/step/instance/request/history snapshots, the
bulk-decision result, and the approver directory protocol.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``services/``, ``selectors/`` or outer layers.

Invariants enforced
-------------------
* Instance lifecycle -- ``INSTANCE_TRANSITIONS`` lists the only legal
  instance status changes; terminal statuses have no outgoing edges.
* Request lifecycle -- a request leaves ``pending`` exactly once.
* History actions are a closed set (``HistoryAction``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID


# =========================================================================
# Enumerations
# =========================================================================


class EntityType(str, Enum):
    """Kinds of records that can go through an approval workflow."""

    PROPOSAL = "proposal"
    INVOICE = "invoice"
    CONTRACT = "contract"
    DELIVERABLE = "deliverable"
    PROJECT = "project"


class WorkflowType(str, Enum):
    """How the steps of a definition combine."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ANY_ONE = "any_one"


class ApproverType(str, Enum):
    """Tag of the approver variant on a step."""

    USER = "user"
    ROLE = "role"
    CLIENT = "client"


class InstanceStatus(str, Enum):
    """Approval instance lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({
        InstanceStatus.IN_PROGRESS,
        InstanceStatus.APPROVED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.IN_PROGRESS: frozenset({
        InstanceStatus.APPROVED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.APPROVED: frozenset(),
    InstanceStatus.REJECTED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}

TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})

ACTIVE_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.PENDING,
    InstanceStatus.IN_PROGRESS,
})


class RequestStatus(str, Enum):
    """Approval request states.  Everything but PENDING is final."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class Decision(str, Enum):
    """What an approver can answer."""

    APPROVE = "approve"
    REJECT = "reject"


class HistoryAction(str, Enum):
    """Audit actions recorded per instance."""

    INITIATED = "initiated"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


SYSTEM_ACTOR = "system"
AUTO_APPROVE_COMMENT = "auto-approved"


# =========================================================================
# Definitions
# =========================================================================


@dataclass(frozen=True)
class WorkflowStep:
    """One stage of a definition."""

    step_id: UUID
    definition_id: UUID
    step_order: int
    approver_type: ApproverType
    approver_value: str
    is_optional: bool = False
    auto_approve_after_hours: int | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Reusable approval template for one entity type."""

    definition_id: UUID
    name: str
    entity_type: EntityType
    workflow_type: WorkflowType
    description: str | None = None
    is_active: bool = True
    is_default: bool = False
    steps: tuple[WorkflowStep, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =========================================================================
# Instances, requests, history
# =========================================================================


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of one approver's unit of work on one step.

    ``step_order`` and ``is_optional`` are copied from the step when the
    request is created, so later definition edits cannot change how a
    running instance resolves.  ``step_id`` is ``None`` once the step was
    removed from the definition after the instance finished.
    """

    request_id: UUID
    instance_id: UUID
    step_id: UUID | None
    step_order: int
    approver: str
    status: RequestStatus = RequestStatus.PENDING
    is_optional: bool = False
    created_at: datetime | None = None
    auto_approve_at: datetime | None = None
    decision_at: datetime | None = None
    decided_by: str | None = None
    comment: str | None = None
    reminder_sent_at: datetime | None = None
    reminder_count: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING


@dataclass(frozen=True)
class ApprovalInstance:
    """One run of a definition against a specific entity."""

    instance_id: UUID
    definition_id: UUID
    entity_type: EntityType
    entity_id: int
    status: InstanceStatus
    current_step: int
    initiated_by: str
    initiated_at: datetime | None = None
    completed_at: datetime | None = None
    notes: str | None = None
    workflow_type: WorkflowType | None = None
    workflow_name: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    """Append-only audit record for an instance."""

    entry_id: UUID
    instance_id: UUID
    action: HistoryAction
    actor: str
    created_at: datetime
    step_id: UUID | None = None
    comment: str | None = None


@dataclass(frozen=True)
class InstanceDetail:
    """An instance with its requests and history, for the admin views."""

    instance: ApprovalInstance
    requests: tuple[ApprovalRequest, ...] = ()
    history: tuple[ApprovalHistoryEntry, ...] = ()

    @property
    def pending_requests(self) -> tuple[ApprovalRequest, ...]:
        return tuple(r for r in self.requests if r.is_pending)


# =========================================================================
# Bulk decisions
# =========================================================================


@dataclass(frozen=True)
class BulkFailure:
    """Why one instance in a bulk decision could not be decided."""

    instance_id: UUID
    code: str
    message: str


@dataclass(frozen=True)
class BulkDecisionResult:
    """Per-instance outcome of ``bulk_decide``; never all-or-nothing."""

    decision: Decision
    succeeded: tuple[UUID, ...] = ()
    failed: tuple[BulkFailure, ...] = ()

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


# =========================================================================
# Approver resolution
# =========================================================================


@dataclass(frozen=True)
class Approver:
    """Tagged approver variant as written on a step."""

    approver_type: ApproverType
    value: str = field(default="")


class ApproverDirectory(Protocol):
    """Resolves an approver variant to notifiable recipients.

    An empty tuple means nobody is assigned; the engine treats such a step
    as auto-approved.
    """

    def resolve(self, approver: Approver) -> tuple[str, ...]:
        ...


class StaticApproverDirectory:
    """Directory that maps each variant to one addressable recipient.

    ``user`` resolves to its value (an email address); ``role`` and
    ``client`` resolve to ``role:<name>`` / ``client:<value>`` handles the
    notifier understands.  Blank values resolve to nobody.
    """

    def __init__(self, overrides: dict[tuple[str, str], tuple[str, ...]] | None = None):
        self._overrides = dict(overrides or {})

    def resolve(self, approver: Approver) -> tuple[str, ...]:
        key = (approver.approver_type.value, approver.value)
        if key in self._overrides:
            return tuple(self._overrides[key])
        value = approver.value.strip()
        if not value:
            return ()
        if approver.approver_type == ApproverType.USER:
            return (value,)
        return (f"{approver.approver_type.value}:{value}",)
