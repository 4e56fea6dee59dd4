"""
Domain layer - pure value objects for approvals and triggers.

Everything here is a frozen dataclass, an Enum or a pure function.  No
imports from db/, models/, services/ or selectors/.
"""

from workflow_kernel.domain.approval import (
    ACTIVE_INSTANCE_STATUSES,
    AUTO_APPROVE_COMMENT,
    INSTANCE_TRANSITIONS,
    SYSTEM_ACTOR,
    TERMINAL_INSTANCE_STATUSES,
    ApprovalHistoryEntry,
    ApprovalInstance,
    ApprovalRequest,
    Approver,
    ApproverDirectory,
    ApproverType,
    BulkDecisionResult,
    BulkFailure,
    Decision,
    EntityType,
    HistoryAction,
    InstanceDetail,
    InstanceStatus,
    RequestStatus,
    StaticApproverDirectory,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowType,
)
from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from workflow_kernel.domain.triggers import (
    ACTION_DESCRIPTIONS,
    EVENT_TYPES,
    WILDCARD,
    ActionResult,
    ActionType,
    DispatchOutcome,
    Page,
    SystemEvent,
    TriggerExecutionLog,
    WorkflowTrigger,
    entity_type_of,
    event_matches,
    is_known_event_pattern,
    sample_context,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "DeterministicClock",
    # Approval
    "EntityType",
    "WorkflowType",
    "ApproverType",
    "InstanceStatus",
    "RequestStatus",
    "Decision",
    "HistoryAction",
    "INSTANCE_TRANSITIONS",
    "TERMINAL_INSTANCE_STATUSES",
    "ACTIVE_INSTANCE_STATUSES",
    "SYSTEM_ACTOR",
    "AUTO_APPROVE_COMMENT",
    "WorkflowStep",
    "WorkflowDefinition",
    "ApprovalRequest",
    "ApprovalInstance",
    "ApprovalHistoryEntry",
    "InstanceDetail",
    "BulkFailure",
    "BulkDecisionResult",
    "Approver",
    "ApproverDirectory",
    "StaticApproverDirectory",
    # Triggers
    "ActionType",
    "ActionResult",
    "ACTION_DESCRIPTIONS",
    "EVENT_TYPES",
    "WILDCARD",
    "entity_type_of",
    "event_matches",
    "is_known_event_pattern",
    "sample_context",
    "WorkflowTrigger",
    "TriggerExecutionLog",
    "SystemEvent",
    "DispatchOutcome",
    "Page",
]
