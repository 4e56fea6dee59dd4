"""ORM models for the workflow kernel."""

from workflow_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalInstanceModel,
    ApprovalRequestModel,
)
from workflow_kernel.models.sequence import SequenceCounterModel
from workflow_kernel.models.trigger import (
    SystemEventModel,
    TriggerExecutionLogModel,
    WorkflowTriggerModel,
)
from workflow_kernel.models.workflow import WorkflowDefinitionModel, WorkflowStepModel

__all__ = [
    "WorkflowDefinitionModel",
    "WorkflowStepModel",
    "ApprovalInstanceModel",
    "ApprovalRequestModel",
    "ApprovalHistoryModel",
    "WorkflowTriggerModel",
    "TriggerExecutionLogModel",
    "SystemEventModel",
    "SequenceCounterModel",
]
