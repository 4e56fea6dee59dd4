"""Services for the workflow kernel (write side)."""

from workflow_kernel.services.action_dispatcher import (
    ActionDispatcher,
    ActionHandler,
    validate_action_config,
)
from workflow_kernel.services.approval_engine import ApprovalEngine, EventSink
from workflow_kernel.services.definition_service import DefinitionService, StepDraft
from workflow_kernel.services.history_recorder import HistoryRecorder
from workflow_kernel.services.instance_locks import InstanceLockRegistry
from workflow_kernel.services.timer_service import (
    ManualTimerService,
    ThreadingTimerService,
    TimerService,
)
from workflow_kernel.services.trigger_engine import TriggerEngine
from workflow_kernel.services.trigger_service import TriggerService

__all__ = [
    "ActionDispatcher",
    "ActionHandler",
    "ApprovalEngine",
    "DefinitionService",
    "EventSink",
    "HistoryRecorder",
    "InstanceLockRegistry",
    "ManualTimerService",
    "StepDraft",
    "ThreadingTimerService",
    "TimerService",
    "TriggerEngine",
    "TriggerService",
    "validate_action_config",
]
