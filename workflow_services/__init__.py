"""
workflow_services -- Package init and public API.

Responsibility:
    Concrete side-effect handlers for trigger actions and the runtime that
    wires settings, database, timers, dispatcher and engines together.

Architecture position:
    Services -- outermost layer.

    Dependency direction:
        workflow_services/ -> workflow_kernel/, workflow_engines/,
                              workflow_config/   (allowed)
        workflow_kernel/   -> workflow_services/ (FORBIDDEN)
        workflow_engines/  -> workflow_services/ (FORBIDDEN)
"""

from workflow_services.handlers import (
    CreateTaskHandler,
    EmailSender,
    Notifier,
    NotifyHandler,
    SendEmailHandler,
    StatusUpdater,
    TaskCreator,
    UpdateStatusHandler,
    WebhookHandler,
    default_handlers,
)
from workflow_services.runtime import WorkflowRuntime, build_runtime

__all__ = [
    "CreateTaskHandler",
    "EmailSender",
    "Notifier",
    "NotifyHandler",
    "SendEmailHandler",
    "StatusUpdater",
    "TaskCreator",
    "UpdateStatusHandler",
    "WebhookHandler",
    "WorkflowRuntime",
    "build_runtime",
    "default_handlers",
]
