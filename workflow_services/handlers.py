"""
workflow_services.handlers -- Concrete trigger action handlers.

Responsibility:
    One ``ActionHandler`` per action type.  Each handler turns an action
    config plus event context into a call on a collaborator:

        send_email     -> EmailSender
        create_task    -> TaskCreator
        update_status  -> StatusUpdater
        webhook        -> one httpx request
        notify         -> Notifier

    The collaborators are protocols; log-only defaults ship so a single
    node runs without mail or task infrastructure.

Architecture position:
    Services -- outer layer.  Imports kernel types; the kernel never
    imports this module (handlers are injected into ActionDispatcher).

Invariants enforced:
    - A handler that has nothing to do raises ActionSkipped (no recipient,
      no project for a task, no id for the status target).
    - Webhook: exactly one request, bounded by ``timeout_seconds``; any
      non-2xx response is a failure.  No retries.

Failure modes:
    - ActionFailedError on a non-2xx webhook response.
    - httpx.HTTPError (timeouts, connection errors) propagates to the
      dispatcher, which records it as ``failed``.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx

from workflow_engines.conditions import get_value, interpolate
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.triggers import ActionType
from workflow_kernel.exceptions import ActionFailedError, ActionSkipped
from workflow_kernel.logging_config import get_logger
from workflow_kernel.services.action_dispatcher import ActionHandler

logger = get_logger("services.handlers")

# update_status target entity -> context key holding its id
STATUS_ID_KEYS: dict[str, str] = {
    "project": "projectId",
    "invoice": "invoiceId",
    "client": "clientId",
}


# =========================================================================
# Collaborator protocols and log-only defaults
# =========================================================================


class EmailSender(Protocol):
    def send(self, to: str, template: str, subject: str, context: Mapping[str, Any]) -> None:
        ...


class TaskCreator(Protocol):
    def create_task(
        self,
        project_id: int,
        title: str,
        description: str | None,
        assignee: str | None,
        due_date: datetime | None,
    ) -> None:
        ...


class StatusUpdater(Protocol):
    def update_status(self, entity: str, entity_id: int, status: str, field: str) -> None:
        ...


class Notifier(Protocol):
    def notify(
        self,
        channel: str,
        message: str,
        recipients: list[str],
        context: Mapping[str, Any],
    ) -> None:
        ...


class LoggingEmailSender:
    """Writes the email it would send to the log."""

    def send(self, to, template, subject, context):
        logger.info("email_sent", extra={"to": to, "template": template, "subject": subject})


class LoggingTaskCreator:
    def create_task(self, project_id, title, description, assignee, due_date):
        logger.info(
            "task_created",
            extra={
                "project_id": project_id,
                "title": title,
                "assignee": assignee,
                "due_date": due_date,
            },
        )


class LoggingStatusUpdater:
    def update_status(self, entity, entity_id, status, field):
        logger.info(
            "entity_status_updated",
            extra={"entity": entity, "entity_id": entity_id, "status": status, "field": field},
        )


class LoggingNotifier:
    def notify(self, channel, message, recipients, context):
        logger.info(
            "notification_sent",
            extra={"channel": channel, "text": message, "recipients": recipients},
        )


# =========================================================================
# Handlers
# =========================================================================


class SendEmailHandler:
    """``to`` is ``client`` (context clientEmail), ``admin``, or an address."""

    def __init__(self, sender: EmailSender, admin_email: str | None = None):
        self.sender = sender
        self.admin_email = admin_email

    def _recipient(self, to: str, context: Mapping[str, Any]) -> str | None:
        if to == "client":
            return context.get("clientEmail")
        if to == "admin":
            return self.admin_email
        return to

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        recipient = self._recipient(config["to"], context)
        if not recipient:
            raise ActionSkipped(ActionType.SEND_EMAIL.value, f"no recipient for {config['to']!r}")
        template = config["template"]
        subject = interpolate(str(config.get("subject", template)), context)
        self.sender.send(recipient, template, subject, context)


class CreateTaskHandler:
    """Creates a task on the event's project; ``due_days`` counts from now."""

    def __init__(self, creator: TaskCreator, clock: Clock | None = None):
        self.creator = creator
        self.clock = clock or SystemClock()

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        project_id = context.get("projectId")
        if project_id is None:
            raise ActionSkipped(ActionType.CREATE_TASK.value, "event has no projectId")
        description = config.get("description")
        due_days = config.get("due_days")
        self.creator.create_task(
            project_id,
            interpolate(config["title"], context),
            interpolate(description, context) if description else None,
            config.get("assignee"),
            self.clock.now() + timedelta(days=due_days) if due_days is not None else None,
        )


class UpdateStatusHandler:
    def __init__(self, updater: StatusUpdater):
        self.updater = updater

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        entity = config["entity"]
        entity_id = get_value(context, STATUS_ID_KEYS[entity])
        if entity_id is None:
            raise ActionSkipped(
                ActionType.UPDATE_STATUS.value,
                f"event has no {STATUS_ID_KEYS[entity]}",
            )
        self.updater.update_status(
            entity, entity_id, config["status"], config.get("field", "status"),
        )


class WebhookHandler:
    """POSTs (or ``method``) the event context as JSON to ``url``."""

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        method = str(config.get("method", "POST")).upper()
        headers = {"Content-Type": "application/json", **dict(config.get("headers") or {})}
        body = None if method == "GET" else dict(context)

        with httpx.Client(transport=self.transport, timeout=self.timeout_seconds) as client:
            response = client.request(method, config["url"], json=body, headers=headers)

        logger.info(
            "webhook_called",
            extra={"url": config["url"], "method": method, "status_code": response.status_code},
        )
        if not response.is_success:
            raise ActionFailedError(
                ActionType.WEBHOOK.value,
                f"{method} {config['url']} returned HTTP {response.status_code}",
            )


class NotifyHandler:
    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        recipients = list(config.get("recipients") or context.get("recipients") or [])
        self.notifier.notify(
            config["channel"],
            interpolate(config["message"], context),
            recipients,
            context,
        )


def default_handlers(
    admin_email: str | None = None,
    webhook_timeout_seconds: float = 5.0,
    clock: Clock | None = None,
    *,
    email_sender: EmailSender | None = None,
    task_creator: TaskCreator | None = None,
    status_updater: StatusUpdater | None = None,
    notifier: Notifier | None = None,
    webhook_transport: httpx.BaseTransport | None = None,
) -> dict[ActionType, ActionHandler]:
    """One handler per action type, with log-only collaborators by default."""
    return {
        ActionType.SEND_EMAIL: SendEmailHandler(email_sender or LoggingEmailSender(), admin_email),
        ActionType.CREATE_TASK: CreateTaskHandler(task_creator or LoggingTaskCreator(), clock),
        ActionType.UPDATE_STATUS: UpdateStatusHandler(status_updater or LoggingStatusUpdater()),
        ActionType.WEBHOOK: WebhookHandler(webhook_timeout_seconds, webhook_transport),
        ActionType.NOTIFY: NotifyHandler(notifier or LoggingNotifier()),
    }
