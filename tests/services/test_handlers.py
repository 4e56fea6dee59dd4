"""
Tests for the concrete action handlers in workflow_services.handlers.

Collaborators are replaced by recording fakes; webhooks go through an
httpx.MockTransport so no network is touched.
"""

import json
from datetime import timedelta

import httpx
import pytest

from workflow_kernel.domain.triggers import ActionResult, ActionType
from workflow_kernel.exceptions import ActionFailedError, ActionSkipped
from workflow_kernel.services.action_dispatcher import ActionDispatcher
from workflow_services.handlers import (
    CreateTaskHandler,
    NotifyHandler,
    SendEmailHandler,
    UpdateStatusHandler,
    WebhookHandler,
    default_handlers,
)


class Recorder:
    """Stands in for every collaborator protocol."""

    def __init__(self):
        self.calls = []

    def send(self, to, template, subject, context):
        self.calls.append(("send", to, template, subject))

    def create_task(self, project_id, title, description, assignee, due_date):
        self.calls.append(("task", project_id, title, description, assignee, due_date))

    def update_status(self, entity, entity_id, status, field):
        self.calls.append(("status", entity, entity_id, status, field))

    def notify(self, channel, message, recipients, context):
        self.calls.append(("notify", channel, message, recipients))


@pytest.fixture
def recorder():
    return Recorder()


class TestSendEmail:

    def test_client_recipient(self, recorder):
        handler = SendEmailHandler(recorder)
        handler.execute(
            {"template": "invoice_paid", "to": "client", "subject": "Paid: {{invoice.number}}"},
            {"clientEmail": "client@example.com", "invoice": {"number": "INV-7"}},
        )
        assert recorder.calls == [("send", "client@example.com", "invoice_paid", "Paid: INV-7")]

    def test_admin_recipient(self, recorder):
        SendEmailHandler(recorder, admin_email="ops@example.com").execute(
            {"template": "alert", "to": "admin"}, {},
        )
        assert recorder.calls == [("send", "ops@example.com", "alert", "alert")]

    def test_literal_recipient(self, recorder):
        SendEmailHandler(recorder).execute({"template": "t", "to": "pm@example.com"}, {})
        assert recorder.calls[0][1] == "pm@example.com"

    @pytest.mark.parametrize("to, admin", [("client", "ops@example.com"), ("admin", None)])
    def test_missing_recipient_skips(self, recorder, to, admin):
        with pytest.raises(ActionSkipped):
            SendEmailHandler(recorder, admin).execute({"template": "t", "to": to}, {})
        assert recorder.calls == []


class TestCreateTask:

    def test_due_date_from_clock(self, recorder, clock):
        CreateTaskHandler(recorder, clock).execute(
            {"title": "Chase {{invoiceId}}", "description": "Project {{projectId}}",
             "assignee": "pm", "due_days": 3},
            {"projectId": 42, "invoiceId": 9},
        )
        assert recorder.calls == [
            ("task", 42, "Chase 9", "Project 42", "pm", clock.now() + timedelta(days=3)),
        ]

    def test_no_due_days(self, recorder, clock):
        CreateTaskHandler(recorder, clock).execute({"title": "Review"}, {"projectId": 1})
        assert recorder.calls[0][3:] == (None, None, None)

    def test_no_project_skips(self, recorder, clock):
        with pytest.raises(ActionSkipped):
            CreateTaskHandler(recorder, clock).execute({"title": "Review"}, {"clientId": 1})


class TestUpdateStatus:

    @pytest.mark.parametrize(
        "entity, key", [("project", "projectId"), ("invoice", "invoiceId"), ("client", "clientId")],
    )
    def test_id_from_context(self, recorder, entity, key):
        UpdateStatusHandler(recorder).execute({"entity": entity, "status": "done"}, {key: 5})
        assert recorder.calls == [("status", entity, 5, "done", "status")]

    def test_custom_field(self, recorder):
        UpdateStatusHandler(recorder).execute(
            {"entity": "project", "status": "approved", "field": "approval_status"},
            {"projectId": 3},
        )
        assert recorder.calls[0][-1] == "approval_status"

    def test_missing_id_skips(self, recorder):
        with pytest.raises(ActionSkipped):
            UpdateStatusHandler(recorder).execute({"entity": "invoice", "status": "paid"}, {"projectId": 1})


class TestWebhook:

    def test_posts_context_as_json(self):
        seen = []

        def _respond(request):
            seen.append(request)
            return httpx.Response(204)

        handler = WebhookHandler(transport=httpx.MockTransport(_respond))
        handler.execute(
            {"url": "https://hooks.example.com/paid", "headers": {"X-Token": "abc"}},
            {"entityId": 1},
        )

        request = seen[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"entityId": 1}
        assert request.headers["X-Token"] == "abc"
        assert request.headers["Content-Type"] == "application/json"

    def test_get_sends_no_body(self):
        seen = []

        def _respond(request):
            seen.append(request)
            return httpx.Response(200)

        WebhookHandler(transport=httpx.MockTransport(_respond)).execute(
            {"url": "https://hooks.example.com/ping", "method": "get"}, {"entityId": 1},
        )
        assert seen[0].method == "GET"
        assert seen[0].content == b""

    def test_error_status_fails(self):
        handler = WebhookHandler(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        with pytest.raises(ActionFailedError) as exc_info:
            handler.execute({"url": "https://hooks.example.com/x"}, {})
        assert "503" in str(exc_info.value)

    def test_connection_error_recorded_as_failed(self):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        handlers = default_handlers(webhook_transport=httpx.MockTransport(_refuse))
        dispatcher = ActionDispatcher(handlers, timeout_seconds=2.0, max_workers=1)
        try:
            outcome = dispatcher.dispatch(ActionType.WEBHOOK, {"url": "https://hooks.example.com/x"}, {})
        finally:
            dispatcher.shutdown()
        assert outcome.result == ActionResult.FAILED
        assert "connection refused" in outcome.error_message


class TestNotify:

    def test_config_recipients_win(self, recorder):
        NotifyHandler(recorder).execute(
            {"channel": "ops", "message": "{{entityType}} #{{entityId}}", "recipients": ["a"]},
            {"entityType": "invoice", "entityId": 4, "recipients": ["b"]},
        )
        assert recorder.calls == [("notify", "ops", "invoice #4", ["a"])]

    def test_context_recipients_fallback(self, recorder):
        NotifyHandler(recorder).execute({"channel": "ops", "message": "hi"}, {"recipients": ["b"]})
        assert recorder.calls[0][3] == ["b"]


class TestDefaultHandlers:

    def test_one_handler_per_action(self):
        assert set(default_handlers()) == set(ActionType)

    def test_log_only_collaborators(self, captured_logs):
        handlers = default_handlers()
        handlers[ActionType.NOTIFY].execute({"channel": "ops", "message": "hello"}, {})
        sent = [r for r in captured_logs() if r["message"] == "notification_sent"]
        assert sent[0]["channel"] == "ops"
        assert sent[0]["text"] == "hello"
