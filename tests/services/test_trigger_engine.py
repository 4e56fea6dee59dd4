"""
Tests for TriggerEngine.

Covers:
- Condition gating (skipped logs, dispatcher never invoked)
- Priority ordering and the execution log sequence
- Failure isolation between triggers
- Wildcard triggers and inactive triggers
- In-code listeners
- test_emit sample contexts
- Asynchronous publish
- System event recording and JSON-safe payloads
- Approval lifecycle events reaching triggers
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from workflow_kernel.db.engine import session_scope
from workflow_kernel.domain.triggers import ActionResult, ActionType
from workflow_kernel.exceptions import UnknownEventTypeError, ValidationError
from workflow_kernel.models.trigger import TriggerExecutionLogModel
from workflow_kernel.selectors.approval_selector import ApprovalSelector
from workflow_kernel.selectors.trigger_log_selector import TriggerLogSelector
from workflow_kernel.services.approval_engine import ApprovalEngine
from workflow_kernel.services.trigger_engine import CONDITIONS_NOT_MET, json_safe
from workflow_kernel.services.trigger_service import TriggerService

WEBHOOK = {"url": "https://hooks.example.com/paid"}


def notify(message):
    return {"channel": "ops", "message": message}


def logs_page(session_factory, **filters):
    with session_scope(session_factory) as session:
        return TriggerLogSelector(session).query_logs(**filters)


def events_page(session_factory, **filters):
    with session_scope(session_factory) as session:
        return TriggerLogSelector(session).query_events(**filters)


class TestConditions:
    """Conditions decide whether the action runs at all."""

    def test_unmatched_conditions_log_skipped(self, trigger_engine, make_trigger, handlers):
        trigger = make_trigger("project.status_changed", conditions={"status": "active"})

        logs = trigger_engine.emit("project.status_changed", {"status": "inactive", "entityId": 42})

        assert len(logs) == 1
        assert logs[0].trigger_id == trigger.trigger_id
        assert logs[0].action_result == ActionResult.SKIPPED
        assert logs[0].error_message == CONDITIONS_NOT_MET
        assert handlers[ActionType.NOTIFY].calls == []

    def test_matched_conditions_dispatch(self, trigger_engine, make_trigger, handlers):
        make_trigger("project.status_changed", conditions={"status": "active"})

        logs = trigger_engine.emit("project.status_changed", {"status": "active", "entityId": 42})

        assert logs[0].action_result == ActionResult.SUCCESS
        config, context = handlers[ActionType.NOTIFY].calls[0]
        assert context == {"status": "active", "entityId": 42}
        assert config["channel"] == "ops"

    def test_operator_conditions(self, trigger_engine, make_trigger):
        make_trigger("invoice.paid", conditions={"invoice.amount": {"$gte": 1000}})

        small = trigger_engine.emit("invoice.paid", {"invoice": {"amount": 10}})
        large = trigger_engine.emit("invoice.paid", {"invoice": {"amount": 5000}})

        assert small[0].action_result == ActionResult.SKIPPED
        assert large[0].action_result == ActionResult.SUCCESS


class TestOrderingAndIsolation:
    """Priority order and independent outcomes."""

    def test_priority_order(self, trigger_engine, make_trigger, handlers, session_factory):
        make_trigger(action_config=notify("third"), priority=30, name="c")
        make_trigger(action_config=notify("first"), priority=-5, name="a")
        make_trigger(action_config=notify("second"), priority=10, name="b")

        logs = trigger_engine.emit("invoice.paid", {"entityId": 1})

        messages = [config["message"] for config, _ in handlers[ActionType.NOTIFY].calls]
        assert messages == ["first", "second", "third"]
        assert len(logs) == 3

        newest_first = logs_page(session_factory).items
        assert [log.log_id for log in newest_first] == [log.log_id for log in reversed(logs)]

    @pytest.mark.slow_locks
    def test_parallel_publishes_get_distinct_sequences(
        self, trigger_engine, make_trigger, session_factory,
    ):
        make_trigger(name="first")
        make_trigger(name="second", priority=5)

        futures = [trigger_engine.publish("invoice.paid", {"entityId": n}) for n in range(8)]
        trigger_engine.shutdown(wait=True)

        assert all(len(f.result()) == 2 for f in futures)
        with session_scope(session_factory) as session:
            sequences = session.execute(
                select(TriggerExecutionLogModel.sequence)
            ).scalars().all()
        assert sorted(sequences) == list(range(1, 17))

    def test_failure_does_not_stop_later_triggers(self, trigger_engine, make_trigger, handlers):
        handlers[ActionType.WEBHOOK].behaviour = ConnectionError("refused")
        make_trigger(action_type=ActionType.WEBHOOK, action_config=WEBHOOK, priority=1)
        make_trigger(priority=2)

        logs = trigger_engine.emit("invoice.paid", {"entityId": 1})

        assert [log.action_result for log in logs] == [ActionResult.FAILED, ActionResult.SUCCESS]
        assert logs[0].error_message == "refused"

    def test_skipped_by_handler(self, trigger_engine, make_trigger, skipping):
        skipping(ActionType.NOTIFY, "no recipients")
        make_trigger()
        logs = trigger_engine.emit("invoice.paid", {})
        assert logs[0].action_result == ActionResult.SKIPPED
        assert logs[0].error_message == "no recipients"

    def test_inactive_triggers_ignored(self, trigger_engine, make_trigger, handlers):
        make_trigger(is_active=False)
        assert trigger_engine.emit("invoice.paid", {}) == []
        assert handlers[ActionType.NOTIFY].calls == []

    def test_no_trigger_still_records_event(self, trigger_engine, session_factory):
        assert trigger_engine.emit("client.created", {"entityId": 7}) == []
        assert events_page(session_factory, event_type="client.created").total == 1

    def test_wildcards(self, trigger_engine, make_trigger):
        namespace = make_trigger("invoice.*", name="any invoice")
        everything = make_trigger("*", name="everything")
        make_trigger("contract.signed", name="contracts")

        logs = trigger_engine.emit("invoice.overdue", {})

        assert {log.trigger_id for log in logs} == {namespace.trigger_id, everything.trigger_id}

    def test_blank_event_type(self, trigger_engine):
        with pytest.raises(ValidationError):
            trigger_engine.emit("  ", {})

    def test_emit_logs_summary(self, trigger_engine, make_trigger, captured_logs):
        make_trigger()
        trigger_engine.emit("invoice.paid", {})
        emitted = [r for r in captured_logs() if r["message"] == "event_emitted"]
        assert emitted[0]["event_type"] == "invoice.paid"
        assert emitted[0]["results"] == ["success"]


class TestListeners:
    """on() / off() callbacks."""

    def test_listener_called_after_triggers(self, trigger_engine, make_trigger, handlers):
        order = []
        handlers[ActionType.NOTIFY].behaviour = lambda: order.append("trigger")
        make_trigger()
        trigger_engine.on("invoice.*", lambda event_type, context: order.append(event_type))

        trigger_engine.emit("invoice.paid", {"entityId": 1})

        assert order == ["trigger", "invoice.paid"]

    def test_failing_listener_is_contained(self, trigger_engine, captured_logs):
        received = []

        def _broken(event_type, context):
            raise RuntimeError("listener bug")

        trigger_engine.on("invoice.paid", _broken)
        trigger_engine.on("invoice.paid", lambda e, c: received.append(c))

        trigger_engine.emit("invoice.paid", {"entityId": 3})

        assert received == [{"entityId": 3}]
        assert any(r["message"] == "event_listener_failed" for r in captured_logs())

    def test_off(self, trigger_engine):
        received = []

        def _listener(event_type, context):
            received.append(event_type)

        trigger_engine.on("invoice.paid", _listener)
        trigger_engine.off("invoice.paid", _listener)
        trigger_engine.emit("invoice.paid", {})

        assert received == []


class TestTestEmit:
    """Manual trigger testing with sample contexts."""

    def test_sample_context_flagged(self, trigger_engine, make_trigger, handlers):
        make_trigger("invoice.paid")

        logs = trigger_engine.test_emit("invoice.paid", {"clientId": 99}, triggered_by="ops@example.com")

        assert logs[0].action_result == ActionResult.SUCCESS
        _, context = handlers[ActionType.NOTIFY].calls[0]
        assert context["isTest"] is True
        assert context["triggeredBy"] == "ops@example.com"
        assert context["clientId"] == 99
        assert context["invoice"]["number"] == "INV-1001"

    def test_unknown_event(self, trigger_engine):
        with pytest.raises(UnknownEventTypeError):
            trigger_engine.test_emit("invoice.*")

    def test_event_without_sample_namespace(self, trigger_engine, make_trigger, handlers):
        make_trigger("task.completed")
        trigger_engine.test_emit("task.completed")
        _, context = handlers[ActionType.NOTIFY].calls[0]
        assert context["entityId"] == 1


class TestRecordingAndPublish:
    """System events, JSON safety and async publication."""

    def test_system_event_recorded(self, trigger_engine, session_factory, clock):
        trigger_engine.emit("invoice.paid", {"entityId": 1001, "triggeredBy": "stripe"})

        page = events_page(session_factory, event_type="invoice.paid")
        assert page.total == 1
        event = page.items[0]
        assert event.entity_type == "invoice"
        assert event.entity_id == 1001
        assert event.triggered_by == "stripe"
        assert event.created_at == clock.now()

    def test_non_integer_entity_id_not_recorded(self, trigger_engine, session_factory):
        trigger_engine.emit("invoice.paid", {"entityId": "INV-9"})
        event = events_page(session_factory).items[0]
        assert event.entity_id is None
        assert event.event_data == {"entityId": "INV-9"}

    def test_payload_made_json_safe(self, trigger_engine, make_trigger, session_factory):
        make_trigger()
        marker = uuid4()
        when = datetime(2024, 5, 1, tzinfo=timezone.utc)

        trigger_engine.emit("invoice.paid", {"ref": marker, "at": when})

        log = logs_page(session_factory).items[0]
        assert log.event_data == {"ref": str(marker), "at": str(when)}

    def test_json_safe_none(self):
        assert json_safe(None) == {}

    def test_publish_returns_future(self, trigger_engine, make_trigger):
        make_trigger()
        future = trigger_engine.publish("invoice.paid", {"entityId": 1})
        logs = future.result(timeout=5)
        assert [log.action_result for log in logs] == [ActionResult.SUCCESS]

    def test_log_filters_and_paging(self, trigger_engine, make_trigger, session_factory):
        first = make_trigger(name="one")
        make_trigger(name="two", conditions={"status": "never"})
        for _ in range(3):
            trigger_engine.emit("invoice.paid", {})

        by_trigger = logs_page(session_factory, trigger_id=first.trigger_id)
        assert by_trigger.total == 3
        skipped = logs_page(session_factory, result="skipped")
        assert skipped.total == 3
        paged = logs_page(session_factory, page=2, page_size=4)
        assert (paged.total, len(paged.items), paged.pages, paged.has_next) == (6, 2, 2, False)

    def test_logs_survive_trigger_deletion(self, trigger_engine, make_trigger, session_factory, clock):
        trigger = make_trigger()
        trigger_engine.emit("invoice.paid", {})
        with session_scope(session_factory) as session:
            TriggerService(session, clock).delete_trigger(trigger.trigger_id)

        assert logs_page(session_factory, trigger_id=trigger.trigger_id).total == 1


class TestApprovalEvents:
    """Approval lifecycle events fan out to triggers."""

    def test_completed_approval_fires_trigger(
        self, session_factory, clock, trigger_engine, make_trigger, make_definition, step, handlers,
    ):
        make_trigger(
            "approval.completed",
            action_type=ActionType.UPDATE_STATUS,
            action_config={"entity": "project", "status": "approved"},
            conditions={"status": "approved"},
        )
        engine = ApprovalEngine(session_factory, clock, event_sink=trigger_engine)
        definition = make_definition([step(1, "ana@example.com")], entity_type="project")

        instance = engine.start_instance("project", 42, definition.definition_id, "alice")
        with session_scope(session_factory) as session:
            request = ApprovalSelector(session).get_instance_detail(instance.instance_id).pending_requests[0]
        engine.decide(request.request_id, "approve", "ana@example.com")
        trigger_engine.shutdown(wait=True)

        calls = handlers[ActionType.UPDATE_STATUS].calls
        assert len(calls) == 1
        _, context = calls[0]
        assert context["entityId"] == 42
        assert context["entityType"] == "project"
        recorded = {e.event_type for e in events_page(session_factory).items}
        assert recorded == {"approval.initiated", "approval.approved", "approval.completed"}
