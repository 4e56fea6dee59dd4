"""
ORM-level immutability of approval and trigger records.

Terminal instances and resolved requests are frozen; history rows,
execution logs and system events are append-only.
"""

import pytest
from sqlalchemy import select

from workflow_kernel.db.engine import session_scope
from workflow_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from workflow_kernel.exceptions import ImmutabilityViolationError
from workflow_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalInstanceModel,
    ApprovalRequestModel,
)
from workflow_kernel.models.trigger import SystemEventModel, TriggerExecutionLogModel


@pytest.fixture
def started(approval_engine, make_definition, step):
    definition = make_definition([step(1, "ana@example.com"), step(2, "ben@example.com")])
    return approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")


def first_row(session, model, **filters):
    stmt = select(model).filter_by(**filters)
    return session.execute(stmt).scalars().first()


class TestApprovalRecords:

    def test_history_update_blocked(self, session_factory, started):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                entry = first_row(session, ApprovalHistoryModel, instance_id=started.instance_id)
                entry.comment = "rewritten"
                session.flush()

    def test_history_delete_blocked(self, session_factory, started):
        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.delete(first_row(session, ApprovalHistoryModel, instance_id=started.instance_id))
                session.flush()

    def test_terminal_instance_frozen(self, session_factory, approval_engine, started):
        approval_engine.cancel(started.instance_id, "alice")

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session_scope(session_factory) as session:
                instance = session.get(ApprovalInstanceModel, started.instance_id)
                instance.notes = "edited later"
                session.flush()
        assert "cancelled" in str(exc_info.value)

    def test_running_instance_editable(self, session_factory, started):
        with session_scope(session_factory) as session:
            session.get(ApprovalInstanceModel, started.instance_id).notes = "context added"

        with session_scope(session_factory) as session:
            assert session.get(ApprovalInstanceModel, started.instance_id).notes == "context added"

    def test_resolved_request_frozen(self, session_factory, approval_engine, started):
        with session_scope(session_factory) as session:
            request_id = first_row(session, ApprovalRequestModel, instance_id=started.instance_id).id
        approval_engine.decide(request_id, "approve", "ana@example.com")

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.get(ApprovalRequestModel, request_id).comment = "changed my mind"
                session.flush()

    def test_listeners_can_be_removed_for_tests(self, session_factory, approval_engine, started):
        approval_engine.cancel(started.instance_id, "alice")
        unregister_immutability_listeners()
        try:
            with session_scope(session_factory) as session:
                session.get(ApprovalInstanceModel, started.instance_id).notes = "forced"
        finally:
            register_immutability_listeners()


class TestTriggerRecords:

    def test_execution_log_update_blocked(self, session_factory, trigger_engine, make_trigger):
        make_trigger()
        trigger_engine.emit("invoice.paid", {"entityId": 1})

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                first_row(session, TriggerExecutionLogModel).error_message = "hidden"
                session.flush()

    def test_system_event_delete_blocked(self, session_factory, trigger_engine):
        trigger_engine.emit("client.created", {"entityId": 7})

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.delete(first_row(session, SystemEventModel))
                session.flush()
