"""
Pytest fixtures for the workflow kernel test suite.

Provides:
- A file-backed SQLite database per test (engine + session factory)
- Deterministic clock and manual timer service
- Recording action handlers and event sink
- Fully wired approval and trigger engines
- Captured structured logs

Environment Variables:
- None.  Multi-node (PostgreSQL) behaviour is covered by the same code
  paths with ``lock_strategy='row'`` and is not exercised here.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from io import StringIO

import pytest

from workflow_kernel.db.engine import build_engine, build_session_factory, create_tables, session_scope
from workflow_kernel.domain.approval import WorkflowType
from workflow_kernel.domain.clock import DeterministicClock
from workflow_kernel.domain.triggers import ActionType
from workflow_kernel.exceptions import ActionSkipped
from workflow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from workflow_kernel.services.action_dispatcher import ActionDispatcher
from workflow_kernel.services.approval_engine import ApprovalEngine
from workflow_kernel.services.definition_service import DefinitionService
from workflow_kernel.services.timer_service import ManualTimerService
from workflow_kernel.services.trigger_engine import TriggerEngine
from workflow_kernel.services.trigger_service import TriggerService

START_TIME = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture workflow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, approval_engine):
            approval_engine.start_instance(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_instance_started" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("workflow_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'workflow.db'}", busy_timeout=10)
    create_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return DeterministicClock(START_TIME)


@pytest.fixture
def timers(clock):
    service = ManualTimerService(clock)
    yield service
    service.cancel_all()


# =============================================================================
# Action handlers and event sink
# =============================================================================


class RecordingHandler:
    """Action handler that remembers every call.

    ``behaviour`` is None (succeed), an exception instance to raise, or a
    callable run before returning.
    """

    def __init__(self, action_type: ActionType, behaviour=None):
        self.action_type = action_type
        self.behaviour = behaviour
        self.calls: list[tuple[dict, dict]] = []
        self._lock = threading.Lock()

    def execute(self, config, context):
        with self._lock:
            self.calls.append((dict(config), dict(context)))
        if isinstance(self.behaviour, BaseException):
            raise self.behaviour
        if callable(self.behaviour):
            self.behaviour()


class RecordingSink:
    """Event sink collecting approval lifecycle events synchronously."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def publish(self, event_type, context):
        with self._lock:
            self.events.append((event_type, dict(context)))

    def types(self) -> list[str]:
        with self._lock:
            return [event_type for event_type, _ in self.events]


@pytest.fixture
def handlers():
    return {action: RecordingHandler(action) for action in ActionType}


@pytest.fixture
def dispatcher(handlers):
    service = ActionDispatcher(handlers, timeout_seconds=2.0, max_workers=4)
    yield service
    service.shutdown(wait=False)


@pytest.fixture
def event_sink():
    return RecordingSink()


@pytest.fixture
def approval_engine(session_factory, clock, timers, dispatcher, event_sink):
    return ApprovalEngine(
        session_factory,
        clock,
        timers,
        dispatcher=dispatcher,
        event_sink=event_sink,
    )


@pytest.fixture
def trigger_engine(session_factory, dispatcher, clock):
    service = TriggerEngine(session_factory, dispatcher, clock, max_workers=2)
    yield service
    service.shutdown()


# =============================================================================
# Data builders
# =============================================================================


def _step(order, approver, *, approver_type="user", optional=False, hours=None):
    return {
        "step_order": order,
        "approver_type": approver_type,
        "approver_value": approver,
        "is_optional": optional,
        "auto_approve_after_hours": hours,
    }


@pytest.fixture
def step():
    """Builder for step input mappings: step(1, "alice@example.com", hours=24)."""
    return _step


@pytest.fixture
def make_definition(session_factory, clock):
    """Create and commit a workflow definition; returns its DTO."""

    def _make(
        steps=(),
        *,
        name="Proposal Approval",
        entity_type="proposal",
        workflow_type=WorkflowType.SEQUENTIAL,
        is_default=False,
        is_active=True,
    ):
        with session_scope(session_factory) as session:
            return DefinitionService(session, clock).create_definition(
                name=name,
                entity_type=entity_type,
                workflow_type=workflow_type,
                is_default=is_default,
                is_active=is_active,
                steps=list(steps),
            )

    return _make


@pytest.fixture
def make_trigger(session_factory, clock):
    """Create and commit a trigger; returns its DTO."""

    def _make(
        event_type="invoice.paid",
        action_type=ActionType.NOTIFY,
        action_config=None,
        *,
        name=None,
        conditions=None,
        priority=0,
        is_active=True,
    ):
        config = action_config or {"channel": "ops", "message": "{{entityId}} happened"}
        with session_scope(session_factory) as session:
            return TriggerService(session, clock).create_trigger(
                name=name or f"{event_type} -> {ActionType(action_type).value}",
                event_type=event_type,
                action_type=action_type,
                action_config=config,
                conditions=conditions,
                is_active=is_active,
                priority=priority,
            )

    return _make


@pytest.fixture
def skipping(handlers):
    """Make one action type's handler raise ActionSkipped."""

    def _skip(action_type: ActionType, reason="nothing to do"):
        handlers[action_type].behaviour = ActionSkipped(action_type.value, reason)

    return _skip
