"""
TriggerEngine -- fan-out of domain events to workflow triggers.

Responsibility:
    Records every emitted event, finds the active triggers that listen to
    it, evaluates their conditions, dispatches the matching actions, and
    writes one execution log per trigger.  In-code listeners registered
    with ``on()`` are called after the triggers.

Architecture position:
    Kernel > Services -- imperative shell.  Owns its transactions: one for
    the event record plus trigger lookup, then one per execution log, so a
    slow action never holds a write transaction open.

Invariants enforced:
    - Triggers run in ascending priority, then id, one after another.
    - A trigger whose conditions do not match is logged ``skipped`` and its
      action is never dispatched.
    - Dispatcher errors and timeouts become ``failed`` logs; they never
      propagate out of emit() and never stop later triggers.
    - Listener failures are logged and swallowed.
    - Stored event data is JSON-safe (UUIDs, datetimes and other objects
      are stringified).

Failure modes:
    - ValidationError for a blank event type.
    - UnknownEventTypeError from test_emit() for events outside the catalog.
    - A failed execution-log write is logged and the trigger's log is
      missing from the returned list; the remaining triggers still run.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from workflow_engines.conditions import evaluate_conditions
from workflow_kernel.db.engine import session_scope
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.triggers import (
    EVENT_TYPES,
    ActionResult,
    DispatchOutcome,
    TriggerExecutionLog,
    WorkflowTrigger,
    entity_type_of,
    event_matches,
    sample_context,
)
from workflow_kernel.exceptions import UnknownEventTypeError, ValidationError
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.trigger import SystemEventModel, TriggerExecutionLogModel
from workflow_kernel.services.action_dispatcher import ActionDispatcher
from workflow_kernel.services.sequence_service import SequenceService
from workflow_kernel.services.trigger_service import TriggerService

logger = get_logger("services.trigger_engine")

Listener = Callable[[str, dict[str, Any]], None]

CONDITIONS_NOT_MET = "conditions not met"


def json_safe(value: Any) -> dict[str, Any]:
    """Copy ``value`` into plain JSON types."""
    if value is None:
        return {}
    return json.loads(json.dumps(dict(value), default=str))


class TriggerEngine:
    """Evaluates and executes triggers for emitted events."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        dispatcher: ActionDispatcher,
        clock: Clock | None = None,
        *,
        max_workers: int = 4,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self._listeners: dict[str, list[Listener]] = {}
        self._listeners_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="trigger",
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, event_type: str, listener: Listener) -> None:
        """Call ``listener(event_type, context)`` after matching triggers run.

        ``event_type`` may be a wildcard pattern (``invoice.*``, ``*``).
        """
        with self._listeners_lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        with self._listeners_lock:
            registered = self._listeners.get(event_type, [])
            if listener in registered:
                registered.remove(listener)
            if not registered:
                self._listeners.pop(event_type, None)

    def _listeners_for(self, event_type: str) -> list[Listener]:
        with self._listeners_lock:
            return [
                listener
                for pattern, listeners in self._listeners.items()
                if event_matches(pattern, event_type)
                for listener in listeners
            ]

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(
        self,
        event_type: str,
        context: Mapping[str, Any] | None = None,
    ) -> list[TriggerExecutionLog]:
        """Record the event, run every matching trigger, then the listeners.

        Returns:
            One execution log per matching trigger, in execution order.
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("event_type is required", field="event_type")
        data = json_safe(context)

        with LogContext.bind(event_type=event_type):
            with session_scope(self.session_factory) as session:
                self._record_event(session, event_type, data)
                triggers = TriggerService(session, self.clock).matching_triggers(event_type)

            logs: list[TriggerExecutionLog] = []
            for trigger in triggers:
                log = self._run_trigger(trigger, event_type, data)
                if log is not None:
                    logs.append(log)

            self._call_listeners(event_type, data)
            logger.info(
                "event_emitted",
                extra={
                    "matched_triggers": len(triggers),
                    "results": [log.action_result.value for log in logs],
                },
            )
        return logs

    def publish(
        self,
        event_type: str,
        context: Mapping[str, Any] | None = None,
    ) -> Future[list[TriggerExecutionLog]]:
        """Fire-and-forget ``emit`` on the worker pool."""
        snapshot = dict(context or {})
        future = self._executor.submit(self.emit, event_type, snapshot)
        future.add_done_callback(lambda f: self._report_publish(event_type, f))
        return future

    @staticmethod
    def _report_publish(event_type: str, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "event_publish_failed",
                extra={"event_type": event_type, "error": str(exc)},
                exc_info=exc,
            )

    def test_emit(
        self,
        event_type: str,
        context: Mapping[str, Any] | None = None,
        triggered_by: str = "admin",
    ) -> list[TriggerExecutionLog]:
        """Emit a catalog event with a synthesised sample context.

        Caller overrides are merged over the sample, and the context is
        flagged ``isTest`` so handlers and listeners can tell.

        Raises:
            UnknownEventTypeError: event type is not in the catalog.
        """
        if event_type not in EVENT_TYPES:
            raise UnknownEventTypeError(str(event_type))
        data = sample_context(event_type)
        data.update(context or {})
        data["isTest"] = True
        data["triggeredBy"] = triggered_by
        logger.info("test_event_emitted", extra={"event_type": event_type, "actor": triggered_by})
        return self.emit(event_type, data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_event(self, session: Session, event_type: str, data: dict[str, Any]) -> None:
        entity_id = data.get("entityId")
        if isinstance(entity_id, bool) or not isinstance(entity_id, int):
            entity_id = None
        session.add(SystemEventModel(
            event_type=event_type,
            entity_type=entity_type_of(event_type),
            entity_id=entity_id,
            event_data=data,
            triggered_by=str(data.get("triggeredBy") or "system"),
            created_at=self.clock.now(),
        ))
        session.flush()

    def _run_trigger(
        self,
        trigger: WorkflowTrigger,
        event_type: str,
        data: dict[str, Any],
    ) -> TriggerExecutionLog | None:
        with LogContext.bind(trigger_id=trigger.trigger_id):
            started = time.perf_counter()
            if not evaluate_conditions(trigger.conditions, data):
                elapsed = round((time.perf_counter() - started) * 1000, 3)
                outcome = DispatchOutcome(ActionResult.SKIPPED, CONDITIONS_NOT_MET, elapsed)
            else:
                try:
                    outcome = self.dispatcher.dispatch(
                        trigger.action_type, trigger.action_config, data,
                    )
                except Exception as exc:
                    elapsed = round((time.perf_counter() - started) * 1000, 3)
                    outcome = DispatchOutcome(
                        ActionResult.FAILED, str(exc) or type(exc).__name__, elapsed,
                    )

            logger.info(
                "trigger_dispatched",
                extra={
                    "trigger_name": trigger.name,
                    "action_type": trigger.action_type.value,
                    "result": outcome.result.value,
                    "duration_ms": outcome.duration_ms,
                },
            )
            try:
                return self._write_log(trigger.trigger_id, event_type, data, outcome)
            except Exception:
                logger.exception("trigger_log_write_failed")
                return None

    def _write_log(
        self,
        trigger_id: UUID,
        event_type: str,
        data: dict[str, Any],
        outcome: DispatchOutcome,
    ) -> TriggerExecutionLog:
        with session_scope(self.session_factory) as session:
            row = TriggerExecutionLogModel(
                trigger_id=trigger_id,
                event_type=event_type,
                event_data=data,
                action_result=outcome.result.value,
                error_message=outcome.error_message,
                execution_time_ms=outcome.duration_ms,
                created_at=self.clock.now(),
                sequence=SequenceService(session).next_value(
                    SequenceService.TRIGGER_EXECUTION_LOG,
                ),
            )
            session.add(row)
            session.flush()
            return row.to_dto()

    def _call_listeners(self, event_type: str, data: dict[str, Any]) -> None:
        for listener in self._listeners_for(event_type):
            try:
                listener(event_type, dict(data))
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    extra={"listener": getattr(listener, "__name__", repr(listener))},
                )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the publish pool; ``wait`` drains queued events first."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
