"""
workflow_services.runtime -- Central wiring for a running engine.

Responsibility:
    Builds every kernel component exactly once from ``EngineSettings`` and
    wires them together: database engine and session factory, clock, timer
    service, action dispatcher with its handlers, trigger engine, approval
    engine.  Services that are session-scoped (definition and trigger
    administration, selectors) are handed out per session.

Architecture position:
    Services -- top of the dependency graph.  This module is the only
    place that reads ``workflow_config`` and passes plain values into
    kernel constructors.

Usage:
    runtime = build_runtime()
    runtime.start()
    with runtime.session() as session:
        definitions = runtime.definitions(session)
        ...
    runtime.approvals.decide(request_id, "approve", "alice@example.com")
    runtime.shutdown()
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from workflow_config import EngineSettings, get_settings
from workflow_kernel.db.engine import build_engine, build_session_factory, create_tables, session_scope
from workflow_kernel.db.immutability import register_immutability_listeners
from workflow_kernel.domain.approval import ApproverDirectory, StaticApproverDirectory
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.triggers import ActionType
from workflow_kernel.logging_config import get_logger
from workflow_kernel.selectors.approval_selector import ApprovalSelector
from workflow_kernel.selectors.trigger_log_selector import TriggerLogSelector
from workflow_kernel.services.action_dispatcher import ActionDispatcher, ActionHandler
from workflow_kernel.services.approval_engine import ApprovalEngine
from workflow_kernel.services.definition_service import DefinitionService
from workflow_kernel.services.instance_locks import InstanceLockRegistry
from workflow_kernel.services.timer_service import ThreadingTimerService, TimerService
from workflow_kernel.services.trigger_engine import TriggerEngine
from workflow_kernel.services.trigger_service import TriggerService
from workflow_services.handlers import default_handlers

logger = get_logger("services.runtime")


@dataclass
class WorkflowRuntime:
    """Every long-lived component of one engine process."""

    settings: EngineSettings
    engine: Engine
    session_factory: sessionmaker[Session]
    clock: Clock
    timers: TimerService
    dispatcher: ActionDispatcher
    triggers: TriggerEngine
    approvals: ApprovalEngine

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commits on success, rolls back on error."""
        with session_scope(self.session_factory) as session:
            yield session

    def definitions(self, session: Session) -> DefinitionService:
        return DefinitionService(session, self.clock)

    def trigger_admin(self, session: Session) -> TriggerService:
        return TriggerService(session, self.clock)

    def approval_queries(self, session: Session) -> ApprovalSelector:
        return ApprovalSelector(session, self.clock, self.settings.urgent_after_hours)

    def log_queries(self, session: Session) -> TriggerLogSelector:
        return TriggerLogSelector(session)

    def start(self) -> int:
        """Restore auto-approval timers; returns how many were scheduled."""
        restored = self.approvals.restore_timers()
        logger.info("workflow_runtime_started", extra={"timers_restored": restored})
        return restored

    def shutdown(self) -> None:
        self.timers.cancel_all()
        self.triggers.shutdown()
        self.dispatcher.shutdown()
        self.engine.dispose()
        logger.info("workflow_runtime_stopped")


def build_runtime(
    settings: EngineSettings | None = None,
    *,
    clock: Clock | None = None,
    timers: TimerService | None = None,
    handlers: Mapping[ActionType, ActionHandler] | None = None,
    directory: ApproverDirectory | None = None,
    create_schema: bool = True,
) -> WorkflowRuntime:
    """Build a runtime from settings (single entrypoint for production).

    Args:
        settings: Defaults to ``get_settings()``.
        clock: Defaults to SystemClock.
        timers: Defaults to ThreadingTimerService on ``clock``.
        handlers: Replaces the default handler set entirely when given.
        directory: Approver directory; defaults to StaticApproverDirectory.
        create_schema: Create missing tables on the configured database.
    """
    settings = (settings or get_settings()).validate()
    clock = clock or SystemClock()
    timers = timers or ThreadingTimerService(clock)

    engine = build_engine(settings.database_url, echo=settings.echo_sql)
    if create_schema:
        create_tables(engine)
    register_immutability_listeners()
    session_factory = build_session_factory(engine)

    if handlers is None:
        handlers = default_handlers(
            settings.admin_email, settings.webhook_timeout_seconds, clock,
        )
    dispatcher = ActionDispatcher(
        handlers,
        timeout_seconds=settings.action_timeout_seconds,
        max_workers=settings.trigger_workers * 2,
    )
    triggers = TriggerEngine(
        session_factory, dispatcher, clock, max_workers=settings.trigger_workers,
    )
    approvals = ApprovalEngine(
        session_factory,
        clock,
        timers,
        directory=directory or StaticApproverDirectory(),
        dispatcher=dispatcher,
        event_sink=triggers,
        locks=InstanceLockRegistry(),
        lock_strategy=settings.lock_strategy,
        notify_approvers=settings.notify_approvers,
        reminder_after_hours=settings.reminder_after_hours,
    )
    logger.info(
        "workflow_runtime_built",
        extra={
            "lock_strategy": settings.lock_strategy,
            "trigger_workers": settings.trigger_workers,
        },
    )
    return WorkflowRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        clock=clock,
        timers=timers,
        dispatcher=dispatcher,
        triggers=triggers,
        approvals=approvals,
    )
