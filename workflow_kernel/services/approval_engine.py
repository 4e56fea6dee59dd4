"""
ApprovalEngine -- imperative shell around approval progression.

Responsibility:
    Starts approval instances, applies human and timer decisions, bulk
    decisions and cancellations, and keeps auto-approval timers in step
    with the requests that carry deadlines.  The step algorithm itself is
    the pure ``workflow_engines.progression`` module; this service loads
    state, asks the engine for a plan, applies it in one transaction and
    then performs the side effects (timers, notifications, events).

Architecture position:
    Kernel > Services -- imperative shell.  Owns its transactions (one per
    instance mutation) through ``session_scope(session_factory)``.

Invariants enforced:
    - One mutation of an instance at a time: every path (decide, timer,
      bulk item, cancel, reminder) enters ``InstanceLockRegistry.hold``
      before opening its transaction.  The ``row`` lock strategy also
      loads the instance FOR UPDATE.
    - Stale writes are detected by the instance ``version`` column and
      surface as ConcurrentModificationError.
    - At most one running instance per entity (service check plus the
      partial unique index).
    - Request status change, instance status change and history append
      commit atomically; timers change only after the commit.
    - Notifications and event publication run after the instance lock is
      released and never affect instance state.

Failure modes:
    - DefinitionNotFoundError / InstanceNotFoundError / RequestNotFoundError.
    - ValidationError for entity type mismatch or a definition without steps.
    - DuplicateActiveInstanceError when the entity already has a running
      instance.
    - RequestAlreadyResolvedError, InstanceTerminalError,
      NotAutoApprovableError, ConcurrentModificationError (all
      InvalidStateError).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from workflow_engines.progression import (
    ProgressionPlan,
    ResolvedStep,
    actionable_requests,
    plan_cancel,
    plan_decision,
    plan_start,
)
from workflow_kernel.db.engine import session_scope
from workflow_kernel.domain.approval import (
    ACTIVE_INSTANCE_STATUSES,
    SYSTEM_ACTOR,
    TERMINAL_INSTANCE_STATUSES,
    ApprovalInstance,
    ApprovalRequest,
    Approver,
    ApproverDirectory,
    ApproverType,
    BulkDecisionResult,
    BulkFailure,
    Decision,
    EntityType,
    InstanceStatus,
    RequestStatus,
    StaticApproverDirectory,
    WorkflowType,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.triggers import ActionType
from workflow_kernel.exceptions import (
    ConcurrentModificationError,
    DefinitionNotFoundError,
    DuplicateActiveInstanceError,
    InstanceNotFoundError,
    InstanceTerminalError,
    InvalidStateError,
    NotAutoApprovableError,
    RequestAlreadyResolvedError,
    RequestNotFoundError,
    ValidationError,
    WorkflowKernelError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.approval import ApprovalInstanceModel, ApprovalRequestModel
from workflow_kernel.models.workflow import WorkflowDefinitionModel
from workflow_kernel.services.action_dispatcher import ActionDispatcher
from workflow_kernel.services.history_recorder import HistoryRecorder
from workflow_kernel.services.instance_locks import InstanceLockRegistry
from workflow_kernel.services.timer_service import TimerService

logger = get_logger("services.approval")

NOTIFY_CHANNEL = "approvals"
REQUEST_MESSAGE = "Approval requested: {{workflowName}} for {{entityType}} #{{entityId}}"
REMINDER_MESSAGE = "Reminder: {{workflowName}} for {{entityType}} #{{entityId}} awaits your decision"


class EventSink(Protocol):
    """Receives approval lifecycle events (TriggerEngine implements this)."""

    def publish(self, event_type: str, context: Mapping[str, Any]) -> Any:
        ...


@dataclass
class _Outcome:
    """What a committed mutation leaves for the post-lock side effects."""

    instance: ApprovalInstance
    new_requests: list[ApprovalRequest] = field(default_factory=list)
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


def _parse_entity_type(entity_type: EntityType | str) -> EntityType:
    try:
        return EntityType(entity_type)
    except ValueError:
        raise ValidationError(
            f"Unknown entity type: {entity_type}", field="entity_type",
        ) from None


def _parse_decision(decision: Decision | str) -> Decision:
    try:
        return Decision(decision)
    except ValueError:
        raise ValidationError(
            f"Decision must be 'approve' or 'reject', got {decision!r}",
            field="decision",
        ) from None


class ApprovalEngine:
    """Runs approval instances against workflow definitions."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        timers: TimerService | None = None,
        *,
        directory: ApproverDirectory | None = None,
        dispatcher: ActionDispatcher | None = None,
        event_sink: EventSink | None = None,
        locks: InstanceLockRegistry | None = None,
        lock_strategy: str = "in_process",
        notify_approvers: bool = True,
        reminder_after_hours: int = 48,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.timers = timers
        self.directory = directory or StaticApproverDirectory()
        self.dispatcher = dispatcher
        self.event_sink = event_sink
        self.locks = locks or InstanceLockRegistry()
        self.lock_strategy = lock_strategy
        self.notify_approvers = notify_approvers
        self.reminder_after_hours = reminder_after_hours

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_instance(
        self,
        entity_type: EntityType | str,
        entity_id: int,
        workflow_definition_id: UUID,
        initiated_by: str,
        notes: str | None = None,
    ) -> ApprovalInstance:
        """Start ``workflow_definition_id`` for one entity.

        Raises:
            DefinitionNotFoundError: definition missing or inactive.
            ValidationError: entity type mismatch, or no steps.
            DuplicateActiveInstanceError: entity already has a running instance.
        """
        entity = _parse_entity_type(entity_type)
        if isinstance(entity_id, bool) or not isinstance(entity_id, int):
            raise ValidationError("entity_id must be an integer", field="entity_id")
        if not initiated_by:
            raise ValidationError("initiated_by is required", field="initiated_by")

        with LogContext.bind(actor=initiated_by):
            with session_scope(self.session_factory) as session:
                definition = session.get(WorkflowDefinitionModel, workflow_definition_id)
                if definition is None:
                    raise DefinitionNotFoundError(str(workflow_definition_id))
                if not definition.is_active:
                    raise DefinitionNotFoundError(
                        str(workflow_definition_id), "is not active",
                    )
                self._check_startable(session, definition, entity, entity_id)
                outcome = self._start(session, definition, entity, entity_id, initiated_by, notes)

            self._sync_timers(outcome.new_requests, ())
            logger.info(
                "approval_instance_started",
                extra={
                    "instance_id": str(outcome.instance.instance_id),
                    "definition_id": str(workflow_definition_id),
                    "entity_type": entity.value,
                    "entity_id": entity_id,
                    "status": outcome.instance.status.value,
                    "requests_opened": len(outcome.new_requests),
                },
            )
        self._after_commit(outcome)
        return outcome.instance

    def start_default(
        self,
        entity_type: EntityType | str,
        entity_id: int,
        initiated_by: str,
        notes: str | None = None,
    ) -> ApprovalInstance:
        """Start the active default workflow of ``entity_type``.

        Raises:
            DefinitionNotFoundError: no active default for the entity type.
        """
        entity = _parse_entity_type(entity_type)
        with session_scope(self.session_factory) as session:
            definition_id = session.execute(
                select(WorkflowDefinitionModel.id).where(
                    WorkflowDefinitionModel.entity_type == entity.value,
                    WorkflowDefinitionModel.is_default.is_(True),
                    WorkflowDefinitionModel.is_active.is_(True),
                )
            ).scalar_one_or_none()
        if definition_id is None:
            raise DefinitionNotFoundError(
                f"default:{entity.value}", "no active default workflow",
            )
        return self.start_instance(entity, entity_id, definition_id, initiated_by, notes)

    def _check_startable(
        self,
        session: Session,
        definition: WorkflowDefinitionModel,
        entity: EntityType,
        entity_id: int,
    ) -> None:
        if definition.entity_type != entity.value:
            raise ValidationError(
                f"Workflow {definition.id} is for {definition.entity_type}, "
                f"not {entity.value}",
                field="entity_type",
            )
        if not definition.steps:
            raise ValidationError(
                f"Workflow {definition.id} has no steps", field="workflow_definition_id",
            )
        existing = session.execute(
            select(ApprovalInstanceModel.id).where(
                ApprovalInstanceModel.entity_type == entity.value,
                ApprovalInstanceModel.entity_id == entity_id,
                ApprovalInstanceModel.status.in_(
                    [s.value for s in ACTIVE_INSTANCE_STATUSES]
                ),
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateActiveInstanceError(entity.value, entity_id, str(existing))

    def _start(
        self,
        session: Session,
        definition: WorkflowDefinitionModel,
        entity: EntityType,
        entity_id: int,
        initiated_by: str,
        notes: str | None,
    ) -> _Outcome:
        instance = ApprovalInstanceModel(
            definition_id=definition.id,
            entity_type=entity.value,
            entity_id=entity_id,
            status=InstanceStatus.PENDING.value,
            current_step=1,
            initiated_by=initiated_by,
            initiated_at=self.clock.now(),
            notes=notes,
        )
        instance.definition = definition
        session.add(instance)
        try:
            session.flush()
        except IntegrityError:
            # Another writer won the partial unique index
            raise DuplicateActiveInstanceError(entity.value, entity_id) from None

        plan = plan_start(
            workflow_type=WorkflowType(definition.workflow_type),
            steps=self._resolve_steps(definition),
            initiated_by=initiated_by,
            notes=notes,
        )
        new_requests = self._apply(session, instance, plan)
        dto = instance.to_dto()
        outcome = _Outcome(dto, new_requests)
        outcome.events.append(("approval.initiated", self._event_context(dto, initiated_by)))
        if plan.is_terminal:
            outcome.events.append(("approval.completed", self._event_context(dto, initiated_by)))
        return outcome

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(
        self,
        request_id: UUID,
        decision: Decision | str,
        actor: str,
        comment: str | None = None,
    ) -> ApprovalInstance:
        """Apply one approver's decision to a pending request.

        Raises:
            RequestNotFoundError: unknown request.
            RequestAlreadyResolvedError: request no longer pending.
            InstanceTerminalError: instance already finished.
            ConcurrentModificationError: lost an optimistic-lock race.
        """
        verdict = _parse_decision(decision)
        if not actor:
            raise ValidationError("actor is required", field="actor")
        return self._decide_request(request_id, verdict, actor, comment, auto=False)

    def auto_approve(self, request_id: UUID) -> ApprovalInstance:
        """Approve a request on behalf of the system once its deadline passed.

        Raises:
            NotAutoApprovableError: the request has no deadline.
            RequestAlreadyResolvedError: someone decided first.
        """
        return self._decide_request(
            request_id, Decision.APPROVE, SYSTEM_ACTOR, None, auto=True,
        )

    def _decide_request(
        self,
        request_id: UUID,
        decision: Decision,
        actor: str,
        comment: str | None,
        *,
        auto: bool,
    ) -> ApprovalInstance:
        instance_id = self._instance_id_for_request(request_id)
        with self._critical(instance_id, actor=actor, request_id=request_id):
            with self._transaction(instance_id) as session:
                instance = self._load_instance(session, instance_id)
                request = session.get(ApprovalRequestModel, request_id)
                if request.status != RequestStatus.PENDING.value:
                    raise RequestAlreadyResolvedError(str(request_id), request.status)
                self._require_running(instance)
                if auto and request.auto_approve_at is None:
                    raise NotAutoApprovableError(str(request_id))
                outcome, resolved = self._decide_one(
                    session, instance, request_id, decision, actor, comment, auto,
                )
            self._sync_timers(outcome.new_requests, resolved)
            logger.info(
                "approval_request_decided",
                extra={
                    "decision": decision.value,
                    "auto": auto,
                    "instance_status": outcome.instance.status.value,
                    "current_step": outcome.instance.current_step,
                },
            )
        self._after_commit(outcome)
        return outcome.instance

    def _decide_one(
        self,
        session: Session,
        instance: ApprovalInstanceModel,
        request_id: UUID,
        decision: Decision,
        actor: str,
        comment: str | None,
        auto: bool,
    ) -> tuple[_Outcome, tuple[UUID, ...]]:
        workflow_type = WorkflowType(instance.definition.workflow_type)
        steps = (
            self._resolve_steps(instance.definition)
            if workflow_type == WorkflowType.SEQUENTIAL else ()
        )
        plan = plan_decision(
            workflow_type=workflow_type,
            steps=steps,
            requests=self._requests(session, instance.id),
            current_step=instance.current_step,
            request_id=request_id,
            decision=decision,
            actor=actor,
            comment=comment,
            auto=auto,
        )
        new_requests = self._apply(session, instance, plan)
        dto = instance.to_dto()
        outcome = _Outcome(dto, new_requests)

        context = self._event_context(dto, plan.history[0].actor)
        context.update({
            "requestId": str(request_id),
            "decision": decision.value,
            "comment": plan.history[0].comment,
            "auto": auto,
        })
        outcome.events.append((
            "approval.approved" if decision == Decision.APPROVE else "approval.rejected",
            context,
        ))
        if dto.status in (InstanceStatus.APPROVED, InstanceStatus.REJECTED):
            outcome.events.append(("approval.completed", self._event_context(dto, actor)))
        return outcome, plan.resolved_request_ids

    def bulk_decide(
        self,
        instance_ids: Iterable[UUID],
        decision: Decision | str,
        actor: str,
        comment: str | None = None,
    ) -> BulkDecisionResult:
        """Apply ``decision`` to the actionable requests of each instance.

        Every instance is handled on its own; a failure on one never rolls
        back another.  Never raises for per-instance failures.
        """
        verdict = _parse_decision(decision)
        if not actor:
            raise ValidationError("actor is required", field="actor")

        succeeded: list[UUID] = []
        failed: list[BulkFailure] = []
        for instance_id in dict.fromkeys(instance_ids):
            try:
                self._bulk_one(instance_id, verdict, actor, comment)
            except WorkflowKernelError as exc:
                failed.append(BulkFailure(instance_id, exc.code, str(exc)))
            except Exception as exc:
                logger.exception(
                    "bulk_decision_item_failed",
                    extra={"instance_id": str(instance_id)},
                )
                failed.append(BulkFailure(instance_id, "INTERNAL_ERROR", str(exc)))
            else:
                succeeded.append(instance_id)

        logger.info(
            "bulk_decision_completed",
            extra={
                "decision": verdict.value,
                "actor": actor,
                "succeeded": len(succeeded),
                "failed": len(failed),
            },
        )
        return BulkDecisionResult(verdict, tuple(succeeded), tuple(failed))

    def _bulk_one(
        self,
        instance_id: UUID,
        decision: Decision,
        actor: str,
        comment: str | None,
    ) -> None:
        outcomes: list[_Outcome] = []
        resolved: list[UUID] = []
        with self._critical(instance_id, actor=actor):
            with self._transaction(instance_id) as session:
                instance = self._load_instance(session, instance_id)
                self._require_running(instance)
                workflow_type = WorkflowType(instance.definition.workflow_type)
                targets = actionable_requests(
                    workflow_type, self._requests(session, instance_id),
                )
                if not targets:
                    raise InvalidStateError(
                        f"Approval instance {instance_id} has no actionable requests"
                    )
                for target in targets:
                    if instance.status in {s.value for s in TERMINAL_INSTANCE_STATUSES}:
                        break
                    current = session.get(ApprovalRequestModel, target.request_id)
                    if current.status != RequestStatus.PENDING.value:
                        # Resolved by an earlier decision of this batch
                        continue
                    outcome, changed = self._decide_one(
                        session, instance, target.request_id, decision, actor, comment, False,
                    )
                    outcomes.append(outcome)
                    resolved.extend(changed)
            new_requests = [
                r for outcome in outcomes for r in outcome.new_requests
                if r.request_id not in resolved
            ]
            self._sync_timers(new_requests, resolved)
        for outcome in outcomes:
            self._after_commit(outcome)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(
        self,
        instance_id: UUID,
        actor: str,
        reason: str | None = None,
    ) -> ApprovalInstance:
        """Cancel a running instance.

        Raises:
            InstanceNotFoundError: unknown instance.
            InstanceTerminalError: instance already finished.
        """
        if not actor:
            raise ValidationError("actor is required", field="actor")
        with self._critical(instance_id, actor=actor):
            with self._transaction(instance_id) as session:
                instance = self._load_instance(session, instance_id)
                self._require_running(instance)
                plan = plan_cancel(
                    requests=self._requests(session, instance_id),
                    current_step=instance.current_step,
                    actor=actor,
                    reason=reason,
                )
                self._apply(session, instance, plan)
                dto = instance.to_dto()
            self._sync_timers((), plan.resolved_request_ids)
            logger.info(
                "approval_instance_cancelled",
                extra={"skipped_requests": len(plan.resolved_request_ids)},
            )
        context = self._event_context(dto, actor)
        context["reason"] = reason
        self._after_commit(_Outcome(dto, events=[("approval.cancelled", context)]))
        return dto

    # ------------------------------------------------------------------
    # Timers and reminders
    # ------------------------------------------------------------------

    def handle_timer(self, request_id: UUID) -> None:
        """Timer callback: auto-approve, tolerating late fires."""
        try:
            self.auto_approve(request_id)
        except InvalidStateError as exc:
            logger.info(
                "auto_approval_superseded",
                extra={"request_id": str(request_id), "reason": str(exc)},
            )
        except Exception:
            logger.exception(
                "auto_approval_failed", extra={"request_id": str(request_id)},
            )

    def restore_timers(self) -> int:
        """Re-schedule timers for every pending request with a deadline."""
        if self.timers is None:
            return 0
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ApprovalRequestModel.id, ApprovalRequestModel.auto_approve_at)
                .join(ApprovalInstanceModel, ApprovalRequestModel.instance_id == ApprovalInstanceModel.id)
                .where(
                    ApprovalRequestModel.status == RequestStatus.PENDING.value,
                    ApprovalRequestModel.auto_approve_at.is_not(None),
                    ApprovalInstanceModel.status.in_(
                        [s.value for s in ACTIVE_INSTANCE_STATUSES]
                    ),
                )
            ).all()
        for request_id, due_at in rows:
            self.timers.schedule(request_id, due_at, self.handle_timer)
        logger.info("auto_approval_timers_restored", extra={"count": len(rows)})
        return len(rows)

    def sweep_due_auto_approvals(self) -> int:
        """Auto-approve every pending request whose deadline has passed.

        Returns:
            Number of requests auto-approved by this sweep.
        """
        now = self.clock.now()
        with session_scope(self.session_factory) as session:
            due = session.execute(
                select(ApprovalRequestModel.id)
                .where(
                    ApprovalRequestModel.status == RequestStatus.PENDING.value,
                    ApprovalRequestModel.auto_approve_at.is_not(None),
                    ApprovalRequestModel.auto_approve_at <= now,
                )
                .order_by(ApprovalRequestModel.auto_approve_at, ApprovalRequestModel.id)
            ).scalars().all()

        approved = 0
        for request_id in due:
            try:
                self.auto_approve(request_id)
            except InvalidStateError as exc:
                logger.info(
                    "auto_approval_superseded",
                    extra={"request_id": str(request_id), "reason": str(exc)},
                )
            else:
                approved += 1
        if due:
            logger.info(
                "auto_approval_sweep_completed",
                extra={"due": len(due), "approved": approved},
            )
        return approved

    def remind_pending(
        self,
        older_than_hours: float | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> int:
        """Re-notify approvers whose pending request has waited too long.

        A request is due when its last reminder (or its creation, if never
        reminded) is at least ``older_than_hours`` old.

        Returns:
            Number of reminders sent.
        """
        hours = self.reminder_after_hours if older_than_hours is None else older_than_hours
        cutoff = self.clock.now() - timedelta(hours=hours)
        last_touch = func.coalesce(
            ApprovalRequestModel.reminder_sent_at, ApprovalRequestModel.created_at,
        )
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ApprovalRequestModel.instance_id, ApprovalRequestModel.id)
                .join(ApprovalInstanceModel, ApprovalRequestModel.instance_id == ApprovalInstanceModel.id)
                .where(
                    ApprovalRequestModel.status == RequestStatus.PENDING.value,
                    ApprovalInstanceModel.status.in_(
                        [s.value for s in ACTIVE_INSTANCE_STATUSES]
                    ),
                    last_touch <= cutoff,
                )
                .order_by(ApprovalRequestModel.instance_id, ApprovalRequestModel.step_order)
            ).all()

        by_instance: dict[UUID, list[UUID]] = {}
        for instance_id, request_id in rows:
            by_instance.setdefault(instance_id, []).append(request_id)

        sent = 0
        for instance_id, request_ids in by_instance.items():
            with self._critical(instance_id, actor=actor):
                with self._transaction(instance_id) as session:
                    instance = self._load_instance(session, instance_id)
                    dto = instance.to_dto()
                    reminded: list[ApprovalRequest] = []
                    now = self.clock.now()
                    for request_id in request_ids:
                        request = session.get(ApprovalRequestModel, request_id)
                        if request.status != RequestStatus.PENDING.value:
                            continue
                        request.reminder_sent_at = now
                        request.reminder_count = (request.reminder_count or 0) + 1
                        reminded.append(request.to_dto())
                    session.flush()
            if reminded:
                self._notify(dto, reminded, REMINDER_MESSAGE, reminder=True)
                sent += len(reminded)
        logger.info("approval_reminders_sent", extra={"count": sent, "threshold_hours": hours})
        return sent

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _critical(
        self,
        instance_id: UUID,
        *,
        actor: str | None = None,
        request_id: UUID | None = None,
    ) -> Iterator[None]:
        with LogContext.bind(instance_id=instance_id, request_id=request_id, actor=actor):
            with self.locks.hold(instance_id):
                yield

    @contextmanager
    def _transaction(self, instance_id: UUID) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except StaleDataError:
            logger.warning("approval_instance_stale_write")
            raise ConcurrentModificationError(str(instance_id)) from None

    def _load_instance(self, session: Session, instance_id: UUID) -> ApprovalInstanceModel:
        stmt = select(ApprovalInstanceModel).where(ApprovalInstanceModel.id == instance_id)
        if self.lock_strategy == "row":
            stmt = stmt.with_for_update(of=ApprovalInstanceModel)
        instance = session.execute(stmt).scalar_one_or_none()
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return instance

    def _instance_id_for_request(self, request_id: UUID) -> UUID:
        with session_scope(self.session_factory) as session:
            instance_id = session.execute(
                select(ApprovalRequestModel.instance_id).where(
                    ApprovalRequestModel.id == request_id,
                )
            ).scalar_one_or_none()
        if instance_id is None:
            raise RequestNotFoundError(str(request_id))
        return instance_id

    @staticmethod
    def _require_running(instance: ApprovalInstanceModel) -> None:
        if InstanceStatus(instance.status) in TERMINAL_INSTANCE_STATUSES:
            raise InstanceTerminalError(str(instance.id), instance.status)

    @staticmethod
    def _requests(session: Session, instance_id: UUID) -> list[ApprovalRequest]:
        rows = session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.instance_id == instance_id)
            .order_by(ApprovalRequestModel.step_order, ApprovalRequestModel.created_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def _resolve_steps(self, definition: WorkflowDefinitionModel) -> list[ResolvedStep]:
        resolved = []
        for step in definition.steps:
            approver = Approver(ApproverType(step.approver_type), step.approver_value)
            resolved.append(ResolvedStep(step.to_dto(), tuple(self.directory.resolve(approver))))
        return resolved

    def _apply(
        self,
        session: Session,
        instance: ApprovalInstanceModel,
        plan: ProgressionPlan,
    ) -> list[ApprovalRequest]:
        """Write ``plan`` to the session; returns the requests it opened."""
        now = self.clock.now()
        for change in plan.request_changes:
            row = session.get(ApprovalRequestModel, change.request_id)
            row.status = change.status.value
            row.decision_at = now
            if change.decided_by is not None:
                row.decided_by = change.decided_by
            if change.comment is not None:
                row.comment = change.comment

        opened: list[ApprovalRequestModel] = []
        for new in plan.new_requests:
            row = ApprovalRequestModel(
                instance_id=instance.id,
                step_id=new.step_id,
                step_order=new.step_order,
                is_optional=new.is_optional,
                approver=new.approver,
                status=RequestStatus.PENDING.value,
                created_at=now,
                auto_approve_at=(
                    now + timedelta(hours=new.auto_approve_after_hours)
                    if new.auto_approve_after_hours else None
                ),
                reminder_count=0,
            )
            session.add(row)
            opened.append(row)

        instance.status = plan.status.value
        instance.current_step = plan.current_step
        if plan.is_terminal:
            instance.completed_at = now
        session.flush()
        HistoryRecorder(session, self.clock).record(instance.id, plan.history)
        return [row.to_dto() for row in opened]

    def _sync_timers(
        self,
        opened: Iterable[ApprovalRequest],
        resolved: Iterable[UUID],
    ) -> None:
        if self.timers is None:
            return
        for request_id in resolved:
            self.timers.cancel(request_id)
        for request in opened:
            if request.auto_approve_at is not None and request.is_pending:
                self.timers.schedule(request.request_id, request.auto_approve_at, self.handle_timer)

    @staticmethod
    def _event_context(instance: ApprovalInstance, actor: str) -> dict[str, Any]:
        return {
            "entityType": instance.entity_type.value,
            "entityId": instance.entity_id,
            "instanceId": str(instance.instance_id),
            "definitionId": str(instance.definition_id),
            "workflowName": instance.workflow_name,
            "workflowType": instance.workflow_type.value if instance.workflow_type else None,
            "status": instance.status.value,
            "currentStep": instance.current_step,
            "triggeredBy": actor,
        }

    def _after_commit(self, outcome: _Outcome) -> None:
        """Best-effort side effects; run with no instance lock held."""
        if outcome.new_requests and not outcome.instance.is_terminal:
            self._notify(outcome.instance, outcome.new_requests, REQUEST_MESSAGE)
        if self.event_sink is None:
            return
        for event_type, context in outcome.events:
            try:
                self.event_sink.publish(event_type, context)
            except Exception:
                logger.exception(
                    "approval_event_publish_failed", extra={"event_type": event_type},
                )

    def _notify(
        self,
        instance: ApprovalInstance,
        requests: list[ApprovalRequest],
        message: str,
        *,
        reminder: bool = False,
    ) -> None:
        if self.dispatcher is None or not self.notify_approvers:
            return
        context = self._event_context(instance, SYSTEM_ACTOR)
        context.update({
            "recipients": sorted({r.approver for r in requests}),
            "requestIds": [str(r.request_id) for r in requests],
            "reminder": reminder,
        })
        config = {
            "channel": NOTIFY_CHANNEL,
            "message": message,
            "recipients": context["recipients"],
        }
        outcome = self.dispatcher.dispatch(ActionType.NOTIFY, config, context)
        if not outcome.ok:
            logger.warning(
                "approver_notification_failed",
                extra={
                    "instance_id": str(instance.instance_id),
                    "result": outcome.result.value,
                    "error": outcome.error_message,
                },
            )
