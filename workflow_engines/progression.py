"""
workflow_engines.progression -- Pure approval step progression.

Responsibility:
    Given a workflow's ordered steps, the requests already materialised for
    an instance, and one input (start, decision, cancel), compute the full
    set of state changes as a ``ProgressionPlan``: request status updates,
    requests to create, history entries to append, and the instance's new
    status and step pointer.  The approval service applies the plan inside
    one transaction.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel/domain/ types and kernel exceptions.

Invariants enforced:
    - Sequential: only requests of the current step are ever pending, and
      ``current_step`` only moves forward.
    - Parallel: the instance is approved iff every required step has an
      approved request; one required rejection rejects the instance and
      skips everything still pending.
    - Any-one: the first approval wins and skips every other request; the
      instance is rejected only when nothing is pending and nothing was
      approved.
    - A step is satisfied by its first approval; pending sibling requests
      of that step are skipped.
    - A step whose approvers resolve to nobody is auto-approved by the
      system actor (sequential and parallel).
    - Terminal plans skip every request left pending.

Failure modes:
    - RequestAlreadyResolvedError when the decided request is not pending.
    - RequestNotFoundError when the request is not part of the instance.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from uuid import UUID

from workflow_engines.tracer import traced_engine
from workflow_kernel.domain.approval import (
    AUTO_APPROVE_COMMENT,
    SYSTEM_ACTOR,
    ApprovalRequest,
    Decision,
    HistoryAction,
    InstanceStatus,
    RequestStatus,
    WorkflowStep,
    WorkflowType,
)
from workflow_kernel.exceptions import (
    RequestAlreadyResolvedError,
    RequestNotFoundError,
)

NO_APPROVERS_COMMENT = "no approvers assigned"

ENGINE_VERSION = "1.0"


# =========================================================================
# Plan types
# =========================================================================


@dataclass(frozen=True)
class ResolvedStep:
    """A definition step together with the recipients it resolved to."""

    step: WorkflowStep
    approvers: tuple[str, ...] = ()

    @property
    def step_id(self) -> UUID:
        return self.step.step_id

    @property
    def step_order(self) -> int:
        return self.step.step_order


@dataclass(frozen=True)
class NewRequest:
    """Request the service must insert."""

    step_id: UUID
    step_order: int
    approver: str
    is_optional: bool
    auto_approve_after_hours: int | None = None


@dataclass(frozen=True)
class RequestChange:
    """Status change for an existing pending request."""

    request_id: UUID
    status: RequestStatus
    decided_by: str | None = None
    comment: str | None = None


@dataclass(frozen=True)
class HistoryRecord:
    """History entry the service must append, in order."""

    action: HistoryAction
    actor: str
    step_id: UUID | None = None
    comment: str | None = None


@dataclass(frozen=True)
class ProgressionPlan:
    """Everything one engine input changes on an instance."""

    status: InstanceStatus
    current_step: int
    request_changes: tuple[RequestChange, ...] = ()
    new_requests: tuple[NewRequest, ...] = ()
    history: tuple[HistoryRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            InstanceStatus.APPROVED,
            InstanceStatus.REJECTED,
            InstanceStatus.CANCELLED,
        )

    @property
    def resolved_request_ids(self) -> tuple[UUID, ...]:
        """Requests that leave pending under this plan (their timers go)."""
        return tuple(c.request_id for c in self.request_changes)


@dataclass
class _Draft:
    status: InstanceStatus
    current_step: int
    requests: dict[UUID, ApprovalRequest]
    changes: list[RequestChange] = field(default_factory=list)
    new_requests: list[NewRequest] = field(default_factory=list)
    history: list[HistoryRecord] = field(default_factory=list)

    def set_request(
        self,
        request_id: UUID,
        status: RequestStatus,
        decided_by: str | None = None,
        comment: str | None = None,
    ) -> None:
        self.changes.append(RequestChange(request_id, status, decided_by, comment))
        self.requests[request_id] = replace(self.requests[request_id], status=status)

    def pending(self) -> list[ApprovalRequest]:
        return [r for r in self.requests.values() if r.status == RequestStatus.PENDING]

    def skip_pending(self, *, step_id: UUID | None = None) -> None:
        for request in self.pending():
            if step_id is not None and request.step_id != step_id:
                continue
            self.set_request(request.request_id, RequestStatus.SKIPPED)

    def finish(self, status: InstanceStatus) -> None:
        self.status = status
        self.skip_pending()

    def plan(self) -> ProgressionPlan:
        return ProgressionPlan(
            status=self.status,
            current_step=self.current_step,
            request_changes=tuple(self.changes),
            new_requests=tuple(self.new_requests),
            history=tuple(self.history),
        )


# =========================================================================
# Helpers
# =========================================================================


def order_steps(steps: Sequence[ResolvedStep]) -> list[ResolvedStep]:
    return sorted(steps, key=lambda s: s.step_order)


def _materialise(draft: _Draft, resolved: ResolvedStep) -> None:
    for approver in resolved.approvers:
        draft.new_requests.append(NewRequest(
            step_id=resolved.step_id,
            step_order=resolved.step_order,
            approver=approver,
            is_optional=resolved.step.is_optional,
            auto_approve_after_hours=resolved.step.auto_approve_after_hours,
        ))


def _auto_approve_empty(draft: _Draft, resolved: ResolvedStep) -> None:
    draft.history.append(HistoryRecord(
        action=HistoryAction.AUTO_APPROVED,
        actor=SYSTEM_ACTOR,
        step_id=resolved.step_id,
        comment=NO_APPROVERS_COMMENT,
    ))


def _advance_sequential(draft: _Draft, ordered: list[ResolvedStep], after_order: int | None) -> None:
    """Open the next step with recipients after ``after_order``, or approve."""
    for position, resolved in enumerate(ordered, start=1):
        if after_order is not None and resolved.step_order <= after_order:
            continue
        if resolved.approvers:
            draft.current_step = position
            draft.status = InstanceStatus.IN_PROGRESS
            _materialise(draft, resolved)
            return
        _auto_approve_empty(draft, resolved)
        draft.current_step = position
    draft.finish(InstanceStatus.APPROVED)


def _required_groups(requests: dict[UUID, ApprovalRequest]) -> dict[UUID | None, list[ApprovalRequest]]:
    groups: dict[UUID | None, list[ApprovalRequest]] = {}
    for request in requests.values():
        if not request.is_optional:
            groups.setdefault(request.step_id, []).append(request)
    return groups


def _parallel_complete(draft: _Draft) -> bool:
    return all(
        any(r.status == RequestStatus.APPROVED for r in group)
        for group in _required_groups(draft.requests).values()
    )


# =========================================================================
# Start
# =========================================================================


@traced_engine("progression", ENGINE_VERSION, fingerprint_fields=("workflow_type",))
def plan_start(
    *,
    workflow_type: WorkflowType,
    steps: Sequence[ResolvedStep],
    initiated_by: str,
    notes: str | None = None,
) -> ProgressionPlan:
    """Plan a new instance: which requests to open and the starting status.

    Args:
        workflow_type: How the steps combine.
        steps: Every step of the definition with its resolved recipients.
        initiated_by: Actor recorded on the ``initiated`` history entry.
        notes: Optional free text recorded on that entry.

    Returns:
        A plan whose status is ``in_progress``, or ``approved`` when no
        step has anybody to ask.
    """
    ordered = order_steps(steps)
    draft = _Draft(status=InstanceStatus.IN_PROGRESS, current_step=1, requests={})
    draft.history.append(HistoryRecord(
        action=HistoryAction.INITIATED, actor=initiated_by, comment=notes,
    ))

    if workflow_type == WorkflowType.SEQUENTIAL:
        _advance_sequential(draft, ordered, after_order=None)
        return draft.plan()

    if workflow_type == WorkflowType.PARALLEL:
        for resolved in ordered:
            if resolved.approvers:
                _materialise(draft, resolved)
            else:
                _auto_approve_empty(draft, resolved)
        required_open = any(not r.is_optional for r in draft.new_requests)
        if not required_open:
            # Optional-only work never blocks approval
            draft.new_requests.clear()
            draft.status = InstanceStatus.APPROVED
        return draft.plan()

    # any_one: steps without recipients are simply not asked
    for resolved in ordered:
        _materialise(draft, resolved)
    if not draft.new_requests:
        for resolved in ordered:
            _auto_approve_empty(draft, resolved)
        draft.status = InstanceStatus.APPROVED
    return draft.plan()


# =========================================================================
# Decisions
# =========================================================================


@traced_engine(
    "progression", ENGINE_VERSION,
    fingerprint_fields=("workflow_type", "request_id", "decision", "auto"),
)
def plan_decision(
    *,
    workflow_type: WorkflowType,
    steps: Sequence[ResolvedStep],
    requests: Sequence[ApprovalRequest],
    current_step: int,
    request_id: UUID,
    decision: Decision,
    actor: str,
    comment: str | None = None,
    auto: bool = False,
) -> ProgressionPlan:
    """Plan the effect of one decision on one pending request.

    ``steps`` is only consulted by sequential workflows, to open the next
    step; ``requests`` must be every request of the instance.

    Raises:
        RequestNotFoundError: request_id is not among ``requests``.
        RequestAlreadyResolvedError: the request is no longer pending.
    """
    by_id = {r.request_id: r for r in requests}
    target = by_id.get(request_id)
    if target is None:
        raise RequestNotFoundError(str(request_id))
    if target.status != RequestStatus.PENDING:
        raise RequestAlreadyResolvedError(str(request_id), target.status.value)

    draft = _Draft(
        status=InstanceStatus.IN_PROGRESS,
        current_step=current_step,
        requests=dict(by_id),
    )
    if auto:
        actor, comment = SYSTEM_ACTOR, AUTO_APPROVE_COMMENT

    if decision == Decision.APPROVE:
        draft.set_request(request_id, RequestStatus.APPROVED, actor, comment)
        draft.history.append(HistoryRecord(
            action=HistoryAction.AUTO_APPROVED if auto else HistoryAction.APPROVED,
            actor=actor,
            step_id=target.step_id,
            comment=comment,
        ))
        _after_approval(draft, workflow_type, steps, target)
    else:
        _apply_rejection(draft, workflow_type, steps, target, actor, comment)

    return draft.plan()


def _after_approval(
    draft: _Draft,
    workflow_type: WorkflowType,
    steps: Sequence[ResolvedStep],
    target: ApprovalRequest,
) -> None:
    if workflow_type == WorkflowType.ANY_ONE:
        draft.finish(InstanceStatus.APPROVED)
        return

    # The step is satisfied; its other approvers are no longer needed
    draft.skip_pending(step_id=target.step_id)

    if workflow_type == WorkflowType.SEQUENTIAL:
        _advance_sequential(draft, order_steps(steps), after_order=target.step_order)
        return

    if _parallel_complete(draft):
        draft.finish(InstanceStatus.APPROVED)


def _apply_rejection(
    draft: _Draft,
    workflow_type: WorkflowType,
    steps: Sequence[ResolvedStep],
    target: ApprovalRequest,
    actor: str,
    comment: str | None,
) -> None:
    if workflow_type == WorkflowType.ANY_ONE:
        draft.set_request(target.request_id, RequestStatus.REJECTED, actor, comment)
        draft.history.append(HistoryRecord(
            action=HistoryAction.REJECTED, actor=actor,
            step_id=target.step_id, comment=comment,
        ))
        nothing_pending = not draft.pending()
        none_approved = not any(
            r.status == RequestStatus.APPROVED for r in draft.requests.values()
        )
        if nothing_pending and none_approved:
            draft.finish(InstanceStatus.REJECTED)
        return

    if not target.is_optional:
        draft.set_request(target.request_id, RequestStatus.REJECTED, actor, comment)
        draft.history.append(HistoryRecord(
            action=HistoryAction.REJECTED, actor=actor,
            step_id=target.step_id, comment=comment,
        ))
        draft.finish(InstanceStatus.REJECTED)
        return

    # Optional step declined: record it and move on
    draft.set_request(target.request_id, RequestStatus.SKIPPED, actor, comment)
    draft.history.append(HistoryRecord(
        action=HistoryAction.SKIPPED, actor=actor,
        step_id=target.step_id, comment=comment,
    ))
    draft.skip_pending(step_id=target.step_id)

    if workflow_type == WorkflowType.SEQUENTIAL:
        _advance_sequential(draft, order_steps(steps), after_order=target.step_order)
    elif _parallel_complete(draft):
        draft.finish(InstanceStatus.APPROVED)


# =========================================================================
# Cancellation and bulk selection
# =========================================================================


def plan_cancel(
    *,
    requests: Sequence[ApprovalRequest],
    current_step: int,
    actor: str,
    reason: str | None = None,
) -> ProgressionPlan:
    """Cancel: every pending request is skipped, one ``cancelled`` entry."""
    draft = _Draft(
        status=InstanceStatus.IN_PROGRESS,
        current_step=current_step,
        requests={r.request_id: r for r in requests},
    )
    draft.history.append(HistoryRecord(
        action=HistoryAction.CANCELLED, actor=actor, comment=reason,
    ))
    draft.finish(InstanceStatus.CANCELLED)
    return draft.plan()


def actionable_requests(
    workflow_type: WorkflowType,
    requests: Sequence[ApprovalRequest],
) -> tuple[ApprovalRequest, ...]:
    """Requests a bulk decision applies to, in decision order.

    Sequential: pending requests of the lowest pending step (the current
    one).  Parallel and any_one: every pending request.
    """
    pending = sorted(
        (r for r in requests if r.status == RequestStatus.PENDING),
        key=lambda r: (r.step_order, str(r.created_at or ""), str(r.request_id)),
    )
    if workflow_type == WorkflowType.SEQUENTIAL and pending:
        current = pending[0].step_order
        pending = [r for r in pending if r.step_order == current]
    return tuple(pending)
