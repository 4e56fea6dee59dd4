"""
Tests for ApprovalEngine.

Covers:
- Starting instances (explicit definition and entity-type default)
- Start validation: inactive/mismatched/empty definitions, duplicates
- Sequential, parallel and any_one progression end to end
- Directory resolution to nobody (auto-approved steps)
- Cancellation
- Auto-approval timers, the due sweep and timer restoration
- Reminders
- Bulk decisions
- Lifecycle events and approver notifications
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from workflow_kernel.db.engine import session_scope
from workflow_kernel.domain.approval import (
    AUTO_APPROVE_COMMENT,
    SYSTEM_ACTOR,
    Decision,
    HistoryAction,
    InstanceStatus,
    RequestStatus,
    StaticApproverDirectory,
    WorkflowType,
)
from workflow_kernel.domain.triggers import ActionType
from workflow_kernel.exceptions import (
    DefinitionNotFoundError,
    DuplicateActiveInstanceError,
    InstanceNotFoundError,
    InstanceTerminalError,
    NotAutoApprovableError,
    RequestAlreadyResolvedError,
    RequestNotFoundError,
    ValidationError,
)
from workflow_kernel.selectors.approval_selector import ApprovalSelector
from workflow_kernel.services.approval_engine import ApprovalEngine
from workflow_kernel.services.timer_service import ManualTimerService

ANA = "ana@example.com"
BEN = "ben@example.com"
CY = "cy@example.com"

START_TIME = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


def detail(session_factory, instance_id):
    with session_scope(session_factory) as session:
        return ApprovalSelector(session).get_instance_detail(instance_id)


def pending(session_factory, instance_id):
    return list(detail(session_factory, instance_id).pending_requests)


def actions(session_factory, instance_id):
    return [h.action for h in detail(session_factory, instance_id).history]


@pytest.fixture
def three_step(make_definition, step):
    return make_definition([step(1, ANA), step(2, BEN), step(3, CY)])


# =============================================================================
# Starting
# =============================================================================


class TestStartInstance:
    """start_instance and start_default."""

    def test_start_opens_first_step(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.current_step == 1
        assert instance.workflow_name == "Proposal Approval"
        assert instance.initiated_at == START_TIME
        assert [r.approver for r in pending(session_factory, instance.instance_id)] == [ANA]
        assert actions(session_factory, instance.instance_id) == [HistoryAction.INITIATED]

    def test_start_records_notes(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance(
            "proposal", 55, three_step.definition_id, "alice", notes="needs sign-off",
        )
        history = detail(session_factory, instance.instance_id).history
        assert history[0].comment == "needs sign-off"
        assert history[0].actor == "alice"

    def test_unknown_definition(self, approval_engine):
        with pytest.raises(DefinitionNotFoundError):
            approval_engine.start_instance("proposal", 55, uuid4(), "alice")

    def test_inactive_definition(self, approval_engine, make_definition, step):
        definition = make_definition([step(1, ANA)], is_active=False)
        with pytest.raises(DefinitionNotFoundError) as exc_info:
            approval_engine.start_instance("proposal", 55, definition.definition_id, "alice")
        assert exc_info.value.reason == "is not active"

    def test_entity_type_mismatch(self, approval_engine, three_step):
        with pytest.raises(ValidationError) as exc_info:
            approval_engine.start_instance("invoice", 55, three_step.definition_id, "alice")
        assert exc_info.value.field == "entity_type"

    def test_definition_without_steps(self, approval_engine, make_definition):
        definition = make_definition([])
        with pytest.raises(ValidationError):
            approval_engine.start_instance("proposal", 55, definition.definition_id, "alice")

    @pytest.mark.parametrize("entity_id", ["55", 5.5, True, None])
    def test_entity_id_must_be_integer(self, approval_engine, three_step, entity_id):
        with pytest.raises(ValidationError):
            approval_engine.start_instance("proposal", entity_id, three_step.definition_id, "alice")

    def test_unknown_entity_type(self, approval_engine, three_step):
        with pytest.raises(ValidationError):
            approval_engine.start_instance("lead", 55, three_step.definition_id, "alice")

    def test_second_running_instance_rejected(self, approval_engine, three_step):
        first = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        with pytest.raises(DuplicateActiveInstanceError) as exc_info:
            approval_engine.start_instance("proposal", 55, three_step.definition_id, "bob")
        assert exc_info.value.instance_id == str(first.instance_id)

    def test_restart_allowed_after_terminal(self, approval_engine, three_step):
        first = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        approval_engine.cancel(first.instance_id, "alice")

        second = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        assert second.instance_id != first.instance_id

    def test_other_entities_are_independent(self, approval_engine, three_step):
        approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        approval_engine.start_instance("proposal", 56, three_step.definition_id, "alice")

    def test_start_default(self, approval_engine, make_definition, step):
        make_definition([step(1, ANA)], name="Not default")
        default = make_definition([step(1, BEN)], name="Default", is_default=True)

        instance = approval_engine.start_default("proposal", 9, "alice")
        assert instance.definition_id == default.definition_id

    def test_start_default_without_default(self, approval_engine, make_definition, step):
        make_definition([step(1, ANA)])
        with pytest.raises(DefinitionNotFoundError) as exc_info:
            approval_engine.start_default("proposal", 9, "alice")
        assert exc_info.value.definition_id == "default:proposal"

    def test_start_logs(self, approval_engine, three_step, captured_logs):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")

        started = [r for r in captured_logs() if r["message"] == "approval_instance_started"]
        assert len(started) == 1
        assert started[0]["instance_id"] == str(instance.instance_id)
        assert started[0]["requests_opened"] == 1
        assert started[0]["actor"] == "alice"


# =============================================================================
# Sequential progression
# =============================================================================


class TestSequentialWorkflow:
    """Steps run one after another."""

    def test_full_round_trip_ending_in_rejection(
        self, approval_engine, three_step, session_factory, event_sink,
    ):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        iid = instance.instance_id

        approval_engine.decide(pending(session_factory, iid)[0].request_id, "approve", ANA)
        after_two = approval_engine.decide(pending(session_factory, iid)[0].request_id, "approve", BEN)
        assert after_two.current_step == 3

        final = approval_engine.decide(
            pending(session_factory, iid)[0].request_id, Decision.REJECT, CY, comment="over budget",
        )

        assert final.status == InstanceStatus.REJECTED
        assert final.completed_at == START_TIME
        assert pending(session_factory, iid) == []
        assert actions(session_factory, iid) == [
            HistoryAction.INITIATED,
            HistoryAction.APPROVED,
            HistoryAction.APPROVED,
            HistoryAction.REJECTED,
        ]
        assert event_sink.types() == [
            "approval.initiated",
            "approval.approved",
            "approval.approved",
            "approval.rejected",
            "approval.completed",
        ]
        rejected = event_sink.events[3][1]
        assert rejected["comment"] == "over budget"
        assert rejected["triggeredBy"] == CY
        assert rejected["entityId"] == 55

    def test_all_approved(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        for approver in (ANA, BEN, CY):
            request = pending(session_factory, instance.instance_id)[0]
            assert request.approver == approver
            result = approval_engine.decide(request.request_id, "approve", approver)
        assert result.status == InstanceStatus.APPROVED

    def test_decision_recorded_on_request(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        approval_engine.decide(request.request_id, "approve", ANA, comment="fine")

        stored = next(
            r for r in detail(session_factory, instance.instance_id).requests
            if r.request_id == request.request_id
        )
        assert stored.status == RequestStatus.APPROVED
        assert stored.decided_by == ANA
        assert stored.comment == "fine"
        assert stored.decision_at == START_TIME

    def test_optional_step_rejection_is_a_skip(
        self, approval_engine, make_definition, step, session_factory,
    ):
        definition = make_definition([step(1, ANA), step(2, BEN, optional=True), step(3, CY)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        iid = instance.instance_id

        approval_engine.decide(pending(session_factory, iid)[0].request_id, "approve", ANA)
        skipped = approval_engine.decide(pending(session_factory, iid)[0].request_id, "reject", BEN)
        assert skipped.status == InstanceStatus.IN_PROGRESS
        assert skipped.current_step == 3

        final = approval_engine.decide(pending(session_factory, iid)[0].request_id, "approve", CY)
        assert final.status == InstanceStatus.APPROVED
        assert actions(session_factory, iid) == [
            HistoryAction.INITIATED,
            HistoryAction.APPROVED,
            HistoryAction.SKIPPED,
            HistoryAction.APPROVED,
        ]

    def test_step_resolving_to_nobody_is_auto_approved(
        self, session_factory, clock, timers, make_definition, step,
    ):
        engine = ApprovalEngine(
            session_factory, clock, timers,
            directory=StaticApproverDirectory({("role", "finance"): ()}),
        )
        definition = make_definition([step(1, "finance", approver_type="role"), step(2, ANA)])

        instance = engine.start_instance("proposal", 1, definition.definition_id, "alice")

        assert instance.current_step == 2
        history = detail(session_factory, instance.instance_id).history
        assert [h.action for h in history] == [HistoryAction.INITIATED, HistoryAction.AUTO_APPROVED]
        assert history[1].actor == SYSTEM_ACTOR

    def test_every_step_empty_approves_at_start(
        self, session_factory, clock, make_definition, step, event_sink,
    ):
        engine = ApprovalEngine(
            session_factory, clock,
            directory=StaticApproverDirectory({("role", "finance"): ()}),
            event_sink=event_sink,
        )
        definition = make_definition([step(1, "finance", approver_type="role")])

        instance = engine.start_instance("proposal", 1, definition.definition_id, "alice")

        assert instance.status == InstanceStatus.APPROVED
        assert event_sink.types() == ["approval.initiated", "approval.completed"]

    def test_role_and_client_approvers_resolve_to_handles(
        self, approval_engine, make_definition, step, session_factory,
    ):
        definition = make_definition(
            [step(1, "finance", approver_type="role"), step(2, "7", approver_type="client")],
            workflow_type=WorkflowType.PARALLEL,
        )
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        assert sorted(r.approver for r in pending(session_factory, instance.instance_id)) == [
            "client:7", "role:finance",
        ]


# =============================================================================
# Parallel and any_one
# =============================================================================


class TestParallelAndAnyOne:
    """Workflows that open every step at once."""

    def test_parallel_needs_every_required_step(
        self, approval_engine, make_definition, step, session_factory,
    ):
        definition = make_definition(
            [step(1, ANA), step(2, BEN), step(3, CY, optional=True)],
            workflow_type=WorkflowType.PARALLEL,
        )
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        requests = {r.approver: r for r in pending(session_factory, instance.instance_id)}
        assert set(requests) == {ANA, BEN, CY}

        first = approval_engine.decide(requests[ANA].request_id, "approve", ANA)
        assert first.status == InstanceStatus.IN_PROGRESS

        final = approval_engine.decide(requests[BEN].request_id, "approve", BEN)
        assert final.status == InstanceStatus.APPROVED
        statuses = {r.approver: r.status for r in detail(session_factory, instance.instance_id).requests}
        assert statuses[CY] == RequestStatus.SKIPPED

    def test_parallel_required_rejection(self, approval_engine, make_definition, step, session_factory):
        definition = make_definition([step(1, ANA), step(2, BEN)], workflow_type="parallel")
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]

        result = approval_engine.decide(request.request_id, "reject", request.approver)

        assert result.status == InstanceStatus.REJECTED
        assert pending(session_factory, instance.instance_id) == []

    def test_any_one_first_approval_wins(self, approval_engine, make_definition, step, session_factory):
        definition = make_definition([step(1, ANA), step(2, BEN)], workflow_type="any_one")
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        requests = pending(session_factory, instance.instance_id)

        result = approval_engine.decide(requests[1].request_id, "approve", requests[1].approver)

        assert result.status == InstanceStatus.APPROVED
        with pytest.raises(RequestAlreadyResolvedError):
            approval_engine.decide(requests[0].request_id, "approve", requests[0].approver)

    def test_any_one_rejected_only_when_everyone_declines(
        self, approval_engine, make_definition, step, session_factory,
    ):
        definition = make_definition([step(1, ANA), step(2, BEN)], workflow_type="any_one")
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        first, second = pending(session_factory, instance.instance_id)

        assert approval_engine.decide(first.request_id, "reject", first.approver).status == (
            InstanceStatus.IN_PROGRESS
        )
        assert approval_engine.decide(second.request_id, "reject", second.approver).status == (
            InstanceStatus.REJECTED
        )


# =============================================================================
# Decision errors
# =============================================================================


class TestDecisionErrors:
    """Invalid decisions leave state untouched."""

    def test_unknown_request(self, approval_engine):
        with pytest.raises(RequestNotFoundError):
            approval_engine.decide(uuid4(), "approve", ANA)

    def test_bad_decision_value(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        with pytest.raises(ValidationError):
            approval_engine.decide(request.request_id, "maybe", ANA)

    def test_actor_required(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        with pytest.raises(ValidationError):
            approval_engine.decide(request.request_id, "approve", "")

    def test_deciding_twice(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        approval_engine.decide(request.request_id, "approve", ANA)

        with pytest.raises(RequestAlreadyResolvedError) as exc_info:
            approval_engine.decide(request.request_id, "reject", ANA)
        assert exc_info.value.status == "approved"
        assert actions(session_factory, instance.instance_id).count(HistoryAction.REJECTED) == 0


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:
    """cancel() skips everything outstanding."""

    def test_cancel(self, approval_engine, make_definition, step, session_factory, timers, event_sink):
        definition = make_definition([step(1, ANA, hours=24), step(2, BEN)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        assert len(timers.pending()) == 1

        result = approval_engine.cancel(instance.instance_id, "alice", reason="client withdrew")

        assert result.status == InstanceStatus.CANCELLED
        assert timers.pending() == {}
        requests = detail(session_factory, instance.instance_id).requests
        assert {r.status for r in requests} == {RequestStatus.SKIPPED}
        history = detail(session_factory, instance.instance_id).history
        assert (history[-1].action, history[-1].comment) == (HistoryAction.CANCELLED, "client withdrew")
        assert event_sink.events[-1][0] == "approval.cancelled"
        assert event_sink.events[-1][1]["reason"] == "client withdrew"

    def test_cancel_terminal_instance(self, approval_engine, three_step):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        approval_engine.cancel(instance.instance_id, "alice")
        with pytest.raises(InstanceTerminalError):
            approval_engine.cancel(instance.instance_id, "alice")

    def test_cancel_unknown_instance(self, approval_engine):
        with pytest.raises(InstanceNotFoundError):
            approval_engine.cancel(uuid4(), "alice")


# =============================================================================
# Auto-approval
# =============================================================================


class TestAutoApproval:
    """Deadline-driven approvals."""

    def test_timer_scheduled_at_deadline(self, approval_engine, make_definition, step, session_factory, timers):
        definition = make_definition([step(1, ANA, hours=24)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]

        assert request.auto_approve_at == START_TIME + timedelta(hours=24)
        assert timers.pending() == {request.request_id: request.auto_approve_at}

    def test_fired_timer_auto_approves(
        self, approval_engine, make_definition, step, session_factory, timers, clock, event_sink,
    ):
        definition = make_definition([step(1, ANA, hours=24), step(2, BEN)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")

        assert timers.fire_due() == 0
        clock.advance(hours=24)
        assert timers.fire_due() == 1

        history = detail(session_factory, instance.instance_id).history
        assert history[-1].action == HistoryAction.AUTO_APPROVED
        assert history[-1].actor == SYSTEM_ACTOR
        assert history[-1].comment == AUTO_APPROVE_COMMENT
        assert [r.approver for r in pending(session_factory, instance.instance_id)] == [BEN]
        approved = [ctx for kind, ctx in event_sink.events if kind == "approval.approved"]
        assert approved[-1]["auto"] is True

    def test_human_decision_cancels_timer(self, approval_engine, make_definition, step, session_factory, timers):
        definition = make_definition([step(1, ANA, hours=24)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]

        approval_engine.decide(request.request_id, "approve", ANA)

        assert timers.pending() == {}

    def test_late_timer_is_a_logged_no_op(
        self, approval_engine, make_definition, step, session_factory, captured_logs,
    ):
        definition = make_definition([step(1, ANA, hours=24)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        approval_engine.decide(request.request_id, "reject", ANA)

        approval_engine.handle_timer(request.request_id)

        assert actions(session_factory, instance.instance_id).count(HistoryAction.AUTO_APPROVED) == 0
        assert any(r["message"] == "auto_approval_superseded" for r in captured_logs())

    def test_request_without_deadline(self, approval_engine, three_step, session_factory):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        request = pending(session_factory, instance.instance_id)[0]
        with pytest.raises(NotAutoApprovableError):
            approval_engine.auto_approve(request.request_id)

    def test_sweep_approves_overdue_requests(
        self, approval_engine, make_definition, step, session_factory, timers, clock,
    ):
        definition = make_definition([step(1, ANA, hours=2)])
        first = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        second = approval_engine.start_instance("proposal", 2, definition.definition_id, "alice")

        assert approval_engine.sweep_due_auto_approvals() == 0
        clock.advance(hours=3)
        assert approval_engine.sweep_due_auto_approvals() == 2

        assert detail(session_factory, first.instance_id).instance.status == InstanceStatus.APPROVED
        assert detail(session_factory, second.instance_id).instance.status == InstanceStatus.APPROVED
        assert timers.pending() == {}

    def test_restore_timers_after_restart(
        self, approval_engine, make_definition, step, session_factory, clock,
    ):
        definition = make_definition([step(1, ANA, hours=24)])
        kept = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        dropped = approval_engine.start_instance("proposal", 2, definition.definition_id, "alice")
        approval_engine.cancel(dropped.instance_id, "alice")

        fresh_timers = ManualTimerService(clock)
        restarted = ApprovalEngine(session_factory, clock, fresh_timers)

        assert restarted.restore_timers() == 1
        request = pending(session_factory, kept.instance_id)[0]
        assert fresh_timers.pending() == {request.request_id: request.auto_approve_at}

        clock.advance(hours=25)
        fresh_timers.fire_due()
        assert detail(session_factory, kept.instance_id).instance.status == InstanceStatus.APPROVED


# =============================================================================
# Reminders and notifications
# =============================================================================


class TestNotifications:
    """Approvers hear about new and stale requests."""

    def test_new_requests_notify_their_approvers(self, approval_engine, three_step, session_factory, handlers):
        instance = approval_engine.start_instance("proposal", 55, three_step.definition_id, "alice")
        approval_engine.decide(pending(session_factory, instance.instance_id)[0].request_id, "approve", ANA)

        calls = handlers[ActionType.NOTIFY].calls
        assert [config["recipients"] for config, _ in calls] == [[ANA], [BEN]]
        config, context = calls[0]
        assert config["channel"] == "approvals"
        assert context["entityId"] == 55
        assert context["reminder"] is False

    def test_terminal_instance_sends_no_request_notification(
        self, approval_engine, make_definition, step, session_factory, handlers,
    ):
        definition = make_definition([step(1, ANA)])
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")
        approval_engine.decide(pending(session_factory, instance.instance_id)[0].request_id, "approve", ANA)
        assert len(handlers[ActionType.NOTIFY].calls) == 1

    def test_failed_notification_does_not_affect_instance(
        self, approval_engine, three_step, handlers, captured_logs,
    ):
        handlers[ActionType.NOTIFY].behaviour = RuntimeError("smtp down")

        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert any(r["message"] == "approver_notification_failed" for r in captured_logs())

    def test_failing_event_sink_is_logged(self, session_factory, clock, three_step, captured_logs):
        class BrokenSink:
            def publish(self, event_type, context):
                raise RuntimeError("bus unavailable")

        engine = ApprovalEngine(session_factory, clock, event_sink=BrokenSink())
        instance = engine.start_instance("proposal", 1, three_step.definition_id, "alice")

        assert instance.status == InstanceStatus.IN_PROGRESS
        failures = [r for r in captured_logs() if r["message"] == "approval_event_publish_failed"]
        assert failures[0]["event_type"] == "approval.initiated"

    def test_reminders(self, approval_engine, three_step, session_factory, handlers, clock):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")

        assert approval_engine.remind_pending() == 0
        clock.advance(hours=49)
        assert approval_engine.remind_pending() == 1
        assert approval_engine.remind_pending() == 0

        config, context = handlers[ActionType.NOTIFY].calls[-1]
        assert context["reminder"] is True
        assert config["recipients"] == [ANA]
        request = pending(session_factory, instance.instance_id)[0]
        assert request.reminder_count == 1
        assert request.reminder_sent_at == clock.now()

    def test_reminder_threshold_override(self, approval_engine, three_step, clock):
        approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        clock.advance(hours=2)
        assert approval_engine.remind_pending(older_than_hours=1) == 1


# =============================================================================
# Bulk decisions
# =============================================================================


class TestBulkDecide:
    """Per-instance outcomes, never all-or-nothing."""

    def test_mixed_batch(self, approval_engine, make_definition, step, session_factory):
        definition = make_definition([step(1, ANA)])
        instances = [
            approval_engine.start_instance("proposal", n, definition.definition_id, "alice")
            for n in range(5)
        ]
        for finished in instances[:2]:
            approval_engine.cancel(finished.instance_id, "alice")

        result = approval_engine.bulk_decide(
            [i.instance_id for i in instances], "approve", "admin@example.com",
        )

        assert result.success_count == 3
        assert result.failure_count == 2
        assert {f.code for f in result.failed} == {"INSTANCE_TERMINAL"}
        assert set(result.succeeded) == {i.instance_id for i in instances[2:]}
        for instance in instances[2:]:
            assert detail(session_factory, instance.instance_id).instance.status == InstanceStatus.APPROVED

    def test_sequential_bulk_only_decides_current_step(
        self, approval_engine, three_step, session_factory,
    ):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")

        result = approval_engine.bulk_decide([instance.instance_id], "approve", "admin")

        assert result.success_count == 1
        current = detail(session_factory, instance.instance_id).instance
        assert current.status == InstanceStatus.IN_PROGRESS
        assert current.current_step == 2

    def test_parallel_bulk_decides_every_pending_request(
        self, approval_engine, make_definition, step, session_factory, event_sink,
    ):
        definition = make_definition([step(1, ANA), step(2, BEN)], workflow_type="parallel")
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")

        approval_engine.bulk_decide([instance.instance_id], "approve", "admin")

        assert detail(session_factory, instance.instance_id).instance.status == InstanceStatus.APPROVED
        assert event_sink.types().count("approval.completed") == 1

    def test_bulk_reject_stops_at_terminal(self, approval_engine, make_definition, step, session_factory):
        definition = make_definition([step(1, ANA), step(2, BEN)], workflow_type="parallel")
        instance = approval_engine.start_instance("proposal", 1, definition.definition_id, "alice")

        result = approval_engine.bulk_decide([instance.instance_id], "reject", "admin", comment="no")

        assert result.success_count == 1
        assert actions(session_factory, instance.instance_id).count(HistoryAction.REJECTED) == 1

    def test_unknown_and_duplicate_ids(self, approval_engine, three_step):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        missing = uuid4()

        result = approval_engine.bulk_decide(
            [instance.instance_id, instance.instance_id, missing], "approve", "admin",
        )

        assert result.succeeded == (instance.instance_id,)
        assert [(f.instance_id, f.code) for f in result.failed] == [(missing, "INSTANCE_NOT_FOUND")]

    def test_bulk_logs_summary(self, approval_engine, three_step, captured_logs):
        instance = approval_engine.start_instance("proposal", 1, three_step.definition_id, "alice")
        approval_engine.bulk_decide([instance.instance_id, uuid4()], "approve", "admin")

        summary = [r for r in captured_logs() if r["message"] == "bulk_decision_completed"]
        assert summary[0]["succeeded"] == 1
        assert summary[0]["failed"] == 1
