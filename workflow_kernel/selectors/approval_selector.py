"""
Module: workflow_kernel.selectors.approval_selector
Responsibility: Read-only views over approval instances for the admin
    console: the running-instance list (with the urgent filter), the detail
    of one instance or of an entity's latest instance, and the inbox of
    pending requests per approver.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only.
    - Requests are ordered by step_order then creation time; history by
      its per-instance sequence, so entries sharing a timestamp keep the
      order they were written in.

Failure modes:
    - InstanceNotFoundError from get_instance_detail() on an unknown id.
    - get_entity_detail() returns None when the entity never had an instance.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import select

from workflow_kernel.domain.approval import (
    ACTIVE_INSTANCE_STATUSES,
    ApprovalInstance,
    ApprovalRequest,
    EntityType,
    InstanceDetail,
    RequestStatus,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.exceptions import InstanceNotFoundError
from workflow_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalInstanceModel,
    ApprovalRequestModel,
)
from workflow_kernel.selectors.base import BaseSelector

DEFAULT_URGENT_AFTER_HOURS = 24


class ApprovalSelector(BaseSelector[ApprovalInstanceModel]):
    """Queries over approval instances, requests and history."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        urgent_after_hours: int = DEFAULT_URGENT_AFTER_HOURS,
    ):
        super().__init__(session)
        self.clock = clock or SystemClock()
        self.urgent_after_hours = urgent_after_hours

    def list_active_instances(
        self,
        entity_type: EntityType | str | None = None,
        urgent: bool = False,
    ) -> list[ApprovalInstance]:
        """Pending and in-progress instances, oldest first.

        ``urgent`` keeps only instances initiated more than
        ``urgent_after_hours`` ago.
        """
        stmt = select(ApprovalInstanceModel).where(
            ApprovalInstanceModel.status.in_([s.value for s in ACTIVE_INSTANCE_STATUSES])
        )
        if entity_type is not None:
            entity = self._filter_value(EntityType, entity_type, "entity_type")
            stmt = stmt.where(ApprovalInstanceModel.entity_type == entity)
        if urgent:
            cutoff = self.clock.now() - timedelta(hours=self.urgent_after_hours)
            stmt = stmt.where(ApprovalInstanceModel.initiated_at < cutoff)
        stmt = stmt.order_by(ApprovalInstanceModel.initiated_at, ApprovalInstanceModel.id)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def get_instance_detail(self, instance_id: UUID) -> InstanceDetail:
        instance = self.session.get(ApprovalInstanceModel, instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return self._detail(instance)

    def get_entity_detail(
        self,
        entity_type: EntityType | str,
        entity_id: int,
    ) -> InstanceDetail | None:
        """The entity's most recent instance with its requests and history."""
        instance = self.session.execute(
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.entity_type
                == self._filter_value(EntityType, entity_type, "entity_type"),
                ApprovalInstanceModel.entity_id == entity_id,
            )
            .order_by(ApprovalInstanceModel.initiated_at.desc(), ApprovalInstanceModel.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if instance is None:
            return None
        return self._detail(instance)

    def pending_for_approver(self, approver: str) -> list[ApprovalRequest]:
        """Pending requests addressed to ``approver`` on running instances."""
        rows = self.session.execute(
            select(ApprovalRequestModel)
            .join(ApprovalInstanceModel, ApprovalRequestModel.instance_id == ApprovalInstanceModel.id)
            .where(
                ApprovalRequestModel.approver == approver,
                ApprovalRequestModel.status == RequestStatus.PENDING.value,
                ApprovalInstanceModel.status.in_([s.value for s in ACTIVE_INSTANCE_STATUSES]),
            )
            .order_by(ApprovalRequestModel.created_at, ApprovalRequestModel.id)
        ).scalars()
        return [row.to_dto() for row in rows]

    def _detail(self, instance: ApprovalInstanceModel) -> InstanceDetail:
        requests = self.session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.instance_id == instance.id)
            .order_by(ApprovalRequestModel.step_order, ApprovalRequestModel.created_at)
        ).scalars()
        history = self.session.execute(
            select(ApprovalHistoryModel)
            .where(ApprovalHistoryModel.instance_id == instance.id)
            .order_by(ApprovalHistoryModel.sequence)
        ).scalars()
        return InstanceDetail(
            instance=instance.to_dto(),
            requests=tuple(r.to_dto() for r in requests),
            history=tuple(h.to_dto() for h in history),
        )
