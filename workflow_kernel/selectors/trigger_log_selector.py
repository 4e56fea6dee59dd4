"""
Module: workflow_kernel.selectors.trigger_log_selector
Responsibility: Paged, newest-first reads of trigger execution logs and of
    the recorded system events.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only.
    - Newest first: ordered by created_at descending, ties broken by the
      write sequence (logs) or id (events).
"""

from uuid import UUID

from sqlalchemy import func, select

from workflow_kernel.domain.triggers import (
    ActionResult,
    Page,
    SystemEvent,
    TriggerExecutionLog,
)
from workflow_kernel.models.trigger import SystemEventModel, TriggerExecutionLogModel
from workflow_kernel.selectors.base import DEFAULT_PAGE_SIZE, BaseSelector


class TriggerLogSelector(BaseSelector[TriggerExecutionLogModel]):
    """Queries over trigger execution logs and system events."""

    def query_logs(
        self,
        trigger_id: UUID | None = None,
        result: ActionResult | str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[TriggerExecutionLog]:
        page, page_size = self._page_bounds(page, page_size)
        filters = []
        if trigger_id is not None:
            filters.append(TriggerExecutionLogModel.trigger_id == trigger_id)
        if result is not None:
            wanted = self._filter_value(ActionResult, result, "result")
            filters.append(TriggerExecutionLogModel.action_result == wanted)

        total = self.session.execute(
            select(func.count()).select_from(TriggerExecutionLogModel).where(*filters)
        ).scalar_one()
        rows = self.session.execute(
            select(TriggerExecutionLogModel)
            .where(*filters)
            .order_by(
                TriggerExecutionLogModel.created_at.desc(),
                TriggerExecutionLogModel.sequence.desc(),
            )
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        return Page(tuple(r.to_dto() for r in rows), total, page, page_size)

    def query_events(
        self,
        event_type: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[SystemEvent]:
        page, page_size = self._page_bounds(page, page_size)
        filters = []
        if event_type is not None:
            filters.append(SystemEventModel.event_type == event_type)

        total = self.session.execute(
            select(func.count()).select_from(SystemEventModel).where(*filters)
        ).scalar_one()
        rows = self.session.execute(
            select(SystemEventModel)
            .where(*filters)
            .order_by(SystemEventModel.created_at.desc(), SystemEventModel.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        return Page(tuple(r.to_dto() for r in rows), total, page, page_size)
