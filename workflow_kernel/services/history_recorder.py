"""
HistoryRecorder -- append-only approval audit trail.

Responsibility:
    Writes ``ApprovalHistoryModel`` rows for an instance in the order the
    progression engine produced them.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only: the caller owns
    the transaction, so history is committed atomically with the state
    change it describes.

Invariants enforced:
    - Append-only: rows are never updated or deleted (ORM listeners in
      models/approval.py reject both).
    - Total order per instance: ``sequence`` increases by one per entry,
      so entries written at the same clock instant keep their order.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from workflow_engines.progression import HistoryRecord
from workflow_kernel.domain.approval import ApprovalHistoryEntry
from workflow_kernel.domain.clock import Clock
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.approval import ApprovalHistoryModel

logger = get_logger("services.history")


class HistoryRecorder:
    """Appends approval history entries."""

    def __init__(self, session: Session, clock: Clock):
        self.session = session
        self.clock = clock

    def _next_sequence(self, instance_id: UUID) -> int:
        current = self.session.execute(
            select(func.max(ApprovalHistoryModel.sequence)).where(
                ApprovalHistoryModel.instance_id == instance_id,
            )
        ).scalar()
        return 0 if current is None else current + 1

    def record(
        self,
        instance_id: UUID,
        records: Iterable[HistoryRecord],
    ) -> list[ApprovalHistoryEntry]:
        """Append ``records`` in order and flush."""
        sequence = self._next_sequence(instance_id)
        now = self.clock.now()
        rows: list[ApprovalHistoryModel] = []
        for record in records:
            row = ApprovalHistoryModel(
                instance_id=instance_id,
                step_id=record.step_id,
                action=record.action.value,
                actor=record.actor,
                comment=record.comment,
                created_at=now,
                sequence=sequence,
            )
            self.session.add(row)
            rows.append(row)
            sequence += 1
        self.session.flush()

        for row in rows:
            logger.debug(
                "approval_history_recorded",
                extra={
                    "instance_id": str(instance_id),
                    "action": row.action,
                    "actor": row.actor,
                },
            )
        return [row.to_dto() for row in rows]
