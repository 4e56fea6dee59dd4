"""
SequenceService -- monotonic numbers from locked counter rows.

Responsibility:
    Hands out the next value of a named sequence.  The counter row is read
    ``SELECT ... FOR UPDATE`` and incremented inside the caller's
    transaction, so two writers can never receive the same value and a
    rolled-back transaction gives its value back.

Architecture position:
    Kernel > Services -- flush-only infrastructure.  Used by TriggerEngine
    to order execution logs.

Failure modes:
    - IntegrityError on concurrent creation of a missing counter is
      absorbed with a savepoint and the existing row is locked instead.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.sequence import SequenceCounterModel

logger = get_logger("services.sequence")


class SequenceService:
    """Allocates sequence values; the caller owns the transaction."""

    TRIGGER_EXECUTION_LOG = "trigger_execution_log"

    def __init__(self, session: Session):
        self.session = session

    def _locked_counter(self, name: str) -> SequenceCounterModel | None:
        return self.session.execute(
            select(SequenceCounterModel)
            .where(SequenceCounterModel.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, name: str) -> int:
        """Return the next value of ``name``, starting at 1."""
        counter = self._locked_counter(name)
        if counter is None:
            savepoint = self.session.begin_nested()
            try:
                self.session.add(SequenceCounterModel(name=name, current_value=1))
                self.session.flush()
            except IntegrityError:
                savepoint.rollback()
                logger.debug("sequence_counter_race_retry", extra={"sequence_name": name})
                counter = self._locked_counter(name)
                if counter is None:
                    raise
            else:
                savepoint.commit()
                return 1

        counter.current_value += 1
        self.session.flush()
        return counter.current_value
