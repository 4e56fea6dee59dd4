"""
Tests for SequenceService: locked counter rows for execution-log ordering.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import select

from workflow_kernel.db.engine import session_scope
from workflow_kernel.models.sequence import SequenceCounterModel
from workflow_kernel.services.sequence_service import SequenceService

LOGS = SequenceService.TRIGGER_EXECUTION_LOG


def allocate(session_factory, name=LOGS):
    with session_scope(session_factory) as session:
        return SequenceService(session).next_value(name)


class TestNextValue:

    def test_starts_at_one_and_increments(self, session_factory):
        assert [allocate(session_factory) for _ in range(3)] == [1, 2, 3]

    def test_names_are_independent(self, session_factory):
        allocate(session_factory)
        allocate(session_factory)
        assert allocate(session_factory, "other") == 1

    def test_rollback_returns_value(self, session_factory):
        allocate(session_factory)
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                SequenceService(session).next_value(LOGS)
                raise RuntimeError("abort")

        assert allocate(session_factory) == 2

    def test_one_counter_row_per_name(self, session_factory):
        for _ in range(4):
            allocate(session_factory)
        with session_scope(session_factory) as session:
            rows = session.execute(select(SequenceCounterModel)).scalars().all()
        assert [(r.name, r.current_value) for r in rows] == [(LOGS, 4)]


@pytest.mark.slow_locks
class TestConcurrentAllocation:

    def test_threads_never_share_a_value(self, session_factory):
        workers = 6
        barrier = Barrier(workers)

        def _allocate_many():
            barrier.wait()
            return [allocate(session_factory) for _ in range(5)]

        with ThreadPoolExecutor(max_workers=workers) as pool:
            batches = list(pool.map(lambda _: _allocate_many(), range(workers)))

        values = sorted(v for batch in batches for v in batch)
        assert values == list(range(1, workers * 5 + 1))
