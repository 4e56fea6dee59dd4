"""
InstanceLockRegistry -- per-instance mutual exclusion.

Responsibility:
    Hands out one re-entrant lock per approval instance id so that every
    mutation of an instance (human decision, timer firing, bulk item,
    cancellation) runs in a single critical section.  Different instances
    never contend.

Architecture position:
    Kernel > Services -- concurrency infrastructure for ApprovalEngine.

Invariants enforced:
    - At most one thread mutates a given instance at a time (per process).
    - Entries are reference counted and dropped when the last holder
      leaves, so the registry does not grow with the number of instances
      ever touched.
    - Re-entrant: a thread already holding an instance lock may enter it
      again (timer callbacks executed inline by ManualTimerService).

Failure modes:
    - Cross-process exclusion is NOT provided here; the ``row`` lock
      strategy adds SELECT ... FOR UPDATE for multi-node deployments.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class InstanceLockRegistry:
    """Reference-counted registry of per-instance re-entrant locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[UUID, _Entry] = {}

    @contextmanager
    def hold(self, instance_id: UUID) -> Iterator[None]:
        """Enter the critical section for ``instance_id``."""
        with self._guard:
            entry = self._entries.get(instance_id)
            if entry is None:
                entry = self._entries[instance_id] = _Entry()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[instance_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
