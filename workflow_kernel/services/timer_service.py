"""
Timer services -- one-shot auto-approval callbacks.

Responsibility:
    Schedule a callback for a request id at a deadline, and cancel it when
    the request leaves ``pending`` first.  Two implementations:

    ThreadingTimerService
        One ``threading.Timer`` per request.  Used by the runtime.
    ManualTimerService
        Records deadlines and fires those that are due when
        ``fire_due()`` is called.  Used by tests and by cron-style
        deployments that poll instead of holding threads.

Architecture position:
    Kernel > Services -- infrastructure.  Knows nothing about approvals;
    the callback it is given (ApprovalEngine's timer handler) enters the
    per-instance critical section itself.

Invariants enforced:
    - schedule() is idempotent per request id: scheduling again replaces
      the previous deadline.
    - cancel() of an unknown or already-fired id is a no-op.
    - A callback fires at most once per schedule().

Failure modes:
    - Exceptions escaping a callback are logged and swallowed so one bad
      timer cannot kill the timer thread or a fire_due() sweep.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from workflow_kernel.domain.clock import Clock
from workflow_kernel.logging_config import get_logger

logger = get_logger("services.timers")

TimerCallback = Callable[[UUID], None]


class TimerService(ABC):
    """Schedules one-shot callbacks keyed by request id."""

    @abstractmethod
    def schedule(self, request_id: UUID, due_at: datetime, callback: TimerCallback) -> None:
        ...

    @abstractmethod
    def cancel(self, request_id: UUID) -> None:
        ...

    @abstractmethod
    def cancel_all(self) -> None:
        ...

    @abstractmethod
    def pending(self) -> dict[UUID, datetime]:
        """Deadlines currently scheduled."""

    def _run(self, request_id: UUID, callback: TimerCallback) -> None:
        try:
            callback(request_id)
        except Exception:
            logger.exception(
                "timer_callback_failed",
                extra={"request_id": str(request_id)},
            )


class ThreadingTimerService(TimerService):
    """``threading.Timer`` per request."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self._lock = threading.Lock()
        self._timers: dict[UUID, tuple[datetime, threading.Timer]] = {}

    def schedule(self, request_id: UUID, due_at: datetime, callback: TimerCallback) -> None:
        delay = max(0.0, (due_at - self.clock.now()).total_seconds())
        timer = threading.Timer(delay, self._fire, args=(request_id, callback))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(request_id, None)
            self._timers[request_id] = (due_at, timer)
        if previous is not None:
            previous[1].cancel()
        timer.start()
        logger.debug(
            "timer_scheduled",
            extra={"request_id": str(request_id), "due_at": due_at, "delay_seconds": delay},
        )

    def _fire(self, request_id: UUID, callback: TimerCallback) -> None:
        with self._lock:
            entry = self._timers.get(request_id)
            if entry is None or entry[1] is not threading.current_thread():
                return
            del self._timers[request_id]
        self._run(request_id, callback)

    def cancel(self, request_id: UUID) -> None:
        with self._lock:
            entry = self._timers.pop(request_id, None)
        if entry is not None:
            entry[1].cancel()
            logger.debug("timer_cancelled", extra={"request_id": str(request_id)})

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._timers.values())
            self._timers.clear()
        for _, timer in entries:
            timer.cancel()

    def pending(self) -> dict[UUID, datetime]:
        with self._lock:
            return {rid: due for rid, (due, _) in self._timers.items()}


class ManualTimerService(TimerService):
    """Deadline book that fires only when told to."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self._lock = threading.Lock()
        self._due: dict[UUID, tuple[datetime, TimerCallback]] = {}

    def schedule(self, request_id: UUID, due_at: datetime, callback: TimerCallback) -> None:
        with self._lock:
            self._due[request_id] = (due_at, callback)

    def cancel(self, request_id: UUID) -> None:
        with self._lock:
            self._due.pop(request_id, None)

    def cancel_all(self) -> None:
        with self._lock:
            self._due.clear()

    def pending(self) -> dict[UUID, datetime]:
        with self._lock:
            return {rid: due for rid, (due, _) in self._due.items()}

    def fire_due(self, now: datetime | None = None) -> int:
        """Fire every callback whose deadline is at or before ``now``.

        Returns:
            Number of callbacks fired.
        """
        now = now or self.clock.now()
        with self._lock:
            due = sorted(
                ((at, rid, cb) for rid, (at, cb) in self._due.items() if at <= now),
                key=lambda item: (item[0], str(item[1])),
            )
            for _, rid, _ in due:
                del self._due[rid]
        for _, rid, callback in due:
            self._run(rid, callback)
        return len(due)
