"""
ActionDispatcher -- time-bounded execution of trigger actions.

Responsibility:
    Routes an action (send_email, create_task, update_status, webhook,
    notify) to its registered handler, bounds the call with a timeout, and
    reports the result as a ``DispatchOutcome``.  Also owns the per-action
    configuration contract used when triggers are created.

Architecture position:
    Kernel > Services -- imperative shell.  Concrete handlers live outside
    the kernel (``workflow_services.handlers``) and are injected.

Invariants enforced:
    - Exceptions never escape dispatch(): ActionSkipped becomes ``skipped``,
      a timeout or any other exception becomes ``failed``.
    - No retries.  One dispatch is at most one handler call.
    - Unknown action types are a caller error (UnknownActionTypeError).

Failure modes:
    - A handler that ignores its own timeout keeps a worker busy after
      dispatch() has already reported ``failed``; size the pool for it.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Protocol
from urllib.parse import urlparse

from workflow_kernel.domain.triggers import ActionResult, ActionType, DispatchOutcome
from workflow_kernel.exceptions import (
    ActionSkipped,
    ActionTimeoutError,
    InvalidActionConfigError,
    UnknownActionTypeError,
)
from workflow_kernel.logging_config import get_logger

logger = get_logger("services.dispatcher")


class ActionHandler(Protocol):
    """Performs one action.

    Return normally on success, raise ``ActionSkipped`` when there is
    nothing to do, raise anything else on failure.
    """

    def execute(self, config: Mapping[str, Any], context: Mapping[str, Any]) -> None:
        ...


# =========================================================================
# Configuration contract
# =========================================================================

REQUIRED_CONFIG: dict[ActionType, tuple[str, ...]] = {
    ActionType.SEND_EMAIL: ("template", "to"),
    ActionType.CREATE_TASK: ("title",),
    ActionType.UPDATE_STATUS: ("entity", "status"),
    ActionType.WEBHOOK: ("url",),
    ActionType.NOTIFY: ("channel", "message"),
}

WEBHOOK_METHODS: frozenset[str] = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
STATUS_ENTITIES: frozenset[str] = frozenset({"project", "invoice", "client"})


def parse_action_type(action_type: ActionType | str) -> ActionType:
    """Coerce to ActionType or raise UnknownActionTypeError."""
    if isinstance(action_type, ActionType):
        return action_type
    try:
        return ActionType(action_type)
    except ValueError:
        raise UnknownActionTypeError(str(action_type)) from None


def validate_action_config(action_type: ActionType | str, config: Any) -> ActionType:
    """Check ``config`` carries what the action needs.

    Raises:
        UnknownActionTypeError: action type is not in the catalog.
        InvalidActionConfigError: missing or malformed keys.
    """
    action = parse_action_type(action_type)
    if not isinstance(config, Mapping):
        raise InvalidActionConfigError(action.value, "must be an object")

    missing = [
        key for key in REQUIRED_CONFIG[action]
        if not isinstance(config.get(key), str) or not config.get(key).strip()
    ]
    if missing:
        raise InvalidActionConfigError(
            action.value, f"missing required key(s): {', '.join(missing)}",
        )

    if action == ActionType.WEBHOOK:
        parsed = urlparse(config["url"])
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidActionConfigError(action.value, "url must be http(s)")
        method = str(config.get("method", "POST")).upper()
        if method not in WEBHOOK_METHODS:
            raise InvalidActionConfigError(action.value, f"unsupported method {method}")
        headers = config.get("headers")
        if headers is not None and not isinstance(headers, Mapping):
            raise InvalidActionConfigError(action.value, "headers must be an object")
    elif action == ActionType.UPDATE_STATUS:
        if config["entity"] not in STATUS_ENTITIES:
            raise InvalidActionConfigError(
                action.value, f"entity must be one of {sorted(STATUS_ENTITIES)}",
            )
    elif action == ActionType.CREATE_TASK:
        due_days = config.get("due_days")
        if due_days is not None and (
            isinstance(due_days, bool) or not isinstance(due_days, int) or due_days < 0
        ):
            raise InvalidActionConfigError(action.value, "due_days must be a non-negative integer")
    return action


# =========================================================================
# Dispatcher
# =========================================================================


class ActionDispatcher:
    """Registry of handlers plus a bounded worker pool."""

    def __init__(
        self,
        handlers: Mapping[ActionType, ActionHandler] | None = None,
        timeout_seconds: float = 10.0,
        max_workers: int = 8,
    ):
        self._handlers: dict[ActionType, ActionHandler] = dict(handlers or {})
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="action",
        )

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def handler_for(self, action_type: ActionType) -> ActionHandler | None:
        return self._handlers.get(action_type)

    def dispatch(
        self,
        action_type: ActionType | str,
        config: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> DispatchOutcome:
        """Run one action and report how it went.  Never raises for handler errors.

        Raises:
            UnknownActionTypeError: the action type is not in the catalog.
        """
        action = parse_action_type(action_type)
        started = time.perf_counter()

        def _elapsed() -> float:
            return round((time.perf_counter() - started) * 1000, 3)

        handler = self._handlers.get(action)
        if handler is None:
            return self._report(action, DispatchOutcome(
                ActionResult.FAILED, f"no handler registered for {action.value}", _elapsed(),
            ))

        try:
            validate_action_config(action, config)
        except InvalidActionConfigError as exc:
            return self._report(action, DispatchOutcome(ActionResult.FAILED, str(exc), _elapsed()))

        future = self._executor.submit(handler.execute, dict(config), dict(context))
        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            error = ActionTimeoutError(action.value, self.timeout_seconds)
            outcome = DispatchOutcome(ActionResult.FAILED, str(error), _elapsed())
        except ActionSkipped as exc:
            outcome = DispatchOutcome(ActionResult.SKIPPED, exc.reason, _elapsed())
        except Exception as exc:
            outcome = DispatchOutcome(
                ActionResult.FAILED, str(exc) or type(exc).__name__, _elapsed(),
            )
        else:
            outcome = DispatchOutcome(ActionResult.SUCCESS, None, _elapsed())
        return self._report(action, outcome)

    def _report(self, action: ActionType, outcome: DispatchOutcome) -> DispatchOutcome:
        level = "warning" if outcome.result == ActionResult.FAILED else "info"
        getattr(logger, level)(
            "action_dispatched",
            extra={
                "action_type": action.value,
                "result": outcome.result.value,
                "duration_ms": outcome.duration_ms,
                "error": outcome.error_message,
            },
        )
        return outcome

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
