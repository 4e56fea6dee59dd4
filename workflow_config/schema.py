"""
Configuration Schema (``workflow_config.schema``).

Responsibility
--------------
Frozen dataclass describing every engine setting, plus its validation.
Parsing lives in ``workflow_config.loader``.

Invariants enforced
-------------------
* Every field has a default, so an empty overlay is a valid overlay.
* ``validate()`` rejects values the engine cannot run with, raising
  ``ValueError`` naming the offending field.
"""

from __future__ import annotations

from dataclasses import dataclass

LOCK_STRATEGIES: frozenset[str] = frozenset({"in_process", "row"})


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the approval and trigger engines."""

    database_url: str = "sqlite:///workflow.db"
    echo_sql: bool = False
    lock_strategy: str = "in_process"
    action_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 5.0
    urgent_after_hours: int = 24
    reminder_after_hours: int = 48
    trigger_workers: int = 4
    admin_email: str = "admin@example.com"
    notify_approvers: bool = True

    def validate(self) -> EngineSettings:
        """Return self, or raise ValueError describing the first bad field."""
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.lock_strategy not in LOCK_STRATEGIES:
            raise ValueError(
                f"lock_strategy must be one of {sorted(LOCK_STRATEGIES)}, "
                f"got {self.lock_strategy!r}"
            )
        if self.lock_strategy == "row" and self.database_url.startswith("sqlite"):
            raise ValueError("lock_strategy 'row' requires PostgreSQL")
        for name in ("action_timeout_seconds", "webhook_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.webhook_timeout_seconds > self.action_timeout_seconds:
            raise ValueError(
                "webhook_timeout_seconds must not exceed action_timeout_seconds"
            )
        for name in ("urgent_after_hours", "reminder_after_hours", "trigger_workers"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        return self
