"""
workflow_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_settings()``.  No other component reads configuration files or
    environment variables directly.

Architecture position:
    Configuration -- sits beside ``workflow_kernel``.  The kernel never
    imports from ``workflow_config``; ``workflow_services.runtime`` passes
    the values it needs into kernel constructors.

Failure modes:
    - ``FileNotFoundError`` -- the overlay named by ``WORKFLOW_CONFIG``
      does not exist.
    - ``ValueError`` -- unknown keys, bad types or failed validation.
"""

from __future__ import annotations

import logging
import os
import threading

from workflow_config.loader import load_settings
from workflow_config.schema import EngineSettings

_logger = logging.getLogger("workflow_kernel.config")

_lock = threading.Lock()
_cached: EngineSettings | None = None


def get_settings() -> EngineSettings:
    """Cached settings; the overlay file comes from ``WORKFLOW_CONFIG``."""
    global _cached
    with _lock:
        if _cached is None:
            _cached = load_settings(os.environ.get("WORKFLOW_CONFIG"))
            _logger.info(
                "settings_loaded",
                extra={
                    "lock_strategy": _cached.lock_strategy,
                    "trigger_workers": _cached.trigger_workers,
                    "action_timeout_seconds": _cached.action_timeout_seconds,
                },
            )
        return _cached


def reset_settings() -> None:
    """Drop the cached settings.  Test-only."""
    global _cached
    with _lock:
        _cached = None


__all__ = [
    "EngineSettings",
    "get_settings",
    "load_settings",
    "reset_settings",
]
