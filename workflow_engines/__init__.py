"""
Module: workflow_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines used by
    the workflow kernel services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel/domain/ and workflow_kernel.exceptions.
    MUST NOT import services, selectors, models or the database layer.

Invariants enforced:
    - Purity: engines never read the clock.  Deadlines are computed by the
      services from the injected Clock.
    - Determinism: identical inputs always produce identical plans.

Usage:
    from workflow_engines.conditions import evaluate_conditions, interpolate
    from workflow_engines.progression import plan_start, plan_decision
"""

from workflow_engines.conditions import (
    evaluate_conditions,
    get_value,
    interpolate,
    validate_conditions,
)
from workflow_engines.progression import (
    HistoryRecord,
    NewRequest,
    ProgressionPlan,
    RequestChange,
    ResolvedStep,
    actionable_requests,
    plan_cancel,
    plan_decision,
    plan_start,
)
from workflow_engines.tracer import traced_engine

__all__ = [
    # Conditions
    "evaluate_conditions",
    "validate_conditions",
    "interpolate",
    "get_value",
    # Progression
    "ResolvedStep",
    "NewRequest",
    "RequestChange",
    "HistoryRecord",
    "ProgressionPlan",
    "plan_start",
    "plan_decision",
    "plan_cancel",
    "actionable_requests",
    # Tracing
    "traced_engine",
]
