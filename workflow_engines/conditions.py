"""
workflow_engines.conditions -- Pure trigger condition evaluation.

Responsibility:
    Decide whether an event context satisfies a trigger's conditions,
    validate condition documents before they are stored, and interpolate
    ``{{dotted.path}}`` placeholders in action templates.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel.exceptions.

Invariants enforced:
    - Fail-closed: a path missing from the context never matches, whatever
      the operator (except ``$exists: false``).
    - Conjunction: every key of the conditions mapping must hold.
    - No conditions (None or empty) match every context.
    - Type strictness: booleans never compare equal to numbers, and the
      ordering operators only accept real numbers.

Condition grammar:
    {"status": "active"}                      equality on a dotted path
    {"invoice.amount_gt": 1000}               suffix operators _gt, _lt,
    {"invoice.amount_lt": 5000}               and _contains (substring)
    {"client.name_contains": "Acme"}
    {"invoice.amount": {"$gte": 1000}}        operator objects: $eq, $ne,
                                              $gt, $gte, $lt, $lte, $in,
                                              $nin, $contains, $exists

Failure modes:
    - InvalidConditionsError from validate_conditions() for malformed
      documents.  evaluate_conditions() never raises on well-formed input;
      a type mismatch evaluates to False.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from workflow_kernel.exceptions import InvalidConditionsError

_MISSING = object()

SUFFIX_OPERATORS: tuple[str, ...] = ("_gt", "_lt", "_contains")

OPERATORS: frozenset[str] = frozenset({
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$contains", "$exists",
})

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")


# =========================================================================
# Path lookup
# =========================================================================


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path; return the module sentinel when absent.

    A top-level key containing dots wins over traversal, so contexts built
    from flat dictionaries (``{"invoice.status": "paid"}``) still resolve.
    """
    if path in context:
        return context[path]
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def get_value(context: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Public lookup: the value at ``path`` or ``default`` when absent."""
    value = resolve_path(context, path)
    return default if value is _MISSING else value


# =========================================================================
# Comparison helpers
# =========================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if type(actual) is not type(expected):
        # Allow list/tuple comparisons and str subclasses
        if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
            return list(actual) == list(expected)
        if isinstance(actual, str) and isinstance(expected, str):
            return actual == expected
        if isinstance(actual, Mapping) and isinstance(expected, Mapping):
            return dict(actual) == dict(expected)
        return False
    return actual == expected


def _greater(actual: Any, expected: Any) -> bool:
    return _is_number(actual) and _is_number(expected) and actual > expected


def _less(actual: Any, expected: Any) -> bool:
    return _is_number(actual) and _is_number(expected) and actual < expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple)):
        return any(_equal(item, expected) for item in actual)
    return False


def _member(actual: Any, options: Any) -> bool:
    return any(_equal(actual, option) for option in options)


# =========================================================================
# Evaluation
# =========================================================================


def _apply_operator(op: str, actual: Any, operand: Any) -> bool:
    if op == "$exists":
        return (actual is not _MISSING) == bool(operand)
    if actual is _MISSING:
        return False
    if op == "$eq":
        return _equal(actual, operand)
    if op == "$ne":
        return not _equal(actual, operand)
    if op == "$gt":
        return _greater(actual, operand)
    if op == "$gte":
        return _greater(actual, operand) or (_is_number(actual) and _equal(actual, operand))
    if op == "$lt":
        return _less(actual, operand)
    if op == "$lte":
        return _less(actual, operand) or (_is_number(actual) and _equal(actual, operand))
    if op == "$in":
        return _member(actual, operand)
    if op == "$nin":
        return not _member(actual, operand)
    if op == "$contains":
        return _contains(actual, operand)
    raise InvalidConditionsError(f"unknown operator {op!r}")


def _is_operator_object(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and bool(value)
        and all(isinstance(k, str) and k.startswith("$") for k in value)
    )


def _split_suffix(key: str) -> tuple[str, str | None]:
    for suffix in SUFFIX_OPERATORS:
        if key.endswith(suffix) and len(key) > len(suffix):
            return key[: -len(suffix)], suffix
    return key, None


def _holds(key: str, expected: Any, context: Mapping[str, Any]) -> bool:
    if _is_operator_object(expected):
        actual = resolve_path(context, key)
        return all(_apply_operator(op, actual, operand) for op, operand in expected.items())

    path, suffix = _split_suffix(key)
    actual = resolve_path(context, path)
    if actual is _MISSING:
        return False
    if suffix == "_gt":
        return _greater(actual, expected)
    if suffix == "_lt":
        return _less(actual, expected)
    if suffix == "_contains":
        return _contains(actual, expected)
    return _equal(actual, expected)


def evaluate_conditions(
    conditions: Mapping[str, Any] | None,
    context: Mapping[str, Any],
) -> bool:
    """True when every condition holds in ``context``.

    Args:
        conditions: The trigger's condition document, or None.
        context: The event context the trigger was fired with.

    Returns:
        True for no conditions; otherwise the conjunction of all keys.
    """
    if not conditions:
        return True
    return all(_holds(key, expected, context) for key, expected in conditions.items())


# =========================================================================
# Validation
# =========================================================================


def validate_conditions(conditions: Any) -> None:
    """Reject condition documents the evaluator cannot interpret.

    Raises:
        InvalidConditionsError: non-mapping document, blank key, unknown
            ``$`` operator, or an operand of the wrong shape.
    """
    if conditions is None:
        return
    if not isinstance(conditions, Mapping):
        raise InvalidConditionsError("conditions must be an object")

    for key, expected in conditions.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidConditionsError("condition keys must be non-empty strings")
        if any(not part for part in key.split(".")):
            raise InvalidConditionsError("empty path segment", key=key)

        if isinstance(expected, Mapping) and any(
            isinstance(k, str) and k.startswith("$") for k in expected
        ):
            _validate_operator_object(key, expected)
            continue

        _, suffix = _split_suffix(key)
        if suffix in ("_gt", "_lt") and not _is_number(expected):
            raise InvalidConditionsError(f"{suffix} expects a number", key=key)
        if suffix == "_contains" and not isinstance(expected, str):
            raise InvalidConditionsError("_contains expects a string", key=key)


def _validate_operator_object(key: str, expected: Mapping[str, Any]) -> None:
    if not expected:
        raise InvalidConditionsError("empty operator object", key=key)
    for op, operand in expected.items():
        if op not in OPERATORS:
            raise InvalidConditionsError(f"unknown operator {op!r}", key=key)
        if op in ("$gt", "$gte", "$lt", "$lte") and not _is_number(operand):
            raise InvalidConditionsError(f"{op} expects a number", key=key)
        if op in ("$in", "$nin") and not isinstance(operand, (list, tuple)):
            raise InvalidConditionsError(f"{op} expects a list", key=key)
        if op == "$exists" and not isinstance(operand, bool):
            raise InvalidConditionsError("$exists expects a boolean", key=key)


# =========================================================================
# Interpolation
# =========================================================================


def interpolate(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{{dotted.path}}`` placeholders with context values.

    Unknown paths are left untouched so a broken template is visible in
    the rendered output rather than silently blanked.
    """
    if not template:
        return template

    def _replace(match: re.Match[str]) -> str:
        value = resolve_path(context, match.group(1))
        if value is _MISSING or value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template)
