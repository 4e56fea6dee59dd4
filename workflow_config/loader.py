"""
Configuration Loader (``workflow_config.loader``).

Responsibility
--------------
Builds an ``EngineSettings`` from three layers, later layers winning:

1. the packaged ``defaults.yaml``;
2. an optional YAML file supplied by the deployment;
3. ``WORKFLOW_*`` environment variables (``WORKFLOW_DATABASE_URL``,
   ``WORKFLOW_LOCK_STRATEGY``, ...).

Invariants enforced
-------------------
* Unknown sections or keys are errors, never silently ignored.
* Values are coerced to the type of the field's default; a value that
  does not coerce raises ``ValueError`` naming the key.
* The result is validated before it is returned.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key, bad type or failed validation  -> ``ValueError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from workflow_config.schema import EngineSettings

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

ENV_PREFIX = "WORKFLOW_"

# (section, key) in YAML -> EngineSettings field
YAML_KEYS: dict[tuple[str, str], str] = {
    ("database", "url"): "database_url",
    ("database", "echo_sql"): "echo_sql",
    ("approvals", "lock_strategy"): "lock_strategy",
    ("approvals", "urgent_after_hours"): "urgent_after_hours",
    ("approvals", "reminder_after_hours"): "reminder_after_hours",
    ("approvals", "notify_approvers"): "notify_approvers",
    ("triggers", "action_timeout_seconds"): "action_timeout_seconds",
    ("triggers", "webhook_timeout_seconds"): "webhook_timeout_seconds",
    ("triggers", "workers"): "trigger_workers",
    ("notifications", "admin_email"): "admin_email",
}

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _field_defaults() -> dict[str, Any]:
    return {f.name: f.default for f in fields(EngineSettings)}


def coerce(name: str, value: Any) -> Any:
    """Coerce ``value`` to the type of field ``name``'s default."""
    default = _field_defaults()[name]
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(value, bool):
        raise ValueError(f"{name}: expected {type(default).__name__}, got a boolean")
    try:
        return type(default)(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"{name}: expected {type(default).__name__}, got {value!r}"
        ) from exc


def parse_settings_document(data: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a settings document into EngineSettings field values."""
    values: dict[str, Any] = {}
    for section, body in data.items():
        if body is None:
            continue
        if not isinstance(body, Mapping):
            raise ValueError(f"section {section!r} must be a mapping")
        for key, value in body.items():
            field_name = YAML_KEYS.get((section, key))
            if field_name is None:
                raise ValueError(f"unknown setting {section}.{key}")
            values[field_name] = coerce(field_name, value)
    return values


def settings_from_env(env: Mapping[str, str]) -> dict[str, Any]:
    """Field values taken from ``WORKFLOW_<FIELD>`` environment variables."""
    values: dict[str, Any] = {}
    for name in _field_defaults():
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = coerce(name, raw)
    return values


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> EngineSettings:
    """
    Build validated settings from defaults, an optional file and the environment.

    Args:
        path: Optional YAML overlay.
        env: Environment mapping; defaults to ``os.environ``.  Pass ``{}``
            to ignore the process environment.
    """
    env = os.environ if env is None else env
    settings = replace(EngineSettings(), **parse_settings_document(load_yaml_file(DEFAULTS_PATH)))
    if path is not None:
        settings = replace(settings, **parse_settings_document(load_yaml_file(Path(path))))
    settings = replace(settings, **settings_from_env(env))
    return settings.validate()
