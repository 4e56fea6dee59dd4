"""Database layer - engine, base classes, column types and immutability."""

from workflow_kernel.db.base import UUID, Base, TimestampedBase, UUIDString
from workflow_kernel.db.engine import (
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from workflow_kernel.db.types import UTCDateTime, utc

__all__ = [
    "build_engine",
    "build_session_factory",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "Base",
    "TimestampedBase",
    "UUIDString",
    "UUID",
    "UTCDateTime",
    "utc",
]
