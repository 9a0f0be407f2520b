"""Database layer - engine, base classes, types."""

from costing_kernel.db.base import Base, UTCDateTime, UUIDString
from costing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from costing_kernel.db.types import Money, Quantity, ShortCode

__all__ = [
    "Base",
    "UUIDString",
    "UTCDateTime",
    "Money",
    "Quantity",
    "ShortCode",
    "init_engine_from_url",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
]
