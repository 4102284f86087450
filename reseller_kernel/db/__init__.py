"""Database layer - engine, base classes, types, and immutability guards."""

from reseller_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from reseller_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from reseller_kernel.db.types import UTCDateTime

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "UTCDateTime",
]
