"""Database layer - engine and base classes."""

from market_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from market_kernel.db.engine import create_tables, get_engine, get_session, session_scope

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "session_scope",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
