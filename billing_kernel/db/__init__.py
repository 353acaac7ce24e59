"""Database layer - engine, base classes and immutability guards."""

from billing_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from billing_kernel.db.engine import (
    create_sqlite_engine,
    create_tables,
    get_engine,
    get_session_factory,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "create_sqlite_engine",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
