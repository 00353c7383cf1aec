"""Database layer - engine, base classes and column types."""

from harvest_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from harvest_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from harvest_kernel.db.types import Money, PayloadHash, Sequence

__all__ = [
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Sequence",
    "PayloadHash",
]
