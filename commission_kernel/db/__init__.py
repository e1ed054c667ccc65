"""Database layer - engine, base classes, types, and listeners."""

from commission_kernel.db.base import SYSTEM_ACTOR_ID, UUID, Base, TrackedBase, UUIDString
from commission_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    session_scope,
    transaction_scope,
)
from commission_kernel.db.types import Currency, MinorAmount

__all__ = [
    "get_engine",
    "get_session_factory",
    "session_scope",
    "transaction_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "SYSTEM_ACTOR_ID",
    "MinorAmount",
    "Currency",
]
