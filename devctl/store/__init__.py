"""Store interface, in-memory store and watch combinators."""

from devctl.store.base import (
    NoEntry,
    Perm,
    Permissions,
    Store,
    StoreError,
    StoreOps,
    Transaction,
    TransactionConflict,
    WatchTimeout,
)
from devctl.store.memory import MemoryStore

__all__ = [
    "MemoryStore",
    "NoEntry",
    "Perm",
    "Permissions",
    "Store",
    "StoreError",
    "StoreOps",
    "Transaction",
    "TransactionConflict",
    "WatchTimeout",
]
