from .base import DuplicateKeyError, LedgerSession, LedgerStore
from .memory import InMemoryLedgerStore
from .orm import DjangoLedgerStore

__all__ = [
    "DuplicateKeyError",
    "LedgerSession",
    "LedgerStore",
    "InMemoryLedgerStore",
    "DjangoLedgerStore",
]
