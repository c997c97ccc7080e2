from app.ledger.store.base import DuplicateRecordError, LedgerStore
from app.ledger.store.memory import InMemoryLedgerStore

__all__ = ["DuplicateRecordError", "LedgerStore", "InMemoryLedgerStore"]
