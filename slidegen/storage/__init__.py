"""
Storage layer.

Components:
- ledger_store.py: SQLite ledger documents, audit trail and pending credits
"""

from slidegen.storage.ledger_store import LedgerStore, LedgerStoreError

__all__ = ["LedgerStore", "LedgerStoreError"]
