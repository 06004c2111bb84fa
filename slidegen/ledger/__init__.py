"""
Token ledger.

Components:
- service.py: TokenLedger (balance cache, debit/credit, subscriptions)
- credit_client.py: Trusted credit endpoint client (+ offline mock)
- errors.py: Ledger exception hierarchy
"""

from slidegen.ledger.credit_client import CreditClient, MockCreditClient
from slidegen.ledger.errors import (
    CreditFailedError,
    InsufficientBalanceError,
    LedgerError,
    LedgerWriteError,
    NoActiveSessionError,
)
from slidegen.ledger.service import TokenLedger

__all__ = [
    "CreditClient",
    "CreditFailedError",
    "InsufficientBalanceError",
    "LedgerError",
    "LedgerWriteError",
    "MockCreditClient",
    "NoActiveSessionError",
    "TokenLedger",
]
