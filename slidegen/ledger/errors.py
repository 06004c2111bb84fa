"""
Ledger exception hierarchy.

Public TokenLedger methods report failure as False and log the underlying
exception; these types are raised by the collaborators underneath.
"""


class LedgerError(Exception):
    """Base exception for ledger operations."""

    pass


class InsufficientBalanceError(LedgerError):
    """Balance cannot cover the requested debit."""

    def __init__(self, user_id: str, requested: int, available: int):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for {user_id}: requested={requested}, available={available}"
        )


class LedgerWriteError(LedgerError):
    """Backing store rejected or failed a write."""

    pass


class CreditFailedError(LedgerError):
    """Credit endpoint did not confirm the credit."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class NoActiveSessionError(LedgerError):
    """No authenticated identity is attached to the ledger."""

    pass
