"""
Data models for ledger balances, generation tasks and entitlements.
"""

from slidegen.models.entitlement import (
    CustomerInfo,
    Entitlement,
    Package,
    Product,
    PurchaseResult,
)
from slidegen.models.ledger import DEFAULT_BALANCE, LedgerEntry, PendingCredit, TokenBalance
from slidegen.models.task import (
    USER_MESSAGES,
    FailureReason,
    GenerationTask,
    JobState,
    JobStatus,
    TaskOutcome,
    TaskStatus,
)

__all__ = [
    "CustomerInfo",
    "DEFAULT_BALANCE",
    "Entitlement",
    "FailureReason",
    "GenerationTask",
    "JobState",
    "JobStatus",
    "LedgerEntry",
    "Package",
    "PendingCredit",
    "Product",
    "PurchaseResult",
    "TaskOutcome",
    "TaskStatus",
    "TokenBalance",
    "USER_MESSAGES",
]
