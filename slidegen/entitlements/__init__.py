"""
Entitlement reconciliation.

Components:
- provider.py: Purchase provider interface, RevenueCat REST and mock implementations
- credits.py: Product -> creditable units mapping, package resolution
- sync.py: EntitlementSync (refresh, purchase, restore, pending credits)
"""

from slidegen.entitlements.credits import (
    creditable_units,
    extract_presentation_count,
    find_package,
)
from slidegen.entitlements.provider import (
    MockPurchaseProvider,
    ProductAlreadyOwnedError,
    ProductNotFoundError,
    ProviderUnavailableError,
    PurchaseCancelledError,
    PurchaseError,
    PurchaseProvider,
    RevenueCatProvider,
    StoreFront,
    StoreReceipt,
)
from slidegen.entitlements.sync import EntitlementSync

__all__ = [
    "EntitlementSync",
    "MockPurchaseProvider",
    "ProductAlreadyOwnedError",
    "ProductNotFoundError",
    "ProviderUnavailableError",
    "PurchaseCancelledError",
    "PurchaseError",
    "PurchaseProvider",
    "RevenueCatProvider",
    "StoreFront",
    "StoreReceipt",
    "creditable_units",
    "extract_presentation_count",
    "find_package",
]
