"""
Entitlement and purchase data models.

Mirrors the subset of the purchase provider's customer info that the
reconciliation layer needs.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Product(BaseModel):
    """A purchasable store product."""

    identifier: str
    title: str = ""
    description: str = ""
    price_string: str | None = None


class Package(BaseModel):
    """An offering package wrapping a product (e.g. "$rc_monthly")."""

    identifier: str
    product: Product
    offering_identifier: str = "default"


class CustomerInfo(BaseModel):
    """Provider's view of a customer's purchases."""

    app_user_id: str
    # entitlement identifier -> product identifier backing it
    active_entitlements: dict[str, str] = Field(default_factory=dict)
    active_subscriptions: list[str] = Field(default_factory=list)
    all_purchased_product_ids: list[str] = Field(default_factory=list)
    non_subscription_transactions: list[dict] = Field(default_factory=list)

    @property
    def has_active_entitlement(self) -> bool:
        return bool(self.active_entitlements)

    @property
    def has_active_subscription(self) -> bool:
        return bool(self.active_subscriptions)

    def owns_product(self, product_id: str) -> bool:
        """True if the product backs an active subscription or entitlement."""
        if product_id in self.active_subscriptions:
            return True
        return product_id in self.active_entitlements.values()


class PurchaseResult(BaseModel):
    """Result of a successful provider purchase."""

    customer_info: CustomerInfo
    product_id: str
    transaction_id: str | None = None


class Entitlement(BaseModel):
    """Reconciled entitlement state for the current user."""

    is_pro: bool = False
    active_product_id: str | None = None
    creditable_units: int = Field(default=0, ge=0)
    active_entitlements: list[str] = Field(default_factory=list)
    active_subscriptions: list[str] = Field(default_factory=list)
    refreshed_at: datetime | None = None

    @property
    def is_paying(self) -> bool:
        return bool(self.active_entitlements or self.active_subscriptions)
