"""
Purchase provider interface and implementations.

- PurchaseProvider: what entitlement reconciliation needs from the provider
- RevenueCatProvider: RevenueCat REST API (subscribers, receipts, offerings)
- MockPurchaseProvider: in-memory provider for offline mode and tests

The on-device store purchase (the part that produces a receipt) is a
StoreFront collaborator; this package never talks to an app store directly.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel

from slidegen.config import PurchasesConfig
from slidegen.models.entitlement import CustomerInfo, Package, Product, PurchaseResult
from slidegen.resilience.backoff import BackoffPolicy

logger = logging.getLogger(__name__)


class PurchaseError(Exception):
    """Base exception for purchase provider operations."""

    pass


class PurchaseCancelledError(PurchaseError):
    """User dismissed the store purchase sheet."""

    pass


class ProductAlreadyOwnedError(PurchaseError):
    """Store reports the product is already owned by this account."""

    pass


class ProductNotFoundError(PurchaseError):
    """No offering package matches the requested identifier."""

    pass


class ProviderUnavailableError(PurchaseError):
    """Provider unreachable or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StoreReceipt(BaseModel):
    """Proof of a store purchase, posted to the provider."""

    product_id: str
    fetch_token: str
    transaction_id: str | None = None


class StoreFront(ABC):
    """On-device store collaborator (purchase sheet, receipts)."""

    @abstractmethod
    async def get_products(self, product_ids: list[str]) -> list[Product]:
        """Store metadata (title, description, price) for product ids."""

    @abstractmethod
    async def purchase(self, product: Product) -> StoreReceipt:
        """
        Show the purchase sheet.

        Raises:
            PurchaseCancelledError: User cancelled
            ProductAlreadyOwnedError: Store says the product is already owned
        """

    @abstractmethod
    async def restore(self) -> list[StoreReceipt]:
        """All receipts the store knows for this account."""

    async def unsynced_receipts(self) -> list[StoreReceipt]:
        """Receipts not yet posted to the provider."""
        return []


class PurchaseProvider(ABC):
    """Narrow interface to the subscription/purchase provider."""

    @abstractmethod
    async def get_customer_info(self, app_user_id: str) -> CustomerInfo:
        pass

    @abstractmethod
    async def sync_purchases(self, app_user_id: str) -> CustomerInfo:
        """Push any unsynced store receipts, then return fresh customer info."""

    @abstractmethod
    async def get_packages(self, app_user_id: str) -> list[Package]:
        """Packages of the current offering."""

    @abstractmethod
    async def purchase_package(self, app_user_id: str, package: Package) -> PurchaseResult:
        """
        Purchase a package.

        Raises:
            PurchaseCancelledError, ProductAlreadyOwnedError, ProviderUnavailableError
        """

    @abstractmethod
    async def restore_purchases(self, app_user_id: str) -> CustomerInfo:
        pass


# ============================================================================
# REVENUECAT REST
# ============================================================================


def _is_active(expires_date: str | None, now: datetime) -> bool:
    """Null expiry means lifetime; otherwise active until the expiry instant."""
    if not expires_date:
        return True
    try:
        expires = datetime.fromisoformat(expires_date.replace("Z", "+00:00"))
    except ValueError:
        return False
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=UTC)
    return expires > now


def parse_subscriber(
    app_user_id: str, payload: dict[str, Any], now: datetime | None = None
) -> CustomerInfo:
    """Build CustomerInfo from a RevenueCat subscriber response."""
    now = now or datetime.now(UTC)
    subscriber = payload.get("subscriber") or {}

    active_entitlements: dict[str, str] = {}
    for entitlement_id, data in (subscriber.get("entitlements") or {}).items():
        if _is_active(data.get("expires_date"), now):
            active_entitlements[entitlement_id] = data.get("product_identifier", "")

    active_subscriptions: list[str] = []
    all_product_ids: list[str] = []
    for product_id, data in (subscriber.get("subscriptions") or {}).items():
        all_product_ids.append(product_id)
        if _is_active(data.get("expires_date"), now):
            active_subscriptions.append(product_id)

    transactions: list[dict] = []
    for product_id, purchases in (subscriber.get("non_subscriptions") or {}).items():
        all_product_ids.append(product_id)
        for purchase in purchases or []:
            transactions.append({"product_id": product_id, **purchase})

    return CustomerInfo(
        app_user_id=subscriber.get("original_app_user_id") or app_user_id,
        active_entitlements=active_entitlements,
        active_subscriptions=sorted(active_subscriptions),
        all_purchased_product_ids=sorted(set(all_product_ids)),
        non_subscription_transactions=transactions,
    )


class RevenueCatProvider(PurchaseProvider):
    """
    RevenueCat REST implementation.

    Endpoints:
        GET  /v1/subscribers/{app_user_id}
        GET  /v1/subscribers/{app_user_id}/offerings
        POST /v1/receipts
    """

    def __init__(
        self,
        config: PurchasesConfig,
        storefront: StoreFront | None = None,
        backoff: BackoffPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.storefront = storefront
        self.backoff = backoff or BackoffPolicy(operation="provider")
        self._http_client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    def _require_storefront(self) -> StoreFront:
        if self.storefront is None:
            raise ProviderUnavailableError("No storefront attached; purchases are unavailable")
        return self.storefront

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "X-Platform": self.config.platform,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        """
        Send one API request.

        Transport errors are retried; receipts are keyed by fetch token on the
        provider side, so replaying a POST cannot double-apply it.
        """
        if not self.config.api_key:
            raise ProviderUnavailableError(
                f"No purchases API key configured for platform {self.config.platform}"
            )

        url = f"{self.config.api_base_url.rstrip('/')}{path}"
        try:
            response = await self.backoff.call(
                self._http_client.request,
                method,
                url,
                json=json,
                headers=self.headers,
                exceptions=(httpx.TransportError,),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"Provider request failed: {e}") from e

        if not response.is_success:
            raise ProviderUnavailableError(
                f"Provider returned HTTP {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError("Provider returned a non-JSON body") from e

    async def get_customer_info(self, app_user_id: str) -> CustomerInfo:
        payload = await self._request("GET", f"/v1/subscribers/{app_user_id}")
        return parse_subscriber(app_user_id, payload)

    async def _post_receipt(
        self, app_user_id: str, receipt: StoreReceipt, is_restore: bool = False
    ) -> CustomerInfo:
        payload = await self._request(
            "POST",
            "/v1/receipts",
            json={
                "app_user_id": app_user_id,
                "fetch_token": receipt.fetch_token,
                "product_id": receipt.product_id,
                "is_restore": is_restore,
            },
        )
        return parse_subscriber(app_user_id, payload)

    async def sync_purchases(self, app_user_id: str) -> CustomerInfo:
        if self.storefront is not None:
            for receipt in await self.storefront.unsynced_receipts():
                await self._post_receipt(app_user_id, receipt)
        return await self.get_customer_info(app_user_id)

    async def get_packages(self, app_user_id: str) -> list[Package]:
        payload = await self._request("GET", f"/v1/subscribers/{app_user_id}/offerings")
        offerings = payload.get("offerings") or []
        if not offerings:
            return []

        # Current offering, else the first one
        current_id = payload.get("current_offering_id")
        offering = next(
            (o for o in offerings if o.get("identifier") == current_id),
            offerings[0],
        )

        raw_packages = offering.get("packages") or []
        product_ids = [p["platform_product_identifier"] for p in raw_packages]
        products = {}
        if self.storefront is not None:
            products = {p.identifier: p for p in await self.storefront.get_products(product_ids)}

        return [
            Package(
                identifier=p["identifier"],
                product=products.get(
                    p["platform_product_identifier"],
                    Product(identifier=p["platform_product_identifier"]),
                ),
                offering_identifier=offering.get("identifier", "default"),
            )
            for p in raw_packages
        ]

    async def purchase_package(self, app_user_id: str, package: Package) -> PurchaseResult:
        receipt = await self._require_storefront().purchase(package.product)
        customer_info = await self._post_receipt(app_user_id, receipt)
        return PurchaseResult(
            customer_info=customer_info,
            product_id=receipt.product_id,
            transaction_id=receipt.transaction_id or receipt.fetch_token,
        )

    async def restore_purchases(self, app_user_id: str) -> CustomerInfo:
        for receipt in await self._require_storefront().restore():
            await self._post_receipt(app_user_id, receipt, is_restore=True)
        return await self.get_customer_info(app_user_id)

    async def aclose(self) -> None:
        await self._http_client.aclose()


# ============================================================================
# MOCK
# ============================================================================


class MockPurchaseProvider(PurchaseProvider):
    """
    In-memory provider.

    Subscription products become active subscriptions backing the pro
    entitlement; other products are one-off (consumable) purchases and can be
    bought repeatedly.
    """

    def __init__(
        self,
        packages: list[Package] | None = None,
        subscription_product_ids: set[str] | None = None,
        entitlement_id: str = "pro_access",
    ):
        self.packages = list(packages or [])
        self.subscription_product_ids = set(subscription_product_ids or [])
        self.entitlement_id = entitlement_id

        self.cancel_next_purchase = False
        self.fail_with: Exception | None = None
        self.purchases: list[PurchaseResult] = []
        self.sync_calls = 0
        self._customers: dict[str, CustomerInfo] = {}

    def _customer(self, app_user_id: str) -> CustomerInfo:
        if app_user_id not in self._customers:
            self._customers[app_user_id] = CustomerInfo(app_user_id=app_user_id)
        return self._customers[app_user_id]

    def _raise_if_failing(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def set_customer_info(self, customer_info: CustomerInfo) -> None:
        self._customers[customer_info.app_user_id] = customer_info

    async def get_customer_info(self, app_user_id: str) -> CustomerInfo:
        self._raise_if_failing()
        return self._customer(app_user_id).model_copy(deep=True)

    async def sync_purchases(self, app_user_id: str) -> CustomerInfo:
        self._raise_if_failing()
        self.sync_calls += 1
        return await self.get_customer_info(app_user_id)

    async def get_packages(self, app_user_id: str) -> list[Package]:
        self._raise_if_failing()
        return list(self.packages)

    async def purchase_package(self, app_user_id: str, package: Package) -> PurchaseResult:
        self._raise_if_failing()
        if self.cancel_next_purchase:
            self.cancel_next_purchase = False
            raise PurchaseCancelledError("User cancelled the purchase")

        product_id = package.product.identifier
        customer = self._customer(app_user_id)
        if product_id in self.subscription_product_ids and customer.owns_product(product_id):
            raise ProductAlreadyOwnedError(f"{product_id} is already owned")

        if product_id in self.subscription_product_ids:
            customer.active_subscriptions = sorted({*customer.active_subscriptions, product_id})
            customer.active_entitlements = {
                **customer.active_entitlements,
                self.entitlement_id: product_id,
            }
        transaction_id = f"mock-txn-{uuid.uuid4().hex[:12]}"
        customer.non_subscription_transactions = [
            *customer.non_subscription_transactions,
            {"product_id": product_id, "id": transaction_id},
        ]
        customer.all_purchased_product_ids = sorted(
            {*customer.all_purchased_product_ids, product_id}
        )

        result = PurchaseResult(
            customer_info=customer.model_copy(deep=True),
            product_id=product_id,
            transaction_id=transaction_id,
        )
        self.purchases.append(result)
        logger.info(
            "Mock purchase completed",
            extra={"app_user_id": app_user_id, "product_id": product_id},
        )
        return result

    async def restore_purchases(self, app_user_id: str) -> CustomerInfo:
        return await self.sync_purchases(app_user_id)
