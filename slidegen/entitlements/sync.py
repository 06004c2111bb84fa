"""
Entitlement reconciliation between the purchase provider and the token ledger.

- refresh(): fail-open read. Provider errors keep the last-known entitlement
- purchase(): fail-closed write. Only a settled, non-owned purchase credits
- Credits that fail after a settled purchase go to the pending-credit queue
  and are replayed on the next refresh (the purchase id doubles as the
  credit endpoint's idempotency key)
"""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from slidegen.config import PurchasesConfig
from slidegen.entitlements.credits import creditable_units, find_package
from slidegen.entitlements.provider import (
    ProductAlreadyOwnedError,
    ProductNotFoundError,
    PurchaseCancelledError,
    PurchaseError,
    PurchaseProvider,
)
from slidegen.ledger.service import TokenLedger
from slidegen.models.entitlement import CustomerInfo, Entitlement, Package, Product
from slidegen.models.ledger import PendingCredit
from slidegen.observability.metrics import (
    set_pending_credits,
    track_entitlement_refresh,
    track_purchase,
)
from slidegen.storage.ledger_store import LedgerStore, LedgerStoreError

logger = logging.getLogger(__name__)

EntitlementListener = Callable[[Entitlement], None]


class EntitlementSync:
    """
    Keeps the user's entitlement in step with the provider and credits
    purchases to the ledger.
    """

    def __init__(
        self,
        provider: PurchaseProvider,
        ledger: TokenLedger,
        config: PurchasesConfig,
        store: LedgerStore | None = None,
    ):
        self.provider = provider
        self.ledger = ledger
        self.config = config
        self.store = store or ledger.store

        self._entitlement = Entitlement()
        self._customer_info: CustomerInfo | None = None
        self._packages: list[Package] = []
        self._listeners: list[EntitlementListener] = []

    @property
    def entitlement(self) -> Entitlement:
        """Last-known entitlement."""
        return self._entitlement

    @property
    def customer_info(self) -> CustomerInfo | None:
        return self._customer_info

    def on_change(self, listener: EntitlementListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Forget provider state (sign-out)."""
        self._customer_info = None
        self._packages = []
        self._set_entitlement(Entitlement())

    # ------------------------------------------------------------------
    # Reads (fail-open)
    # ------------------------------------------------------------------

    async def refresh(self, trigger: str = "foreground") -> Entitlement:
        """
        Sync with the provider and recompute the entitlement.

        Called on cold start, app foreground and sign-in. On provider error
        the last-known entitlement stays in effect. A successful refresh
        also replays pending credits.
        """
        user_id = self.ledger.user_id
        if user_id is None:
            logger.debug("Entitlement refresh skipped: no attached identity")
            return self._entitlement

        try:
            info = await self.provider.sync_purchases(user_id)
        except PurchaseError as e:
            logger.warning(
                f"Entitlement refresh failed, keeping last-known state: {e}",
                extra={"user_id": user_id, "trigger": trigger},
            )
            track_entitlement_refresh(trigger, False)
            return self._entitlement

        track_entitlement_refresh(trigger, True)
        self._apply_customer_info(info)
        await self.retry_pending_credits()
        return self._entitlement

    async def handle_provider_event(self, customer_info: CustomerInfo) -> Entitlement:
        """Push path: the provider reported new customer info."""
        user_id = self.ledger.user_id
        if user_id is not None and customer_info.app_user_id != user_id:
            logger.warning(
                "Ignoring provider event for another user",
                extra={"user_id": user_id, "event_user_id": customer_info.app_user_id},
            )
            return self._entitlement

        track_entitlement_refresh("provider_event", True)
        self._apply_customer_info(customer_info)
        return self._entitlement

    def is_paying_user(self) -> bool:
        """Any active entitlement or active subscription (last-known view)."""
        return self._entitlement.is_paying

    async def is_product_owned(self, product_id: str) -> bool:
        """Product backs an active subscription or entitlement. False on error."""
        user_id = self.ledger.user_id
        if user_id is None:
            return False
        try:
            info = await self.provider.get_customer_info(user_id)
        except PurchaseError as e:
            logger.warning(
                f"Ownership check failed: {e}",
                extra={"user_id": user_id, "product_id": product_id},
            )
            return False

        self._apply_customer_info(info)
        return info.owns_product(product_id)

    # ------------------------------------------------------------------
    # Writes (fail-closed)
    # ------------------------------------------------------------------

    async def purchase(self, product_id: str) -> bool:
        """
        Purchase a product and credit its units.

        Returns:
            bool: True if purchased and credited, or already owned (no second
                credit). False if cancelled, failed, or the credit could not
                be confirmed (queued for replay).
        """
        user_id = self.ledger.user_id
        if user_id is None:
            logger.warning("Purchase refused: no attached identity", extra={"product_id": product_id})
            track_purchase("error")
            return False

        if await self.is_product_owned(product_id):
            logger.info(
                "Product already owned, not crediting again",
                extra={"user_id": user_id, "product_id": product_id},
            )
            track_purchase("already_owned")
            return True

        try:
            package = await self._resolve_package(user_id, product_id)
            result = await self.provider.purchase_package(user_id, package)
        except PurchaseCancelledError:
            logger.info("Purchase cancelled", extra={"user_id": user_id, "product_id": product_id})
            track_purchase("cancelled")
            return False
        except ProductAlreadyOwnedError:
            logger.info(
                "Store reports product already owned",
                extra={"user_id": user_id, "product_id": product_id},
            )
            track_purchase("already_owned")
            await self.refresh(trigger="purchase")
            return True
        except PurchaseError as e:
            logger.error(
                f"Purchase failed: {e}",
                extra={"user_id": user_id, "product_id": product_id},
            )
            track_purchase("error")
            return False

        self._apply_customer_info(result.customer_info)

        units = creditable_units(package.product, self.config.legacy_credit_table)
        if units == 0:
            logger.warning(
                "Purchased product carries no creditable units",
                extra={"user_id": user_id, "product_id": package.product.identifier},
            )
            track_purchase("no_credit")
            return True

        purchase_id = result.transaction_id or f"{package.product.identifier}:{uuid.uuid4().hex}"
        if await self.ledger.credit(units, purchase_id=purchase_id):
            logger.info(
                "Purchase credited",
                extra={"user_id": user_id, "product_id": package.product.identifier, "units": units},
            )
            track_purchase("credited")
            return True

        await self._queue_pending_credit(user_id, purchase_id, units)
        track_purchase("credit_failed")
        return False

    async def restore_purchases(self) -> bool:
        """
        Restore store purchases. Never credits.

        Returns:
            bool: True iff an active entitlement or subscription exists afterwards
        """
        user_id = self.ledger.user_id
        if user_id is None:
            return False
        try:
            info = await self.provider.restore_purchases(user_id)
        except PurchaseError as e:
            logger.error(f"Restore failed: {e}", extra={"user_id": user_id})
            return False

        self._apply_customer_info(info)
        restored = self._entitlement.is_paying
        logger.info("Purchases restored", extra={"user_id": user_id, "restored": restored})
        return restored

    async def retry_pending_credits(self) -> int:
        """
        Replay queued credits for the attached user.

        Returns:
            int: Number of credits settled
        """
        user_id = self.ledger.user_id
        if user_id is None:
            return 0

        settled = 0
        try:
            pending = await self.store.list_pending_credits(user_id)
            for item in pending:
                if await self.ledger.credit(item.units, purchase_id=item.purchase_id):
                    await self.store.delete_pending_credit(item.user_id, item.purchase_id)
                    settled += 1
                else:
                    await self.store.record_pending_credit_failure(
                        item.user_id,
                        item.purchase_id,
                        self.ledger.last_credit_error or "credit failed",
                    )
            set_pending_credits(await self.store.count_pending_credits())
        except LedgerStoreError as e:
            logger.error(f"Pending credit replay failed: {e}", extra={"user_id": user_id})

        if settled:
            logger.info(
                "Pending credits settled",
                extra={"user_id": user_id, "settled": settled},
            )
        return settled

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_package(self, user_id: str, product_id: str) -> Package:
        packages = await self.provider.get_packages(user_id)
        self._packages = packages
        package = find_package(packages, product_id, self.config.package_id_mapping)
        if package is None:
            raise ProductNotFoundError(f"No offering package matches {product_id}")
        return package

    async def _queue_pending_credit(self, user_id: str, purchase_id: str, units: int) -> None:
        pending = PendingCredit(
            user_id=user_id,
            purchase_id=purchase_id,
            units=units,
            attempts=1,
            last_error=self.ledger.last_credit_error,
        )
        try:
            await self.store.enqueue_pending_credit(pending)
            set_pending_credits(await self.store.count_pending_credits())
        except LedgerStoreError as e:
            logger.critical(
                f"Could not queue pending credit: {e}",
                extra={"user_id": user_id, "purchase_id": purchase_id, "units": units},
            )
            return
        logger.error(
            "Credit failed after purchase, queued for replay",
            extra={"user_id": user_id, "purchase_id": purchase_id, "units": units},
        )

    def _product_for(self, product_id: str) -> Product:
        for package in self._packages:
            if package.product.identifier == product_id:
                return package.product
        return Product(identifier=product_id)

    def _apply_customer_info(self, info: CustomerInfo) -> None:
        self._customer_info = info

        pro_product = info.active_entitlements.get(self.config.pro_entitlement_id)
        active_product_id = pro_product or next(iter(info.active_entitlements.values()), None)
        if not active_product_id and info.active_subscriptions:
            active_product_id = info.active_subscriptions[0]

        units = 0
        if active_product_id:
            units = creditable_units(
                self._product_for(active_product_id), self.config.legacy_credit_table
            )

        self._set_entitlement(
            Entitlement(
                is_pro=pro_product is not None or info.has_active_subscription,
                active_product_id=active_product_id or None,
                creditable_units=units,
                active_entitlements=sorted(info.active_entitlements),
                active_subscriptions=list(info.active_subscriptions),
                refreshed_at=datetime.now(UTC),
            )
        )

    def _set_entitlement(self, entitlement: Entitlement) -> None:
        self._entitlement = entitlement
        for listener in list(self._listeners):
            try:
                listener(entitlement)
            except Exception as e:
                logger.error(f"Entitlement listener failed: {e}", exc_info=True)
