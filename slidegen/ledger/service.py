"""
Token ledger: the single source of truth for a user's balance.

Responsibilities:
- Serve the last-known balance without blocking (live cache fed by the store)
- Fan out balance changes to subscribers
- Debit units atomically against the store (never decided from the cache)
- Credit units through the trusted credit endpoint, then mirror locally
- Session lifecycle: attach on sign-in, detach and reset on sign-out

Failure semantics:
- Debit and credit report failure as False and leave the previous balance in
  effect; the store stays authoritative
- No deduplication here: callers own exactly-once (the task tracker's
  settled flag, the credit endpoint's idempotency key)
"""

import logging
from collections.abc import Callable

from slidegen.auth.identity import IdentityProvider
from slidegen.config import LedgerConfig
from slidegen.ledger.credit_client import CreditClient
from slidegen.ledger.errors import (
    CreditFailedError,
    InsufficientBalanceError,
    LedgerWriteError,
    NoActiveSessionError,
)
from slidegen.models.ledger import DEFAULT_BALANCE, TokenBalance
from slidegen.observability.logging import OperationContext, set_user_id
from slidegen.observability.metrics import track_ledger_operation
from slidegen.storage.ledger_store import LedgerStore, LedgerStoreError

logger = logging.getLogger(__name__)

BalanceListener = Callable[[TokenBalance], None]


class TokenLedger:
    """
    Balance owner for the currently attached identity.

    Usage:
        ledger = TokenLedger(store, credit_client, settings.ledger)
        await ledger.attach(identity)
        unsubscribe = ledger.subscribe(lambda b: print(b.total))
        if await ledger.debit(1):
            ...
    """

    def __init__(
        self,
        store: LedgerStore,
        credit_client: CreditClient,
        config: LedgerConfig,
    ):
        self.store = store
        self.credit_client = credit_client
        self.config = config

        self._identity: IdentityProvider | None = None
        self._unwatch: Callable[[], None] | None = None
        self._balance: TokenBalance = DEFAULT_BALANCE
        self._listeners: list[BalanceListener] = []

        self.last_credit_error: str | None = None

    @property
    def default_balance(self) -> TokenBalance:
        return TokenBalance(
            free_units=self.config.default_free_units,
            premium_units=self.config.default_premium_units,
        )

    @property
    def identity(self) -> IdentityProvider | None:
        return self._identity

    @property
    def user_id(self) -> str | None:
        return self._identity.user_id if self._identity else None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def attach(self, identity: IdentityProvider) -> TokenBalance:
        """
        Bind the ledger to a newly authenticated identity.

        Tears down any previous subscription, creates the ledger document on
        first sight and re-establishes the store subscription.
        """
        if self._identity is not None and self._identity.user_id != identity.user_id:
            self.detach()
        elif self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

        self._identity = identity
        set_user_id(identity.user_id)

        await self.store.initialize()
        balance = await self.ensure_document()
        self._unwatch = self.store.watch(identity.user_id, self._on_store_change)
        self._set_balance(balance)

        logger.info(
            "Ledger attached",
            extra={"user_id": identity.user_id, "balance_total": balance.total},
        )
        return balance

    def detach(self) -> None:
        """Tear down the subscription and reset the cached view to the default."""
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

        previous = self.user_id
        self._identity = None
        set_user_id(None)
        self._set_balance(DEFAULT_BALANCE)

        if previous:
            logger.info("Ledger detached", extra={"user_id": previous})

    async def ensure_document(self) -> TokenBalance:
        """
        Create the default ledger document for the attached user if absent.

        Returns the current (possibly pre-existing) balance.
        """
        if self._identity is None:
            logger.warning("ensure_document called without an attached identity")
            return self._balance
        return await self.store.ensure_document(self._identity.user_id, self.default_balance)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self) -> TokenBalance:
        """Last-known balance (live cache, non-blocking)."""
        return self._balance

    async def refresh_balance(self) -> TokenBalance:
        """Re-read the balance from the store and update the cache."""
        if self._identity is None:
            return self._balance
        balance = await self.store.get_balance(self._identity.user_id)
        if balance is not None:
            self._set_balance(balance)
        return self._balance

    def subscribe(self, on_change: BalanceListener) -> Callable[[], None]:
        """
        Receive balance changes in real time.

        The listener is called immediately with the current balance.

        Returns:
            Unsubscribe function (idempotent)
        """
        self._listeners.append(on_change)
        self._call_listener(on_change, self._balance)

        def unsubscribe() -> None:
            if on_change in self._listeners:
                self._listeners.remove(on_change)

        return unsubscribe

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def debit(self, units: int = 1, reference: str | None = None) -> bool:
        """
        Consume units, free first.

        Args:
            units: Units to consume (>= 1)
            reference: Audit reference (e.g. job id)

        Returns:
            bool: True if debited; False on insufficient balance, no session,
                invalid units or store failure (nothing changed)
        """
        try:
            await self.debit_or_raise(units, reference=reference)
        except NoActiveSessionError:
            logger.warning("Debit refused: no attached identity", extra={"units": units})
            track_ledger_operation("debit", "no_session")
            return False
        except ValueError as e:
            logger.warning(f"Debit refused: {e}", extra={"units": units})
            track_ledger_operation("debit", "invalid")
            return False
        except InsufficientBalanceError as e:
            logger.info(
                "Debit refused: insufficient balance",
                extra={"user_id": e.user_id, "units": units, "available": e.available},
            )
            track_ledger_operation("debit", "insufficient")
            return False
        except LedgerWriteError as e:
            logger.error(
                f"Debit write failed: {e}",
                extra={"user_id": self.user_id, "units": units, "reference": reference},
                exc_info=True,
            )
            track_ledger_operation("debit", "error")
            return False
        return True

    async def debit_or_raise(self, units: int = 1, reference: str | None = None) -> TokenBalance:
        """
        Consume units, free first, raising instead of returning False.

        Returns:
            TokenBalance: Balance after the debit

        Raises:
            NoActiveSessionError: No identity attached
            ValueError: units < 1
            InsufficientBalanceError: Store balance cannot cover the debit
            LedgerWriteError: Store write failed
        """
        if self._identity is None:
            raise NoActiveSessionError("No identity attached to the ledger")
        if units < 1:
            raise ValueError(f"debit units must be >= 1, got {units}")

        user_id = self._identity.user_id
        before = self._balance

        try:
            balance = await self.store.apply_debit(user_id, units, reference=reference)
        except LedgerStoreError as e:
            raise LedgerWriteError(f"Debit of {units} for {user_id} failed: {e}") from e

        if balance is None:
            current = await self._read_store_balance(user_id)
            raise InsufficientBalanceError(user_id, units, current.total if current else 0)

        free_used = max(0, before.free_units - balance.free_units)
        track_ledger_operation(
            "debit", "success", free=free_used, premium=max(0, units - free_used)
        )
        logger.info(
            "Debited",
            extra={
                "user_id": user_id,
                "units": units,
                "reference": reference,
                "balance_total": balance.total,
            },
        )
        return balance

    async def _read_store_balance(self, user_id: str) -> TokenBalance | None:
        try:
            return await self.store.get_balance(user_id)
        except LedgerStoreError:
            return None

    async def credit(self, units: int, purchase_id: str | None = None) -> bool:
        """
        Credit premium units through the trusted credit endpoint.

        Success is only reported once the endpoint confirms; the local store
        then mirrors the increment (idempotent per purchase id). No blind
        retry: a failure is reported to the caller.
        """
        self.last_credit_error = None

        if self._identity is None:
            self.last_credit_error = "no attached identity"
            logger.warning("Credit refused: no attached identity", extra={"units": units})
            track_ledger_operation("credit", "no_session")
            return False

        if units < 1:
            self.last_credit_error = f"invalid units: {units}"
            track_ledger_operation("credit", "invalid")
            return False

        identity = self._identity
        try:
            await self.credit_client.add_tokens(identity, units, purchase_id=purchase_id)
        except CreditFailedError as e:
            self.last_credit_error = str(e)
            logger.error(
                f"Credit failed: {e}",
                extra={
                    "user_id": identity.user_id,
                    "units": units,
                    "purchase_id": purchase_id,
                    "status_code": e.status_code,
                },
            )
            track_ledger_operation("credit", "error")
            return False

        try:
            await self.store.ensure_document(identity.user_id, self.default_balance)
            await self.store.apply_credit(identity.user_id, units, reference=purchase_id)
        except LedgerStoreError as e:
            # Endpoint already applied the credit; the mirror catches up on next read
            logger.error(
                f"Credit mirror write failed: {e}",
                extra={"user_id": identity.user_id, "units": units, "purchase_id": purchase_id},
                exc_info=True,
            )

        track_ledger_operation("credit", "success", premium=units)
        return True

    async def ensure_minimum_free_units(self, minimum: int = 1) -> int:
        """Raise every ledger's free units to at least `minimum` (admin sweep)."""
        with OperationContext("ensure_minimum_free_units", minimum=minimum):
            await self.store.initialize()
            changed = await self.store.ensure_minimum_free_units(minimum)
        return changed

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _on_store_change(self, balance: TokenBalance) -> None:
        self._set_balance(balance)

    def _set_balance(self, balance: TokenBalance) -> None:
        self._balance = balance
        for listener in list(self._listeners):
            self._call_listener(listener, balance)

    def _call_listener(self, listener: BalanceListener, balance: TokenBalance) -> None:
        try:
            listener(balance)
        except Exception as e:
            logger.error(
                f"Balance listener failed: {e}",
                extra={"user_id": self.user_id},
                exc_info=True,
            )
