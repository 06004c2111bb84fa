"""
Application session: explicit wiring of ledger, generation and entitlements.

One AppSession serves one process; identities come and go through
sign_in()/sign_out(). Collaborators not passed in are built from Settings,
with offline mocks selected per concern (see Settings.mock_mode, mock_credit
and mock_purchases).
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from slidegen.auth.identity import IdentityProvider
from slidegen.config import Settings, get_settings
from slidegen.entitlements.provider import (
    MockPurchaseProvider,
    PurchaseProvider,
    RevenueCatProvider,
    StoreFront,
)
from slidegen.entitlements.sync import EntitlementSync
from slidegen.generation.client import GenerationClient, MockGenerationClient
from slidegen.generation.tracker import GenerationTaskTracker
from slidegen.ledger.credit_client import CreditClient, MockCreditClient
from slidegen.ledger.service import TokenLedger
from slidegen.models.ledger import TokenBalance
from slidegen.models.task import TaskOutcome
from slidegen.observability.logging import SessionContext
from slidegen.resilience.backoff import BackoffPolicy
from slidegen.storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class AppSession:
    """
    Service container for the generation, ledger and entitlement subsystem.

    Usage:
        async with AppSession(settings) as session:
            await session.sign_in(identity)
            outcome = await session.generate("The history of flight")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: LedgerStore | None = None,
        generation_client: GenerationClient | None = None,
        credit_client: CreditClient | None = None,
        provider: PurchaseProvider | None = None,
        storefront: StoreFront | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

        self.store = store or LedgerStore(self.settings.ledger.db_path)

        if generation_client is None:
            generation_client = (
                MockGenerationClient(self.settings.generator)
                if self.settings.mock_mode
                else GenerationClient(self.settings.generator)
            )
        self.generation_client = generation_client

        if credit_client is None:
            credit_client = (
                MockCreditClient()
                if self.settings.mock_credit
                else CreditClient(
                    self.settings.ledger,
                    backoff=BackoffPolicy(
                        max_attempts=min(2, self.settings.resilience.max_attempts),
                        min_wait=self.settings.resilience.min_wait_seconds,
                        max_wait=self.settings.resilience.max_wait_seconds,
                        operation="credit",
                    ),
                )
            )
        self.credit_client = credit_client

        if provider is None:
            if self.settings.mock_purchases:
                provider = MockPurchaseProvider(
                    entitlement_id=self.settings.purchases.pro_entitlement_id
                )
            else:
                # Reads work without a storefront; purchase and restore need one
                provider = RevenueCatProvider(
                    self.settings.purchases,
                    storefront,
                    backoff=BackoffPolicy.from_config(self.settings.resilience, "provider"),
                )
        self.provider = provider

        self.ledger = TokenLedger(self.store, self.credit_client, self.settings.ledger)
        self.entitlements = EntitlementSync(
            self.provider, self.ledger, self.settings.purchases, store=self.store
        )
        self._trackers: set[GenerationTaskTracker] = set()

    async def __aenter__(self) -> "AppSession":
        await self.store.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def user_id(self) -> str | None:
        return self.ledger.user_id

    async def sign_in(self, identity: IdentityProvider) -> TokenBalance:
        """Attach the identity, then reconcile entitlements (fail-open)."""
        with SessionContext(user_id=identity.user_id):
            await self.ledger.attach(identity)
            await self.entitlements.refresh(trigger="sign_in")
            logger.info("Signed in", extra={"user_id": identity.user_id})
            return self.ledger.get_balance()

    def sign_out(self) -> None:
        """Cancel running tasks, detach the ledger and forget provider state."""
        user_id = self.user_id
        for tracker in list(self._trackers):
            tracker.cancel()
        self._trackers.clear()
        self.ledger.detach()
        self.entitlements.reset()
        logger.info("Signed out", extra={"user_id": user_id})

    async def on_foreground(self) -> None:
        """App returned to the foreground: reconcile and re-read the balance."""
        await self.entitlements.refresh(trigger="foreground")
        await self.ledger.refresh_balance()

    def new_tracker(self) -> GenerationTaskTracker:
        tracker = GenerationTaskTracker(
            self.generation_client,
            self.ledger,
            self.settings.polling,
            clock=self._clock,
            sleep=self._sleep,
        )
        self._trackers.add(tracker)
        return tracker

    async def generate(self, prompt: str) -> TaskOutcome:
        """Run one generation to a terminal outcome."""
        tracker = self.new_tracker()
        try:
            return await tracker.run(prompt)
        finally:
            self._trackers.discard(tracker)

    async def aclose(self) -> None:
        for tracker in list(self._trackers):
            tracker.cancel()
        self._trackers.clear()
        for client in (self.generation_client, self.credit_client, self.provider):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
        self.store.close()
