"""
End-to-end tests for the application session in mock mode.

Tests:
- Sign-in creates the default balance; one generation spends it
- Generation without balance is refused before submission
- Purchase credits units that the next generation can spend
- Sign-out cancels running tasks and resets the cached balance
- Switching users switches ledgers
- A missing generator key mocks only the generator; credits and purchases stay live
"""

import asyncio

import pytest

from slidegen.auth.identity import StaticIdentity
from slidegen.config import GeneratorConfig, LedgerConfig, PurchasesConfig, Settings
from slidegen.entitlements.provider import MockPurchaseProvider, RevenueCatProvider
from slidegen.generation.client import GenerationClient, MockGenerationClient
from slidegen.ledger.credit_client import CreditClient, MockCreditClient
from slidegen.models.entitlement import Package, Product
from slidegen.models.ledger import DEFAULT_BALANCE, TokenBalance
from slidegen.models.task import FailureReason, TaskStatus
from slidegen.session import AppSession


@pytest.mark.asyncio
async def test_mock_mode_wiring(test_settings):
    async with AppSession(test_settings) as session:
        assert isinstance(session.generation_client, MockGenerationClient)
        assert isinstance(session.provider, MockPurchaseProvider)
        assert session.user_id is None


@pytest.mark.asyncio
async def test_sign_in_generate_then_refused(test_settings, identity):
    """Test the free unit is spent once, then generation is refused."""
    async with AppSession(test_settings) as session:
        balance = await session.sign_in(identity)
        assert balance == DEFAULT_BALANCE

        first = await session.generate("The history of flight")
        assert first.ready is True
        assert first.title == "Mock Presentation"
        assert first.balance_after == TokenBalance(free_units=0, premium_units=0)

        second = await session.generate("Another topic")
        assert second.status == TaskStatus.FAILED
        assert second.reason == FailureReason.INSUFFICIENT_BALANCE
        assert session.generation_client.submitted == [first.job_id]


@pytest.mark.asyncio
async def test_purchase_then_generate(test_settings, identity):
    provider = MockPurchaseProvider(
        packages=[
            Package(
                identifier="ten_pack",
                product=Product(identifier="slide_ai_business_10_presentations"),
            )
        ]
    )
    async with AppSession(test_settings, provider=provider) as session:
        await session.sign_in(identity)
        await session.generate("Spend the free unit")

        assert await session.entitlements.purchase("ten_pack") is True
        assert session.ledger.get_balance() == TokenBalance(free_units=0, premium_units=10)

        outcome = await session.generate("Paid generation")
        assert outcome.ready is True
        assert outcome.balance_after.premium_units == 9


@pytest.mark.asyncio
async def test_sign_out_cancels_running_tasks(test_settings, identity):
    settings = test_settings.model_copy(
        update={
            "generator": test_settings.generator.model_copy(
                update={"mock_submit_delay_seconds": 5.0}
            )
        }
    )
    async with AppSession(settings) as session:
        await session.sign_in(identity)
        tracker = session.new_tracker()
        await tracker.start("Long job")
        await asyncio.sleep(0)

        session.sign_out()
        outcome = await tracker.wait()

        assert outcome.reason == FailureReason.CANCELLED
        assert session.user_id is None
        assert session.ledger.get_balance() == DEFAULT_BALANCE
        assert session.entitlements.entitlement.is_pro is False

        # The document was never debited
        assert (await session.store.get_balance(identity.user_id)).total == 1


@pytest.mark.asyncio
async def test_switching_users(test_settings, identity):
    async with AppSession(test_settings) as session:
        await session.sign_in(identity)
        await session.generate("First user spends")
        session.sign_out()

        balance = await session.sign_in(StaticIdentity("user_xyz"))

        assert balance == DEFAULT_BALANCE
        assert session.user_id == "user_xyz"
        outcome = await session.generate("Second user spends")
        assert outcome.ready is True


@pytest.mark.asyncio
async def test_on_foreground_rereads_balance(test_settings, identity):
    async with AppSession(test_settings) as session:
        await session.sign_in(identity)
        await session.store.apply_credit(identity.user_id, 2, reference="server")

        await session.on_foreground()

        assert session.ledger.get_balance().premium_units == 2
        assert session.provider.sync_calls == 2


def live_purchases_settings(tmp_path, generator_key: str = "") -> Settings:
    return Settings(
        generator=GeneratorConfig(api_key=generator_key, mock_mode=False),
        ledger=LedgerConfig(db_path=str(tmp_path / "ledger.db")),
        purchases=PurchasesConfig(platform="android", android_api_key="goog_live_key"),
    )


@pytest.mark.asyncio
async def test_missing_generator_key_keeps_credit_endpoint_live(tmp_path):
    """Test that crediting still goes through the trusted endpoint without a generator key."""
    async with AppSession(live_purchases_settings(tmp_path)) as session:
        assert isinstance(session.generation_client, MockGenerationClient)
        assert isinstance(session.credit_client, CreditClient)
        assert not isinstance(session.credit_client, MockCreditClient)
        assert isinstance(session.provider, RevenueCatProvider)


@pytest.mark.asyncio
async def test_live_provider_without_storefront(tmp_path):
    """Test that a configured purchases key reads the real provider even without a storefront."""
    settings = live_purchases_settings(tmp_path, generator_key="sk-live-12345")

    async with AppSession(settings) as session:
        assert settings.mock_mode is False
        assert isinstance(session.generation_client, GenerationClient)
        assert not isinstance(session.generation_client, MockGenerationClient)
        assert isinstance(session.provider, RevenueCatProvider)
        assert session.provider.storefront is None


@pytest.mark.asyncio
async def test_explicit_mock_toggle_mocks_everything(test_settings):
    async with AppSession(test_settings) as session:
        assert isinstance(session.credit_client, MockCreditClient)
        assert isinstance(session.provider, MockPurchaseProvider)
