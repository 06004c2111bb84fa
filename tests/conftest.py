"""
Pytest configuration and shared fixtures.

Provides:
- Test settings (mock generator, zero delays, zero poll interval)
- SQLite ledger store on tmp_path
- Attached token ledger with an offline credit client
- Scripted generator client and a fake wall clock for tracker tests
"""

import asyncio
from collections.abc import Iterable

import pytest
import pytest_asyncio

from slidegen.auth.identity import StaticIdentity
from slidegen.config import (
    GeneratorConfig,
    LedgerConfig,
    LoggingConfig,
    PollingConfig,
    PurchasesConfig,
    ResilienceConfig,
    Settings,
)
from slidegen.ledger.credit_client import MockCreditClient
from slidegen.ledger.service import TokenLedger
from slidegen.models.task import JobStatus
from slidegen.storage.ledger_store import LedgerStore


class FakeClock:
    """Wall clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedGenerationClient:
    """
    Generator client replaying scripted status responses.

    Each scripted item is a payload dict, a JobStatus, or an exception to raise.
    """

    def __init__(
        self,
        statuses: Iterable = (),
        job_id: str = "pres_123",
        submit_error: Exception | None = None,
    ):
        self._statuses = iter(statuses)
        self.job_id = job_id
        self.submit_error = submit_error
        self.submit_calls = 0
        self.status_calls = 0

    async def submit(self, prompt: str) -> str:
        self.submit_calls += 1
        if self.submit_error is not None:
            raise self.submit_error
        return self.job_id

    async def get_status(self, job_id: str, topic: str | None = None) -> JobStatus:
        self.status_calls += 1
        item = next(self._statuses)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, JobStatus):
            return item
        return JobStatus.from_payload(item, job_id=job_id, topic=topic)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with mock configuration."""
    return Settings(
        generator=GeneratorConfig(
            mock_mode=True,
            mock_submit_delay_seconds=0.0,
            mock_status_delay_seconds=0.0,
        ),
        polling=PollingConfig(
            interval_seconds=0.0,
            max_polls=20,
            progress_tick_seconds=0.0,
        ),
        ledger=LedgerConfig(db_path=str(tmp_path / "ledger.db")),
        purchases=PurchasesConfig(),
        resilience=ResilienceConfig(max_attempts=2, min_wait_seconds=0.0, max_wait_seconds=0.0),
        logging=LoggingConfig(),
    )


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity("user_abc", id_token="id-token-abc")


@pytest.fixture
def credit_client() -> MockCreditClient:
    return MockCreditClient()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Initialized ledger store on a temporary file."""
    ledger_store = LedgerStore(str(tmp_path / "ledger.db"))
    await ledger_store.initialize()
    yield ledger_store
    ledger_store.close()


@pytest_asyncio.fixture
async def ledger(store, credit_client, identity, test_settings) -> TokenLedger:
    """Ledger attached to `identity` with the default {1, 0} balance."""
    token_ledger = TokenLedger(store, credit_client, test_settings.ledger)
    await token_ledger.attach(identity)
    return token_ledger


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
