"""
Tests for retry with jittered exponential backoff.

Tests:
- Retries only the named exception types
- Last exception re-raised once attempts are exhausted
- Retries counted in metrics
- Polling interval jitter bounds
"""

import pytest
from prometheus_client import REGISTRY

from slidegen.config import ResilienceConfig
from slidegen.resilience.backoff import BackoffPolicy, jittered_interval, with_retry


class Flaky:
    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


def retry_count(operation: str) -> float:
    return REGISTRY.get_sample_value("slidegen_retries_total", {"operation": operation}) or 0.0


@pytest.mark.asyncio
async def test_policy_retries_named_exception():
    """Test that a named exception is retried until success."""
    policy = BackoffPolicy(max_attempts=3, min_wait=0.0, max_wait=0.0, operation="test_ok")
    func = Flaky(2, ConnectionError("reset"))
    before = retry_count("test_ok")

    result = await policy.call(func, "done", exceptions=(ConnectionError,))

    assert result == "done"
    assert func.calls == 3
    assert retry_count("test_ok") - before == 2


@pytest.mark.asyncio
async def test_policy_reraises_after_exhaustion():
    policy = BackoffPolicy(max_attempts=2, min_wait=0.0, max_wait=0.0, operation="test_exhaust")
    func = Flaky(5, ConnectionError("down"))

    with pytest.raises(ConnectionError):
        await policy.call(func, "never", exceptions=(ConnectionError,))
    assert func.calls == 2


@pytest.mark.asyncio
async def test_policy_does_not_retry_other_exceptions():
    policy = BackoffPolicy(max_attempts=3, min_wait=0.0, max_wait=0.0)
    func = Flaky(1, ValueError("bad input"))

    with pytest.raises(ValueError):
        await policy.call(func, "never", exceptions=(ConnectionError,))
    assert func.calls == 1


@pytest.mark.asyncio
async def test_with_retry_decorator():
    calls = []

    @with_retry(max_attempts=3, min_wait=0.0, max_wait=0.0, exceptions=(TimeoutError,))
    async def sometimes():
        calls.append(1)
        if len(calls) < 2:
            raise TimeoutError("slow")
        return "ok"

    assert await sometimes() == "ok"
    assert len(calls) == 2


def test_policy_from_config():
    config = ResilienceConfig(max_attempts=4, min_wait_seconds=0.1, max_wait_seconds=2.0)

    policy = BackoffPolicy.from_config(config, operation="provider")

    assert policy.max_attempts == 4
    assert policy.min_wait == 0.1
    assert policy.max_wait == 2.0
    assert policy.operation == "provider"


def test_policy_rejects_invalid_bounds():
    with pytest.raises(ValueError):
        BackoffPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        BackoffPolicy(min_wait=5.0, max_wait=1.0)


def test_jittered_interval_bounds():
    assert jittered_interval(5.0) == 5.0
    for _ in range(50):
        value = jittered_interval(5.0, 1.5)
        assert 5.0 <= value <= 6.5
