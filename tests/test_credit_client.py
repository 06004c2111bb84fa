"""
Tests for the trusted credit endpoint client.

Tests:
- Request body, bearer credential and idempotency key
- Success confirmation required
- Auth and server error classification
- Only undelivered requests are retried
"""

import json

import httpx
import pytest

from slidegen.auth.identity import StaticIdentity
from slidegen.config import LedgerConfig
from slidegen.ledger.credit_client import CreditClient
from slidegen.ledger.errors import CreditFailedError
from slidegen.resilience.backoff import BackoffPolicy

CREDIT_URL = "https://credit.test/addTokens"


def make_client(handler) -> CreditClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CreditClient(
        LedgerConfig(credit_url=CREDIT_URL),
        backoff=BackoffPolicy(max_attempts=2, min_wait=0.0, max_wait=0.0, operation="credit"),
        http_client=http_client,
    )


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity("user_abc", id_token="id-token-abc")


@pytest.mark.asyncio
async def test_add_tokens_request_shape(identity):
    """Test body, bearer and idempotency key."""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    client = make_client(handler)
    await client.add_tokens(identity, 3, purchase_id="GPA.1234")
    await client.aclose()

    assert captured["url"] == CREDIT_URL
    assert captured["headers"]["Authorization"] == "Bearer id-token-abc"
    assert captured["headers"]["Idempotency-Key"] == "user_abc:GPA.1234"
    assert captured["body"] == {"userId": "user_abc", "tokens": 3}


@pytest.mark.asyncio
async def test_add_tokens_without_purchase_id_has_no_idempotency_key(identity):
    seen = []

    def handler(request):
        seen.append(request.headers.get("Idempotency-Key"))
        return httpx.Response(200, json={"success": True})

    await make_client(handler).add_tokens(identity, 1)

    assert seen == [None]


@pytest.mark.asyncio
async def test_unconfirmed_success_is_failure(identity):
    client = make_client(lambda request: httpx.Response(200, json={"success": False}))

    with pytest.raises(CreditFailedError):
        await client.add_tokens(identity, 3)


@pytest.mark.asyncio
async def test_non_json_body_is_failure(identity):
    client = make_client(lambda request: httpx.Response(200, text="OK"))

    with pytest.raises(CreditFailedError):
        await client.add_tokens(identity, 3)


@pytest.mark.asyncio
async def test_rejected_credential(identity):
    client = make_client(lambda request: httpx.Response(401))

    with pytest.raises(CreditFailedError) as exc_info:
        await client.add_tokens(identity, 3)
    assert exc_info.value.status_code == 401
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_server_error_is_retryable_but_not_retried(identity):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(CreditFailedError) as exc_info:
        await make_client(handler).add_tokens(identity, 3)

    assert exc_info.value.retryable is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_connect_error_is_retried(identity):
    """Test that an undelivered request is attempted again."""
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"success": True})

    await make_client(handler).add_tokens(identity, 2, purchase_id="txn_1")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_read_timeout_is_not_retried(identity):
    """Test that a possibly-delivered request is never replayed."""
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(CreditFailedError) as exc_info:
        await make_client(handler).add_tokens(identity, 2)

    assert exc_info.value.retryable is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_id_token_fails_without_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True})

    with pytest.raises(CreditFailedError):
        await make_client(handler).add_tokens(StaticIdentity("user_abc", id_token=""), 1)
    assert calls == []


@pytest.mark.asyncio
async def test_non_positive_units_rejected(identity):
    client = make_client(lambda request: httpx.Response(200, json={"success": True}))

    with pytest.raises(ValueError):
        await client.add_tokens(identity, 0)
