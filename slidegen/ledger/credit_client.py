"""
Client for the trusted token credit endpoint.

Premium units are never written locally on the strength of a purchase alone:
the credit endpoint verifies the caller's id token and applies a transactional
increment server-side. Request contract:

    POST {credit_url}
    Authorization: Bearer <id token>
    Idempotency-Key: <user_id>:<purchase_id>   (when a purchase id is known)
    {"userId": "...", "tokens": 3}

    -> {"success": true}

Only connection-level failures (the request never left the client) are
retried; anything that may have reached the server is reported to the caller.
"""

import asyncio
import logging
import time

import httpx

from slidegen.auth.identity import IdentityError, IdentityProvider
from slidegen.config import LedgerConfig
from slidegen.ledger.errors import CreditFailedError
from slidegen.resilience.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

# Failures where the request was provably not delivered
_UNDELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class CreditClient:
    """HTTP client for the credit endpoint."""

    def __init__(
        self,
        config: LedgerConfig,
        backoff: BackoffPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            config: Ledger configuration (credit_url, credit_timeout_seconds)
            backoff: Retry policy for undelivered requests (default: 2 attempts)
            http_client: Shared client (tests inject one with a MockTransport)
        """
        self.config = config
        self.backoff = backoff or BackoffPolicy(max_attempts=2, operation="credit")
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.credit_timeout_seconds
        )

    async def add_tokens(
        self,
        identity: IdentityProvider,
        units: int,
        purchase_id: str | None = None,
    ) -> None:
        """
        Credit premium units to the identity's ledger.

        Raises:
            CreditFailedError: Endpoint unreachable, rejected the request, or
                did not confirm success
        """
        if units < 1:
            raise ValueError(f"credit units must be >= 1, got {units}")

        try:
            id_token = await identity.get_id_token()
        except IdentityError as e:
            raise CreditFailedError(f"No credential for credit call: {e}") from e

        headers = {
            "Authorization": f"Bearer {id_token}",
            "Content-Type": "application/json",
        }
        if purchase_id:
            headers["Idempotency-Key"] = f"{identity.user_id}:{purchase_id}"
        payload = {"userId": identity.user_id, "tokens": units}

        start = time.perf_counter()
        try:
            response = await self.backoff.call(
                self._http_client.post,
                self.config.credit_url,
                json=payload,
                headers=headers,
                exceptions=_UNDELIVERED_ERRORS,
            )
        except httpx.TimeoutException as e:
            raise CreditFailedError(
                f"Credit request timed out: {e}", retryable=True
            ) from e
        except httpx.HTTPError as e:
            raise CreditFailedError(
                f"Credit request failed: {e}", retryable=True
            ) from e

        latency_ms = (time.perf_counter() - start) * 1000

        if response.status_code in (401, 403):
            raise CreditFailedError(
                "Credit endpoint rejected the credential",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise CreditFailedError(
                f"Credit endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise CreditFailedError("Credit endpoint returned a non-JSON body") from e

        if not isinstance(body, dict) or body.get("success") is not True:
            raise CreditFailedError(
                f"Credit endpoint did not confirm success: {body!r}",
                status_code=response.status_code,
            )

        logger.info(
            "Tokens credited",
            extra={
                "user_id": identity.user_id,
                "units": units,
                "purchase_id": purchase_id,
                "latency_ms": round(latency_ms, 2),
            },
        )

    async def aclose(self) -> None:
        await self._http_client.aclose()


class MockCreditClient(CreditClient):
    """
    Offline credit endpoint: always succeeds.

    Records every call so callers can assert on credits issued.
    """

    def __init__(self, delay_seconds: float = 0.0, fail: bool = False):
        self.delay_seconds = delay_seconds
        self.fail = fail
        self.calls: list[dict] = []

    async def add_tokens(
        self,
        identity: IdentityProvider,
        units: int,
        purchase_id: str | None = None,
    ) -> None:
        if units < 1:
            raise ValueError(f"credit units must be >= 1, got {units}")
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self.calls.append(
            {"user_id": identity.user_id, "units": units, "purchase_id": purchase_id}
        )
        if self.fail:
            raise CreditFailedError("Mock credit endpoint configured to fail", retryable=True)
        logger.info(
            "Mock tokens credited",
            extra={"user_id": identity.user_id, "units": units, "purchase_id": purchase_id},
        )

    async def aclose(self) -> None:
        return None
