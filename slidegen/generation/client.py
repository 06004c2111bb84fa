"""
Client for the external presentation generator.

Endpoints:
    POST {base_url}/presentations/generate   {"prompt": "..."} -> {"id": "...", ...}
    GET  {base_url}/presentations/{id}       -> status payload (see JobStatus)

Error classification (what the tracker does with it):
- Network errors, timeouts, HTTP 5xx and 429 on status -> TransientPollError (keep polling)
- HTTP 401/403 -> AuthError (terminal)
- Other non-2xx on status -> JobFailedError (terminal)
- Any failure on submit -> SubmissionError (terminal, never polled)

Submission is never retried: a retried POST can create a second job.
"""

import asyncio
import logging
import time

import httpx

from slidegen.config import GeneratorConfig
from slidegen.models.task import JobStatus
from slidegen.observability.metrics import track_generator_call

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Base exception for generation operations."""

    pass


class SubmissionError(GenerationError):
    """Job could not be submitted."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientPollError(GenerationError):
    """Status check failed in a way worth retrying on the next tick."""

    pass


class AuthError(GenerationError):
    """Generator rejected the API credential (401/403)."""

    def __init__(self, message: str, status_code: int):
        self.status_code = status_code
        super().__init__(message)


class JobFailedError(GenerationError):
    """Generator reports the job as failed or unknown."""

    pass


class TaskTimedOutError(GenerationError):
    """Poll ceiling or wall-clock deadline reached before completion."""

    pass


class GenerationClient:
    """HTTP client for job submission and status."""

    def __init__(self, config: GeneratorConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http_client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, prompt: str) -> str:
        """
        Submit a generation job.

        Returns:
            str: Opaque job id

        Raises:
            AuthError: Credential rejected
            SubmissionError: Any other failure (network, non-2xx, missing id)
        """
        if not prompt or not prompt.strip():
            raise SubmissionError("Prompt must not be empty")

        start = time.perf_counter()
        try:
            response = await self._http_client.post(
                self.config.generate_url,
                json={"prompt": prompt},
                headers=self.headers,
            )
        except httpx.HTTPError as e:
            track_generator_call("submit", False, time.perf_counter() - start)
            raise SubmissionError(f"Submit request failed: {e}") from e

        track_generator_call("submit", response.is_success, time.perf_counter() - start)

        if response.status_code in (401, 403):
            raise AuthError(
                f"Generator rejected credential (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise SubmissionError(
                f"Submit returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SubmissionError("Submit response was not valid JSON") from e
        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            raise SubmissionError("Submit response did not include a job id")

        logger.info("Generation job submitted", extra={"job_id": job_id})
        return str(job_id)

    async def get_status(self, job_id: str, topic: str | None = None) -> JobStatus:
        """
        Fetch and normalize a job's status.

        Args:
            job_id: Job id from submit()
            topic: Submitted prompt (title fallback for completed jobs)

        Raises:
            TransientPollError: Worth retrying on the next tick
            AuthError: Credential rejected
            JobFailedError: Job not found or rejected by the generator
        """
        start = time.perf_counter()
        try:
            response = await self._http_client.get(
                self.config.status_url(job_id), headers=self.headers
            )
        except httpx.HTTPError as e:
            track_generator_call("status", False, time.perf_counter() - start)
            raise TransientPollError(f"Status request failed: {type(e).__name__}: {e}") from e

        track_generator_call("status", response.is_success, time.perf_counter() - start)

        if response.status_code in (401, 403):
            raise AuthError(
                f"Generator rejected credential (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientPollError(f"Status returned HTTP {response.status_code}")
        if not response.is_success:
            raise JobFailedError(f"Status returned HTTP {response.status_code} for job {job_id}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientPollError("Status response was not valid JSON") from e
        if not isinstance(data, dict):
            raise TransientPollError("Status response was not a JSON object")

        return JobStatus.from_payload(data, job_id=job_id, topic=topic)

    async def aclose(self) -> None:
        await self._http_client.aclose()


class MockGenerationClient(GenerationClient):
    """
    Deterministic offline generator.

    submit() waits mock_submit_delay_seconds and returns
    "mock-presentation-<ms>"; get_status() waits mock_status_delay_seconds and
    reports the job completed.
    """

    def __init__(self, config: GeneratorConfig):
        self.config = config
        self.submitted: list[str] = []
        self.status_calls = 0

    async def submit(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise SubmissionError("Prompt must not be empty")
        await asyncio.sleep(self.config.mock_submit_delay_seconds)
        job_id = f"mock-presentation-{int(time.time() * 1000)}"
        self.submitted.append(job_id)
        logger.info("Mock generation job submitted", extra={"job_id": job_id})
        return job_id

    async def get_status(self, job_id: str, topic: str | None = None) -> JobStatus:
        await asyncio.sleep(self.config.mock_status_delay_seconds)
        self.status_calls += 1
        return JobStatus.from_payload(
            {
                "id": job_id,
                "status": "completed",
                "slideCount": self.config.mock_slide_count,
                "title": "Mock Presentation",
                "embed": f"https://mock.slidegen.local/embed/{job_id}",
                "download": f"https://mock.slidegen.local/download/{job_id}",
            },
            job_id=job_id,
            topic=topic,
        )

    async def aclose(self) -> None:
        return None

