"""
Generation task data models.

Covers the tracker's own state (GenerationTask), the normalized job status
payload returned by the generator (JobStatus), and the terminal outcome
handed to callers (TaskOutcome).
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from slidegen.models.ledger import TokenBalance

DEFAULT_SLIDE_COUNT = 5

_SLIDE_COUNT_FIELDS = ("slideCount", "numberOfSlides", "slide_count", "totalSlides", "slidesCount")
_TITLE_FIELDS = ("title", "name", "presentationTitle")


class TaskStatus(str, Enum):
    """Lifecycle states of a generation task."""

    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT)


class FailureReason(str, Enum):
    """Discriminated reason for a task that did not deliver an artifact."""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    SUBMISSION_ERROR = "submission_error"
    AUTH_ERROR = "auth_error"
    JOB_FAILED = "job_failed"
    TIMED_OUT = "timed_out"
    SETTLEMENT_FAILED = "settlement_failed"
    CANCELLED = "cancelled"


# User-facing messages. Settlement failures need a top-up, job failures a retry.
USER_MESSAGES: dict[FailureReason, str] = {
    FailureReason.INSUFFICIENT_BALANCE: "You have no presentations left. Top up to continue.",
    FailureReason.SUBMISSION_ERROR: (
        "We're currently experiencing high demand. Please try again soon."
    ),
    FailureReason.AUTH_ERROR: "Authentication error. Please sign in again and retry.",
    FailureReason.JOB_FAILED: "Presentation generation failed. Please try again.",
    FailureReason.TIMED_OUT: (
        "Generation is taking longer than expected. Please check back or try again."
    ),
    FailureReason.SETTLEMENT_FAILED: (
        "Your presentation is ready but we couldn't use a token. Top up your balance to unlock it."
    ),
    FailureReason.CANCELLED: "Generation was cancelled.",
}


class JobState(str, Enum):
    """State reported by the external generator."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(BaseModel):
    """Normalized job status payload."""

    id: str
    state: JobState
    progress: int | None = Field(default=None, ge=0, le=100)
    slide_count: int | None = None
    title: str | None = None
    error: str | None = None
    embed_url: str | None = None
    download_url: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], job_id: str, topic: str | None = None
    ) -> "JobStatus":
        """
        Normalize a raw status payload.

        An explicit status field wins. Without one, the presence of both an
        embed and a download reference means the job is completed; an error
        field means it failed; anything else is still processing.
        """
        embed = payload.get("embed")
        download = payload.get("download")
        error = payload.get("error")

        raw_status = payload.get("status")
        if raw_status:
            try:
                state = JobState(str(raw_status).lower())
            except ValueError:
                state = JobState.PROCESSING
        elif embed and download:
            state = JobState.COMPLETED
        elif error:
            state = JobState.FAILED
        else:
            state = JobState.PROCESSING

        progress = payload.get("progress")
        if isinstance(progress, (int, float)):
            progress = max(0, min(100, int(progress)))
        else:
            progress = None

        slide_count = None
        title = None
        if state == JobState.COMPLETED:
            progress = 100
            slide_count = _extract_slide_count(payload)
            title = _extract_title(payload, topic)

        return cls(
            id=str(payload.get("id") or job_id),
            state=state,
            progress=progress,
            slide_count=slide_count,
            title=title,
            error=str(error) if error else None,
            embed_url=embed,
            download_url=download,
        )


def _extract_slide_count(payload: dict[str, Any]) -> int:
    if payload.get("slideCount"):
        return int(payload["slideCount"])
    slides = payload.get("slides")
    if isinstance(slides, list) and slides:
        return len(slides)
    for field in _SLIDE_COUNT_FIELDS:
        if payload.get(field):
            return int(payload[field])
    return DEFAULT_SLIDE_COUNT


def _extract_title(payload: dict[str, Any], topic: str | None) -> str:
    for field in _TITLE_FIELDS:
        if payload.get(field):
            return str(payload[field])
    return topic or "Presentation"


class GenerationTask(BaseModel):
    """State of one generation job, owned by GenerationTaskTracker."""

    task_key: str
    prompt: str
    id: str | None = None
    status: TaskStatus = TaskStatus.SUBMITTING
    progress: int = Field(default=1, ge=0, le=100)
    poll_count: int = Field(default=0, ge=0)
    transient_errors: int = Field(default=0, ge=0)
    settled: bool = False
    failure_reason: FailureReason | None = None
    error_message: str | None = None
    slide_count: int | None = None
    title: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class TaskOutcome(BaseModel):
    """Terminal result of a generation task."""

    task_key: str
    job_id: str | None = None
    status: TaskStatus
    ready: bool = False
    reason: FailureReason | None = None
    message: str | None = None
    slide_count: int | None = None
    title: str | None = None
    balance_after: TokenBalance | None = None

    @classmethod
    def from_task(cls, task: GenerationTask, balance_after: TokenBalance | None = None) -> "TaskOutcome":
        ready = task.status == TaskStatus.COMPLETED and task.failure_reason is None
        return cls(
            task_key=task.task_key,
            job_id=task.id,
            status=task.status,
            ready=ready,
            reason=task.failure_reason,
            message=USER_MESSAGES.get(task.failure_reason) if task.failure_reason else None,
            slide_count=task.slide_count,
            title=task.title,
            balance_after=balance_after,
        )
