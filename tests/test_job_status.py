"""
Tests for job status normalization and task outcomes.

Tests:
- Completed detection from explicit status or embed+download
- Failure detection from error field
- Slide count and title fallbacks
- Outcome messages per failure reason
"""

import pytest

from slidegen.models.task import (
    DEFAULT_SLIDE_COUNT,
    USER_MESSAGES,
    FailureReason,
    GenerationTask,
    JobState,
    JobStatus,
    TaskOutcome,
    TaskStatus,
)


def test_explicit_status_wins():
    status = JobStatus.from_payload(
        {"status": "PROCESSING", "embed": "e", "download": "d"}, job_id="j1"
    )

    assert status.state == JobState.PROCESSING


def test_embed_and_download_mean_completed():
    status = JobStatus.from_payload({"embed": "e", "download": "d"}, job_id="j1", topic="Owls")

    assert status.state == JobState.COMPLETED
    assert status.progress == 100
    assert status.slide_count == DEFAULT_SLIDE_COUNT
    assert status.title == "Owls"
    assert status.is_terminal is True


def test_embed_alone_is_still_processing():
    status = JobStatus.from_payload({"embed": "e"}, job_id="j1")

    assert status.state == JobState.PROCESSING
    assert status.is_terminal is False


def test_error_field_means_failed():
    status = JobStatus.from_payload({"error": "renderer crashed"}, job_id="j1")

    assert status.state == JobState.FAILED
    assert status.error == "renderer crashed"


def test_unknown_status_value_reads_as_processing():
    status = JobStatus.from_payload({"status": "queued_for_gpu"}, job_id="j1")

    assert status.state == JobState.PROCESSING


def test_progress_is_clamped():
    status = JobStatus.from_payload({"status": "processing", "progress": 140}, job_id="j1")

    assert status.progress == 100
    assert JobStatus.from_payload({"progress": "half"}, job_id="j1").progress is None


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"slideCount": 12}, 12),
        ({"slides": [1, 2, 3]}, 3),
        ({"numberOfSlides": 8}, 8),
        ({"totalSlides": 9}, 9),
        ({}, DEFAULT_SLIDE_COUNT),
    ],
)
def test_slide_count_sources(payload, expected):
    payload = {"status": "completed", **payload}

    assert JobStatus.from_payload(payload, job_id="j1").slide_count == expected


def test_title_sources():
    payload = {"status": "completed", "presentationTitle": "Deep Sea"}

    assert JobStatus.from_payload(payload, job_id="j1", topic="Ocean").title == "Deep Sea"
    assert JobStatus.from_payload({"status": "completed"}, job_id="j1").title == "Presentation"


def test_payload_id_preferred_over_argument():
    assert JobStatus.from_payload({"id": "server_id"}, job_id="local").id == "server_id"


def test_outcome_ready_only_without_reason():
    task = GenerationTask(task_key="t1", prompt="p", status=TaskStatus.COMPLETED)

    assert TaskOutcome.from_task(task).ready is True

    task.failure_reason = FailureReason.SETTLEMENT_FAILED
    outcome = TaskOutcome.from_task(task)

    assert outcome.ready is False
    assert outcome.message == USER_MESSAGES[FailureReason.SETTLEMENT_FAILED]


def test_every_reason_has_a_message():
    assert set(USER_MESSAGES) == set(FailureReason)


def test_terminal_statuses():
    assert TaskStatus.SUBMITTING.is_terminal is False
    assert TaskStatus.POLLING.is_terminal is False
    assert TaskStatus.TIMED_OUT.is_terminal is True
