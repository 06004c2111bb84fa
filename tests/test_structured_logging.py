"""
Tests for structured logging infrastructure.

Tests:
- JSON and console output configuration
- Session context propagation (user_id, task_key, trace_id)
- Credential redaction
- Operation context timing
"""

import asyncio

import pytest

from slidegen.observability.logging import (
    OperationContext,
    SessionContext,
    add_session_context,
    configure_logging,
    get_logger,
    get_task_key,
    get_trace_id,
    get_user_id,
    redact_sensitive_fields,
    set_task_key,
    set_user_id,
)


def test_configure_logging_json_output():
    """Test that JSON logging can be configured."""
    configure_logging(log_level="INFO", json_output=True, colorized=False)

    logger = get_logger("test")
    logger.info("Task settled", job_id="pres_1", balance_total=3)


def test_configure_logging_console_output():
    """Test that console logging can be configured."""
    configure_logging(log_level="DEBUG", json_output=False, colorized=False)

    logger = get_logger("test")
    logger.debug("Polling", poll_count=2)
    logger.warning("Transient poll error", transient_errors=1)


def test_session_context():
    """Test session context propagation and reset."""
    with SessionContext(user_id="user_abc", task_key="task_1"):
        assert get_user_id() == "user_abc"
        assert get_task_key() == "task_1"
        assert get_trace_id().startswith("trace_")

    assert get_user_id() is None
    assert get_task_key() is None
    assert get_trace_id() is None


def test_nested_session_contexts():
    with SessionContext(user_id="user_1"):
        with SessionContext(user_id="user_2", trace_id="trace_fixed"):
            assert get_user_id() == "user_2"
            assert get_trace_id() == "trace_fixed"
        assert get_user_id() == "user_1"


@pytest.mark.asyncio
async def test_task_key_does_not_leak_between_tasks():
    """Test that each asyncio task keeps its own task_key."""

    async def tracker(key: str) -> str | None:
        set_task_key(key)
        await asyncio.sleep(0)
        return get_task_key()

    results = await asyncio.gather(tracker("task_a"), tracker("task_b"))

    assert results == ["task_a", "task_b"]
    assert get_task_key() is None


def test_add_session_context_injects_fields():
    with SessionContext(user_id="user_abc", task_key="task_9", trace_id="trace_x"):
        event = add_session_context(None, "info", {"event": "hello"})

    assert event["user_id"] == "user_abc"
    assert event["task_key"] == "task_9"
    assert event["trace_id"] == "trace_x"


def test_redact_sensitive_fields():
    """Test that credentials never reach the sink in full."""
    event = redact_sensitive_fields(
        None,
        "info",
        {
            "event": "request",
            "api_key": "sk-live-abcdefghijklmnop",
            "id_token": "short",
            "email": "someone@example.com",
            "units": 3,
        },
    )

    assert event["api_key"] == "sk-liv***nop"
    assert event["id_token"] == "***REDACTED***"
    assert event["email"] == "***@example.com"
    assert event["units"] == 3


def test_set_user_id():
    set_user_id("user_manual")
    try:
        assert get_user_id() == "user_manual"
    finally:
        set_user_id(None)


def test_operation_context():
    """Test operation context with timing."""
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with OperationContext("ledger_sweep", minimum=1) as op:
        assert op.start_time is not None


def test_operation_context_with_exception():
    """Test operation context logs errors and re-raises."""
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    with pytest.raises(ValueError):
        with OperationContext("ledger_sweep", minimum=1):
            raise ValueError("Test error")
