"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation
- Session context propagation (user_id, task_key, trace_id)
- Redaction of credentials (generator API keys, bearer/id tokens)

Architecture:
- structlog for structured logging
- Context variables for session-scoped data (propagate across await points)
- Processors for formatting and enrichment
- Multiple output formats (JSON for prod, console for dev)
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for session-scoped data.
# Each asyncio task gets a copy, so a tracker's task_key never leaks into another.
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
task_key_var: ContextVar[str | None] = ContextVar("task_key", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_SENSITIVE_FIELDS = {
    "api_key",
    "authorization",
    "id_token",
    "bearer",
    "password",
    "secret",
    "token",
    "fetch_token",
}


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_session_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add session context to log events.

    Injects:
    - user_id: Authenticated user (if a session is attached)
    - task_key: Generation task being tracked (inside a tracker)
    - trace_id: Correlation ID for one user-initiated flow
    """
    user_id = user_id_var.get()
    if user_id:
        event_dict["user_id"] = user_id

    task_key = task_key_var.get()
    if task_key:
        event_dict["task_key"] = task_key

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 timestamp with microsecond precision."""
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        + f".{int((time.time() % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    from slidegen.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials before they reach a log sink.

    Long values keep a short prefix/suffix for debugging (the original app
    logged the first 10 characters of the generator key); short values are
    replaced entirely.
    """
    for key in list(event_dict.keys()):
        if key.lower() in _SENSITIVE_FIELDS:
            value = event_dict[key]
            if isinstance(value, str):
                if len(value) > 12:
                    event_dict[key] = f"{value[:6]}***{value[-3:]}"
                else:
                    event_dict[key] = "***REDACTED***"

        if key.lower() == "email" and isinstance(event_dict[key], str):
            email = event_dict[key]
            if "@" in email:
                event_dict[key] = f"***@{email.split('@')[1]}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type / exception_message for error aggregation."""
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON (production):
        {
          "timestamp": "2026-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Task settled",
          "service": "slidegen",
          "user_id": "u_123",
          "task_key": "task_abc",
          "job_id": "pres_789"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_session_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Task settled", job_id="pres_789", balance_total=3)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class SessionContext:
    """
    Context manager for session-scoped logging.

    Usage:
        with SessionContext(user_id=session.user_id):
            logger.info("Refreshing entitlements")  # user_id, trace_id injected
    """

    def __init__(
        self,
        user_id: str | None = None,
        task_key: str | None = None,
        trace_id: str | None = None,
    ):
        self.user_id = user_id
        self.task_key = task_key
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._user_id_token = None
        self._task_key_token = None
        self._trace_id_token = None

    def __enter__(self):
        # Always set (even None) so reset is reliable
        self._user_id_token = user_id_var.set(self.user_id)
        self._task_key_token = task_key_var.set(self.task_key)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._task_key_token is not None:
            task_key_var.reset(self._task_key_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("ledger_debit", units=1):
            await store.apply_debit(...)
        # Logs: "ledger_debit completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=True,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str | None) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def set_task_key(task_key: str | None) -> None:
    """Set task key for current context."""
    task_key_var.set(task_key)


def get_user_id() -> str | None:
    return user_id_var.get()


def get_task_key() -> str | None:
    return task_key_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()
