"""
Prometheus metrics for ledger, generation and entitlement observability.

Metrics tracked:
- Ledger operations (counter) by kind and result, units moved (counter)
- Generation task outcomes (counter) by status and reason
- Poll attempts (counter) by result, generator call latency (histogram)
- Purchases (counter) by result
- Pending credits awaiting replay (gauge)
- Retries against external dependencies (counter)

Exposed for scraping by the host process via generate_metrics().
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# LEDGER METRICS
# ============================================================================

ledger_operations_total = Counter(
    "slidegen_ledger_operations_total",
    "Total ledger operations",
    labelnames=["operation", "result"],  # debit/credit, success/insufficient/error
)

ledger_units_total = Counter(
    "slidegen_ledger_units_total",
    "Total token units moved through the ledger",
    labelnames=["operation", "pool"],  # debit/credit, free/premium
)

pending_credits = Gauge(
    "slidegen_pending_credits",
    "Purchases settled at the provider but not yet credited",
)

# ============================================================================
# GENERATION METRICS
# ============================================================================

generation_tasks_total = Counter(
    "slidegen_generation_tasks_total",
    "Generation tasks reaching a terminal state",
    labelnames=["status", "reason"],
)

generation_polls_total = Counter(
    "slidegen_generation_polls_total",
    "Job status polls",
    labelnames=["result"],  # processing, completed, failed, transient, fatal
)

generator_call_duration_seconds = Histogram(
    "slidegen_generator_call_duration_seconds",
    "Generator API call latency",
    labelnames=["operation", "success"],  # submit/status
    buckets=(
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
        5.000,  # 5s
        10.00,  # 10s
        30.00,  # 30s (client timeout)
    ),
)

generation_task_duration_seconds = Histogram(
    "slidegen_generation_task_duration_seconds",
    "Wall-clock time from submission to terminal state",
    labelnames=["status"],
    buckets=(1, 5, 10, 30, 60, 100, 180, 300),
)

# ============================================================================
# ENTITLEMENT METRICS
# ============================================================================

purchases_total = Counter(
    "slidegen_purchases_total",
    "Purchase attempts by result",
    labelnames=["result"],  # credited, already_owned, cancelled, error, credit_failed
)

entitlement_refresh_total = Counter(
    "slidegen_entitlement_refresh_total",
    "Entitlement refreshes",
    labelnames=["trigger", "success"],
)

# ============================================================================
# RESILIENCE METRICS
# ============================================================================

retries_total = Counter(
    "slidegen_retries_total",
    "Retries against external dependencies",
    labelnames=["operation"],  # credit, provider
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_ledger_operation(operation: str, result: str, free: int = 0, premium: int = 0) -> None:
    """
    Track a ledger debit/credit.

    Args:
        operation: "debit" or "credit"
        result: "success", "insufficient" or "error"
        free: Free units moved (only counted on success)
        premium: Premium units moved (only counted on success)
    """
    ledger_operations_total.labels(operation=operation, result=result).inc()
    if result == "success":
        if free:
            ledger_units_total.labels(operation=operation, pool="free").inc(free)
        if premium:
            ledger_units_total.labels(operation=operation, pool="premium").inc(premium)


def set_pending_credits(count: int) -> None:
    pending_credits.set(count)


def track_task_outcome(status: str, reason: str | None, duration_seconds: float) -> None:
    """Track a generation task reaching a terminal state."""
    generation_tasks_total.labels(status=status, reason=reason or "none").inc()
    generation_task_duration_seconds.labels(status=status).observe(duration_seconds)


def track_poll(result: str) -> None:
    generation_polls_total.labels(result=result).inc()


def track_generator_call(operation: str, success: bool, duration_seconds: float) -> None:
    generator_call_duration_seconds.labels(
        operation=operation,
        success="true" if success else "false",
    ).observe(duration_seconds)


def track_purchase(result: str) -> None:
    purchases_total.labels(result=result).inc()


def track_entitlement_refresh(trigger: str, success: bool) -> None:
    entitlement_refresh_total.labels(
        trigger=trigger,
        success="true" if success else "false",
    ).inc()


def track_retry(operation: str) -> None:
    retries_total.labels(operation=operation).inc()


def generate_metrics() -> tuple[bytes, str]:
    """
    Render all metrics in Prometheus text format.

    Returns:
        (payload, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
