"""
Observability infrastructure.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with session context
"""

from slidegen.observability.logging import configure_logging, get_logger
from slidegen.observability.metrics import (
    generate_metrics,
    track_ledger_operation,
    track_poll,
    track_purchase,
    track_task_outcome,
)

__all__ = [
    "configure_logging",
    "generate_metrics",
    "get_logger",
    "track_ledger_operation",
    "track_poll",
    "track_purchase",
    "track_task_outcome",
]
