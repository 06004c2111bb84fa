"""
Resilience patterns for external dependencies.

Components:
- backoff.py: tenacity retry with jittered exponential waits
"""

from slidegen.resilience.backoff import BackoffPolicy, jittered_interval, with_retry

__all__ = [
    "BackoffPolicy",
    "jittered_interval",
    "with_retry",
]
