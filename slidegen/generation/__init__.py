"""
Generation task lifecycle.

Components:
- client.py: Generator API client (+ offline mock) and error classification
- progress.py: Simulated progress heuristic
- tracker.py: Submit -> poll -> settle state machine
"""

from slidegen.generation.client import (
    AuthError,
    GenerationClient,
    GenerationError,
    JobFailedError,
    MockGenerationClient,
    SubmissionError,
    TaskTimedOutError,
    TransientPollError,
)
from slidegen.generation.progress import ProgressSimulator
from slidegen.generation.tracker import GenerationTaskTracker

__all__ = [
    "AuthError",
    "GenerationClient",
    "GenerationError",
    "GenerationTaskTracker",
    "JobFailedError",
    "MockGenerationClient",
    "ProgressSimulator",
    "SubmissionError",
    "TaskTimedOutError",
    "TransientPollError",
]
