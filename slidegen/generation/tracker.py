"""
Generation task tracker: submit -> poll -> settle for one job.

State machine (initial SUBMITTING; terminal COMPLETED, FAILED, TIMED_OUT):

    SUBMITTING --job id----------> POLLING
    SUBMITTING --submit error----> FAILED     (submission_error / auth_error)
    POLLING    --processing------> POLLING    (progress heuristic advances)
    POLLING    --completed-------> COMPLETED  (debit once; settlement_failed if refused)
    POLLING    --failed----------> FAILED     (job_failed)
    POLLING    --ceiling/deadline> TIMED_OUT

Guarantees:
- At most one driver task per tracker; start() while running is a no-op
- The ledger is debited at most once, gated by task.settled
- Transient poll errors never advance the poll ceiling
- The wall-clock deadline uses an injectable clock so suspension counts
- Nothing fires after cancel(); in-flight results are discarded
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from slidegen.config import PollingConfig
from slidegen.generation.client import (
    AuthError,
    GenerationClient,
    JobFailedError,
    SubmissionError,
    TaskTimedOutError,
    TransientPollError,
)
from slidegen.generation.progress import ProgressSimulator
from slidegen.ledger.service import TokenLedger
from slidegen.models.task import (
    FailureReason,
    GenerationTask,
    JobState,
    JobStatus,
    TaskOutcome,
    TaskStatus,
)
from slidegen.observability.logging import set_task_key
from slidegen.observability.metrics import track_poll, track_task_outcome
from slidegen.resilience.backoff import jittered_interval
from slidegen.storage.ledger_store import LedgerStoreError

logger = logging.getLogger(__name__)

# Submission success shows at least this much progress
SUBMITTED_PROGRESS = 20

TaskListener = Callable[[GenerationTask], None]


class GenerationTaskTracker:
    """
    Drives one generation job to a terminal outcome.

    Usage:
        tracker = GenerationTaskTracker(client, ledger, settings.polling)
        tracker.on_update(lambda task: render(task.progress))
        outcome = await tracker.run("History of flight")
        if outcome.ready:
            ...
    """

    def __init__(
        self,
        client: GenerationClient,
        ledger: TokenLedger,
        config: PollingConfig,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            client: Generator client (real or mock)
            ledger: Ledger debited on confirmed completion
            config: Poll interval, ceiling, deadline and progress tick
            clock: Wall clock in seconds (deadline measurement)
            sleep: Awaitable used between polls
        """
        self.client = client
        self.ledger = ledger
        self.config = config
        self._clock = clock
        self._sleep = sleep

        self.task: GenerationTask | None = None
        self._progress = ProgressSimulator()
        self._listeners: list[TaskListener] = []

        self._started = False
        self._polling_started = False
        self._driver: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._outcome: TaskOutcome | None = None
        self._started_at: float | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def outcome(self) -> TaskOutcome | None:
        return self._outcome

    @property
    def is_running(self) -> bool:
        return self._started and not self._done.is_set()

    def on_update(self, callback: TaskListener) -> Callable[[], None]:
        """
        Observe task snapshots on every state or progress change.

        Returns:
            Unsubscribe function
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def start(self, prompt: str) -> str:
        """
        Pre-check the balance and schedule submission and polling.

        Returns immediately with the local task key. A second call while the
        task exists is a no-op returning the same key.
        """
        if self._started and self.task is not None:
            logger.debug("Tracker already started", extra={"task_key": self.task.task_key})
            return self.task.task_key

        self._started = True
        self._started_at = self._clock()
        self.task = GenerationTask(
            task_key=f"task_{uuid.uuid4().hex[:16]}",
            prompt=prompt,
            progress=self._progress.value,
        )
        set_task_key(self.task.task_key)

        if self.ledger.user_id is None:
            self._finish(TaskStatus.FAILED, FailureReason.AUTH_ERROR, "No signed-in user")
            return self.task.task_key

        try:
            balance = await self.ledger.refresh_balance()
        except LedgerStoreError as e:
            logger.warning(f"Balance refresh failed, using cached balance: {e}")
            balance = self.ledger.get_balance()

        if not balance.can_afford(1):
            logger.info(
                "Generation refused: insufficient balance",
                extra={"task_key": self.task.task_key, "balance_total": balance.total},
            )
            self._finish(TaskStatus.FAILED, FailureReason.INSUFFICIENT_BALANCE)
            return self.task.task_key

        if self._done.is_set():
            # Cancelled while the balance was being read
            return self.task.task_key

        self._driver = asyncio.get_running_loop().create_task(self._drive())
        return self.task.task_key

    async def wait(self) -> TaskOutcome:
        """Await the terminal outcome."""
        if not self._started:
            raise RuntimeError("Tracker has not been started")
        await self._done.wait()
        return self._outcome

    async def run(self, prompt: str) -> TaskOutcome:
        """Start and wait."""
        await self.start(prompt)
        return await self.wait()

    def cancel(self) -> None:
        """
        Stop all timers and polling.

        No-op once terminal or once settlement has begun (the debit is not
        interruptible).
        """
        if self.task is None or self._done.is_set() or self.task.settled:
            return

        logger.info("Generation task cancelled", extra={"task_key": self.task.task_key})
        self._finish(TaskStatus.FAILED, FailureReason.CANCELLED)

        current = asyncio.current_task() if _loop_running() else None
        if self._driver is not None and self._driver is not current:
            self._driver.cancel()

    async def handle_status(self, status: JobStatus) -> None:
        """
        Apply one normalized status to the task.

        Used by the polling loop and by callers that receive a completion
        signal out of band. Duplicate completions are ignored.
        """
        task = self.task
        if task is None or self._done.is_set():
            return
        if task.status != TaskStatus.POLLING:
            # Nothing to settle against until the job id is known
            logger.debug(
                "Status ignored before polling",
                extra={"task_key": task.task_key, "state": status.state.value},
            )
            return

        if status.state == JobState.COMPLETED:
            await self._settle(status)
            return

        if status.state == JobState.FAILED:
            self._finish(
                TaskStatus.FAILED,
                FailureReason.JOB_FAILED,
                status.error or "Generator reported the job as failed",
            )
            return

        if status.progress is not None:
            self._set_progress(self._progress.raise_to(status.progress))

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self) -> None:
        task = self.task
        set_task_key(task.task_key)
        if self._done.is_set():
            return

        try:
            job_id = await self._submit(task.prompt)
            if job_id is None:
                return
            await self._start_polling(job_id)
        except AuthError as e:
            self._finish(TaskStatus.FAILED, FailureReason.AUTH_ERROR, str(e))
        except SubmissionError as e:
            self._finish(TaskStatus.FAILED, FailureReason.SUBMISSION_ERROR, str(e))
        except JobFailedError as e:
            self._finish(TaskStatus.FAILED, FailureReason.JOB_FAILED, str(e))
        except TaskTimedOutError as e:
            self._finish(TaskStatus.TIMED_OUT, FailureReason.TIMED_OUT, str(e))
        except Exception as e:
            logger.error(
                f"Unexpected generation error: {e}",
                extra={"task_key": task.task_key, "job_id": task.id},
                exc_info=True,
            )
            self._finish(TaskStatus.FAILED, FailureReason.JOB_FAILED, str(e))

    async def _submit(self, prompt: str) -> str | None:
        job_id = await self.client.submit(prompt)
        if self._done.is_set():
            # Cancelled while submitting
            return None

        self.task.id = job_id
        self.task.status = TaskStatus.POLLING
        self._set_progress(self._progress.raise_to(SUBMITTED_PROGRESS))
        logger.info(
            "Generation job polling",
            extra={"task_key": self.task.task_key, "job_id": job_id},
        )
        return job_id

    async def _start_polling(self, job_id: str) -> None:
        if self._polling_started:
            return
        self._polling_started = True

        if self._ticker is not None:
            self._ticker.cancel()
        if self.config.progress_tick_seconds > 0:
            self._ticker = asyncio.get_running_loop().create_task(self._tick_progress())

        try:
            await self._poll_loop(job_id)
        finally:
            if self._ticker is not None:
                self._ticker.cancel()
                self._ticker = None

    async def _poll_loop(self, job_id: str) -> None:
        task = self.task
        deadline_seconds = self.config.effective_deadline_seconds
        # A zero deadline (e.g. zero interval) leaves only the poll ceiling
        deadline = self._started_at + deadline_seconds if deadline_seconds > 0 else None

        while not self._done.is_set():
            self._check_ceiling(deadline)

            await self._sleep(
                jittered_interval(
                    self.config.interval_seconds, self.config.interval_jitter_seconds
                )
            )
            if self._done.is_set():
                return
            self._check_ceiling(deadline)

            try:
                status = await self.client.get_status(job_id, topic=task.prompt)
            except TransientPollError as e:
                task.transient_errors += 1
                track_poll("transient")
                logger.warning(
                    f"Transient poll error: {e}",
                    extra={
                        "task_key": task.task_key,
                        "job_id": job_id,
                        "transient_errors": task.transient_errors,
                    },
                )
                continue
            except AuthError:
                track_poll("fatal")
                raise

            if self._done.is_set():
                # Cancelled while the request was in flight
                return

            task.poll_count += 1
            track_poll(status.state.value)
            logger.debug(
                "Job status",
                extra={
                    "task_key": task.task_key,
                    "job_id": job_id,
                    "state": status.state.value,
                    "poll_count": task.poll_count,
                },
            )
            await self.handle_status(status)

    def _check_ceiling(self, deadline: float | None) -> None:
        task = self.task
        if task.poll_count >= self.config.max_polls:
            raise TaskTimedOutError(f"No completion after {task.poll_count} status checks")
        if deadline is not None and self._clock() >= deadline:
            raise TaskTimedOutError(
                f"No completion within {self.config.effective_deadline_seconds:.0f}s"
            )

    async def _tick_progress(self) -> None:
        while not self._done.is_set():
            await asyncio.sleep(self.config.progress_tick_seconds)
            if self._done.is_set():
                return
            before = self.task.progress
            after = self._progress.step()
            if after != before:
                self._set_progress(after)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(self, status: JobStatus) -> None:
        task = self.task
        if task.settled:
            logger.info(
                "Duplicate completion ignored",
                extra={"task_key": task.task_key, "job_id": task.id},
            )
            return
        task.settled = True

        task.slide_count = status.slide_count
        task.title = status.title

        debited = await self.ledger.debit(1, reference=task.id)
        if not debited:
            logger.error(
                "Settlement failed: debit refused after completion",
                extra={"task_key": task.task_key, "job_id": task.id},
            )
            self._finish(
                TaskStatus.COMPLETED,
                FailureReason.SETTLEMENT_FAILED,
                "Ledger refused the debit",
            )
            return

        self._set_progress(self._progress.complete())
        self._finish(TaskStatus.COMPLETED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_progress(self, value: int) -> None:
        # Never decreases
        if value > self.task.progress:
            self.task.progress = value
            self._notify()

    def _finish(
        self,
        status: TaskStatus,
        reason: FailureReason | None = None,
        message: str | None = None,
    ) -> None:
        if self._done.is_set():
            return

        task = self.task
        task.status = status
        task.failure_reason = reason
        task.error_message = message
        task.finished_at = datetime.now(UTC)

        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

        self._outcome = TaskOutcome.from_task(task, balance_after=self.ledger.get_balance())
        self._done.set()

        duration = max(0.0, self._clock() - (self._started_at or self._clock()))
        track_task_outcome(status.value, reason.value if reason else None, duration)
        log = logger.info if reason is None else logger.warning
        log(
            "Generation task finished",
            extra={
                "task_key": task.task_key,
                "job_id": task.id,
                "state": status.value,
                "reason": reason.value if reason else None,
                "poll_count": task.poll_count,
                "transient_errors": task.transient_errors,
                "error": message,
            },
        )
        self._notify()

    def _notify(self) -> None:
        snapshot = self.task.model_copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Task listener failed: {e}", exc_info=True)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
