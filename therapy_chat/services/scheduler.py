import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from therapy_chat.core.config import settings
from therapy_chat.core.config.logging import get_logger

logger = get_logger(__name__)

AttemptFunc = Callable[[int], Awaitable[Optional[bool]]]


# ==================================================
# Periodic Task
# ==================================================
class PeriodicTask:
    """
    Runs `func(attempt)` up to `max_attempts` times, `interval` seconds apart.

    `func` returns True to stop early. An exception is logged and ends the task;
    nothing is rescheduled after a failure.
    """

    def __init__(self, func: AttemptFunc, interval: float, max_attempts: int, name: Optional[str] = None):
        self.func = func
        self.interval = interval
        self.max_attempts = max_attempts
        self.name = name or getattr(func, "__name__", "periodic_task")
        self.attempts = 0
        self.finished_reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    async def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        if self.finished_reason is None:
            self.finished_reason = "stopped"

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                result = self.func(self.attempts)
                done = await result if inspect.isawaitable(result) else result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("periodic_task_failed", task=self.name, attempt=self.attempts, error=str(e), exc_info=True)
                self.finished_reason = "error"
                return

            if done:
                self.finished_reason = "done"
                return
            if self.attempts < self.max_attempts:
                await asyncio.sleep(self.interval)

        logger.warning("periodic_task_attempts_exhausted", task=self.name, attempts=self.attempts)
        self.finished_reason = "exhausted"


# ==================================================
# Fine-tune Polling
# ==================================================
# Keeps strong references so running pollers are not garbage collected
_running: Set[PeriodicTask] = set()


def _track(task: PeriodicTask) -> PeriodicTask:
    _running.add(task)
    task._task.add_done_callback(lambda _: _running.discard(task))
    return task


def _poll_attempt(snapshot_id: str, job_id: str, client=None, notifier=None) -> AttemptFunc:
    async def attempt(number: int) -> bool:
        from therapy_chat.services.fine_tune import TERMINAL_JOB_STATUSES, fine_tune_client, fine_tune_notifier

        job = await (client or fine_tune_client).retrieve_job(job_id)
        status = job.get("status")
        logger.info("fine_tune_job_polled", job_id=job_id, status=status, attempt=number)

        payload: Dict[str, Any] = {
            "id": job.get("id") or job_id,
            "status": status,
            "model": job.get("model"),
            "error": job.get("error"),
            "snapshotId": snapshot_id,
        }
        await (notifier or fine_tune_notifier).handle(payload)
        return status in TERMINAL_JOB_STATUSES

    return attempt


def poll_fine_tune_status(
    snapshot_id: str,
    job_id: str,
    *,
    interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
    client=None,
    notifier=None,
) -> PeriodicTask:
    """Poll the job every few minutes until it reaches a terminal status."""
    task = PeriodicTask(
        _poll_attempt(snapshot_id, job_id, client, notifier),
        interval=settings.FINE_TUNE_POLL_INTERVAL_SECONDS if interval is None else interval,
        max_attempts=max_attempts or settings.FINE_TUNE_MAX_POLL_ATTEMPTS,
        name=f"poll_fine_tune:{job_id}",
    )
    return _track(task.start())


def kickoff_poll_fine_tune_status(
    snapshot_id: str,
    job_id: str,
    *,
    client=None,
    notifier=None,
    follow_up: Optional[Callable[..., PeriodicTask]] = None,
) -> PeriodicTask:
    """
    Quick status check right after job creation. A job that is still
    running after the last check is handed to `poll_fine_tune_status`.
    """
    check = _poll_attempt(snapshot_id, job_id, client, notifier)

    async def attempt(number: int) -> bool:
        terminal = await check(number)
        if not terminal and number >= settings.FINE_TUNE_KICKOFF_ATTEMPTS:
            logger.info("fine_tune_polling_handed_off", job_id=job_id, snapshot_id=snapshot_id)
            (follow_up or poll_fine_tune_status)(snapshot_id, job_id, client=client, notifier=notifier)
        return terminal

    task = PeriodicTask(
        attempt,
        interval=0,
        max_attempts=settings.FINE_TUNE_KICKOFF_ATTEMPTS,
        name=f"kickoff_poll_fine_tune:{job_id}",
    )
    return _track(task.start())


async def stop_all() -> None:
    for task in list(_running):
        await task.stop()
