"""Durable retry scheduling for failed workflow executions."""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..core.models import RetryJob
from ..core.state import StateManager


logger = structlog.get_logger()


# Called with the execution id when a retry fires
RetryHandler = Callable[[str], Awaitable[Any]]


class RetryHandle:
    """Cancellable handle for one armed retry."""

    def __init__(self, job: RetryJob, task: Optional[asyncio.Task]):
        self.job = job
        self._task = task
        # Set once the timer elapsed and the handler was entered
        self.firing = False

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> bool:
        """Disarm the timer. The persisted job is left for the scheduler to remove."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()


class RetryScheduler:
    """
    Schedules retries as persisted jobs plus in-memory timers.

    Features:
    - Jobs survive restarts (resume() re-arms them)
    - Cancellation per execution or per rule
    - Handler errors are logged, never lost
    - join() waits for in-flight retries, including retries they schedule
    """

    def __init__(self, state_manager: StateManager):
        self.state = state_manager
        self._handler: Optional[RetryHandler] = None
        self._handles: dict[str, RetryHandle] = {}
        self._shutdown = False

    def set_handler(self, handler: RetryHandler) -> None:
        """Set the callback invoked when a retry fires."""
        self._handler = handler

    async def schedule(
        self,
        execution_id: str,
        rule_id: str,
        delay_seconds: float,
        attempt: int,
    ) -> RetryHandle:
        """
        Persist a retry job and arm its timer.

        After shutdown the job is only persisted, to be resumed later.
        """
        job = RetryJob(
            job_id=f"retry_{uuid.uuid4().hex[:12]}",
            execution_id=execution_id,
            rule_id=rule_id,
            run_at=time.time() + max(0.0, delay_seconds),
            attempt=attempt,
        )
        await self.state.save_retry_job(job)

        logger.info(
            "retry_job_scheduled",
            job_id=job.job_id,
            execution_id=execution_id,
            delay_seconds=delay_seconds,
            attempt=attempt,
        )

        if self._shutdown:
            return RetryHandle(job, None)
        return self._arm(job)

    async def resume(self) -> int:
        """Re-arm every persisted job. Returns the number of jobs armed."""
        self._shutdown = False
        jobs = await self.state.list_retry_jobs()

        armed = 0
        for job in jobs:
            if job.job_id in self._handles:
                continue
            self._arm(job)
            armed += 1

        if armed:
            logger.info("retry_jobs_resumed", count=armed)
        return armed

    async def cancel(self, execution_id: str) -> int:
        """Cancel all pending retries of one execution."""
        jobs = await self.state.list_retry_jobs(execution_id=execution_id)
        for job in jobs:
            await self._cancel_job(job)
        return len(jobs)

    async def cancel_for_rule(self, rule_id: str) -> list[str]:
        """Cancel all pending retries of a rule. Returns affected execution ids."""
        jobs = await self.state.list_retry_jobs(rule_id=rule_id)
        for job in jobs:
            await self._cancel_job(job)

        if jobs:
            logger.info("retry_jobs_cancelled", rule_id=rule_id, count=len(jobs))
        return [job.execution_id for job in jobs]

    def pending_count(self) -> int:
        """Number of armed retries in this process."""
        return sum(1 for handle in self._handles.values() if handle.armed)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until no retry is armed or running."""
        start_time = time.monotonic()

        while self._handles:
            tasks = [handle._task for handle in self._handles.values() if handle._task]
            remaining = None
            if timeout is not None:
                remaining = timeout - (time.monotonic() - start_time)
                if remaining <= 0:
                    raise asyncio.TimeoutError("Retries still pending")
            await asyncio.wait(tasks, timeout=remaining)

    async def shutdown(self) -> None:
        """
        Disarm all timers. Persisted jobs stay for the next resume().

        A handler cut off mid-attempt keeps its job too; the retry handler
        sees the interrupted execution when the job fires again.
        """
        self._shutdown = True
        handles = list(self._handles.values())
        for handle in handles:
            if handle.firing:
                logger.warning(
                    "retry_interrupted_by_shutdown",
                    job_id=handle.job_id,
                    execution_id=handle.job.execution_id,
                )
            handle.cancel()

        tasks = [handle._task for handle in handles if handle._task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()

    def _arm(self, job: RetryJob) -> RetryHandle:
        task = asyncio.create_task(self._run(job), name=job.job_id)
        handle = RetryHandle(job, task)
        self._handles[job.job_id] = handle
        task.add_done_callback(lambda _: self._handles.pop(job.job_id, None))
        return handle

    async def _run(self, job: RetryJob) -> None:
        await asyncio.sleep(max(0.0, job.run_at - time.time()))

        if self._handler is None:
            logger.error("retry_handler_missing", job_id=job.job_id)
            return

        handle = self._handles.get(job.job_id)
        if handle:
            handle.firing = True

        try:
            await self._handler(job.execution_id)
        except Exception:
            logger.exception(
                "retry_handler_error",
                job_id=job.job_id,
                execution_id=job.execution_id,
            )

        # Cancellation skips this, so a disarmed job is kept for resume()
        await self.state.delete_retry_job(job.job_id)

    async def _cancel_job(self, job: RetryJob) -> None:
        handle = self._handles.pop(job.job_id, None)
        if handle and handle.cancel() and handle._task is not asyncio.current_task():
            if handle.firing:
                logger.warning(
                    "retry_cancelled_in_flight",
                    job_id=job.job_id,
                    execution_id=job.execution_id,
                )
            # Let the attempt unwind so callers see its last persisted status
            await asyncio.gather(handle._task, return_exceptions=True)
        await self.state.delete_retry_job(job.job_id)
