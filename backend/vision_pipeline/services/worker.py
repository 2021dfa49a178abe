from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from vision_pipeline.models.entities import JobStatus, VisionJob, utcnow
from vision_pipeline.services.jobs import JobStore
from vision_pipeline.services.pipeline import JobProcessor

logger = logging.getLogger(__name__)


class JobScheduler:
    """Polls the job table and keeps at most ``max_concurrent_jobs`` attempts in flight.

    New jobs are taken oldest first. Failed jobs that still have retries left
    share the same concurrency budget, as do running jobs whose attempt was lost
    (restart, failed store write); those are failed as timed out. Each attempt
    runs as its own task, so a tick never waits on the work it dispatched.
    """

    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        max_concurrent_jobs: int = 3,
        poll_interval_s: float = 2.0,
    ):
        self.store = store
        self.processor = processor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval_s = poll_interval_s

        self.active_jobs = 0
        self.jobs_processed = 0
        self.last_poll_at: Optional[datetime] = None
        self._in_flight: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_running:
            logger.info("Job scheduler already running")
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info(
            f"Job scheduler started | interval={self.poll_interval_s}s | max_concurrent={self.max_concurrent_jobs}"
        )

    async def stop(self, drain: bool = False) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if drain:
            await self.drain()
        logger.info("Job scheduler stopped")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Job scheduler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval_s)

    async def tick(self) -> int:
        """Dispatch new, retry-eligible and stalled jobs into free slots. Returns how many started."""
        self.last_poll_at = utcnow()
        dispatched = 0

        slots = self.max_concurrent_jobs - self.active_jobs
        if slots > 0:
            batch: list[VisionJob] = []
            taken = set(self._in_flight)
            for _ in range(slots):
                job = await asyncio.to_thread(self.store.get_next_pending, taken)
                if job is None:
                    break
                batch.append(job)
                taken.add(job.id)
            for job in batch:
                self._dispatch(job)
            dispatched += len(batch)
            if batch:
                logger.info(f"Starting {len(batch)} jobs ({self.active_jobs}/{self.max_concurrent_jobs} active)")

        limit = self.max_concurrent_jobs - self.active_jobs
        if limit > 0:
            retries = await asyncio.to_thread(self.store.get_retry_eligible, limit, set(self._in_flight))
            for job in retries[:limit]:
                self._dispatch(job)
            dispatched += len(retries[:limit])
            if retries:
                logger.info(f"Retrying {len(retries[:limit])} failed jobs")

        limit = self.max_concurrent_jobs - self.active_jobs
        if limit > 0:
            cutoff = utcnow() - self.processor.job_timeout
            stalled = await asyncio.to_thread(self.store.get_stalled, limit, cutoff, set(self._in_flight))
            for job in stalled[:limit]:
                self._dispatch(job, self.processor.recover)
            dispatched += len(stalled[:limit])
            if stalled:
                logger.warning(f"Recovering {len(stalled[:limit])} stalled jobs")

        return dispatched

    def _dispatch(self, job: VisionJob, handler: Optional[Callable[[VisionJob], Awaitable[VisionJob]]] = None) -> None:
        # Slot is reserved before anything is awaited
        self.active_jobs += 1
        self._in_flight.add(job.id)
        task = asyncio.get_running_loop().create_task(
            self._run(job, handler or self.processor.process), name=f"vision-job-{job.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: VisionJob, handler: Callable[[VisionJob], Awaitable[VisionJob]]) -> None:
        logger.debug(f"[Job {job.id}] dispatched (active jobs: {self.active_jobs}/{self.max_concurrent_jobs})")
        try:
            result = await handler(job)
            if result.status == JobStatus.COMPLETE.value:
                self.jobs_processed += 1
        except Exception:
            logger.exception(f"[Job {job.id}] processing aborted")
        finally:
            self.active_jobs -= 1
            self._in_flight.discard(job.id)
            logger.debug(f"[Job {job.id}] finished (active jobs: {self.active_jobs}/{self.max_concurrent_jobs})")

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "poll_interval_s": self.poll_interval_s,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "max_retries": self.store.max_retries,
            "job_timeout_s": self.processor.job_timeout.total_seconds(),
            "active_jobs": self.active_jobs,
            "jobs_processed": self.jobs_processed,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }
