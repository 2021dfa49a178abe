"""Drives one vision job through its stages, one attempt at a time.

Each stage is a collaborator call that consumes the outputs of the stages
before it. Collaborator failures are converted into an ``error`` update with
the failing stage recorded; store failures are left to propagate, since a lost
write would leave the job and the scheduler's accounting out of step.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from vision_pipeline.models.entities import ErrorStage, JobStatus, VisionJob, utcnow
from vision_pipeline.services.content import ContentGenerator, ContentRequest
from vision_pipeline.services.jobs import JobCancelledError, JobStore
from vision_pipeline.services.llm_json import strip_code_fence, to_strict_json
from vision_pipeline.services.outputs import OutputStore, project_outputs
from vision_pipeline.services.vision import ImageAnalyzer, StageError

logger = logging.getLogger(__name__)

StageRunner = Callable[[VisionJob, dict[str, str]], Awaitable[Any]]


class JobTimeoutError(TimeoutError):
    pass


@dataclass(frozen=True)
class Stage:
    name: ErrorStage
    status: JobStatus
    progress: int
    output_field: str
    run: StageRunner


def compose_content_request(job: VisionJob, analysis: str) -> ContentRequest:
    return ContentRequest(
        product_info=f"Brand Visual Analysis:\n{analysis}",
        selling_points=job.purpose,
        target_audience=job.context or "",
        cta_offer=job.additional_instructions,
    )


def build_stages(analyzer: ImageAnalyzer, generator: ContentGenerator) -> list[Stage]:
    async def analyze(job: VisionJob, outputs: dict[str, str]) -> str:
        return await analyzer.analyze(job.source_url, job.context or "", job.purpose, float(job.creativity_level))

    async def generate(job: VisionJob, outputs: dict[str, str]) -> str:
        result = await generator.generate(compose_content_request(job, outputs["stage1_output"]))
        return result if isinstance(result, str) else to_strict_json(result)

    return [
        Stage(ErrorStage.STAGE1, JobStatus.STAGE1_RUNNING, 25, "stage1_output", analyze),
        Stage(ErrorStage.STAGE2, JobStatus.STAGE2_RUNNING, 60, "stage2_output", generate),
    ]


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        outputs: OutputStore,
        stages: list[Stage],
        job_timeout_s: float = 300.0,
        on_update: Optional[Callable[[VisionJob], None]] = None,
    ):
        self.store = store
        self.outputs = outputs
        self.stages = stages
        self.job_timeout = timedelta(seconds=job_timeout_s)
        self.on_update = on_update

    def is_stale(self, job: VisionJob, now: datetime | None = None) -> bool:
        started = job.requeued_at or job.created_at
        return (now or utcnow()) - started > self.job_timeout

    async def process(self, job: VisionJob) -> VisionJob:
        try:
            return await self._attempt(job)
        except JobCancelledError:
            logger.info(f"[Job {job.id}] cancelled while queued, dropping attempt")
            return job

    async def recover(self, job: VisionJob) -> VisionJob:
        """Fail a job left in a running status by an attempt that never finished."""
        logger.warning(f"[Job {job.id}] stalled in {job.status}, failing it as timed out")
        return await self._fail(
            job,
            ErrorStage.TIMEOUT,
            JobTimeoutError(f"Job stalled in {job.status} past {self.job_timeout.total_seconds():.0f}s timeout"),
        )

    async def _attempt(self, job: VisionJob) -> VisionJob:
        if self.is_stale(job):
            logger.warning(f"[Job {job.id}] exceeded {self.job_timeout.total_seconds():.0f}s before processing")
            return await self._fail(
                job,
                ErrorStage.TIMEOUT,
                JobTimeoutError(f"Job exceeded {self.job_timeout.total_seconds():.0f}s timeout"),
            )

        outputs: dict[str, str] = {}
        for stage in self.stages:
            logger.info(f"[Job {job.id}] {stage.name.value} started")
            job = await self._update(job.id, stage.status, stage.progress)
            try:
                raw = await stage.run(job, outputs)
                output = strip_code_fence(raw) if raw else ""
                if not output:
                    raise StageError(f"{stage.name.value} returned empty content")
            except Exception as exc:
                logger.warning(f"[Job {job.id}] {stage.name.value} failed: {exc}")
                return await self._fail(job, stage.name, exc)
            outputs[stage.output_field] = output
            job = await self._update(job.id, stage.status, stage.progress, {stage.output_field: output})

        await self._save_structured_output(job)
        job = await self._update(job.id, JobStatus.COMPLETE, 100)
        logger.info(f"[Job {job.id}] complete")
        return job

    async def _save_structured_output(self, job: VisionJob) -> None:
        try:
            projection = project_outputs(job.stage1_output, job.stage2_output)
        except ValueError as exc:
            logger.warning(f"[Job {job.id}] outputs did not parse, keeping raw text only: {exc}")
            return
        await asyncio.to_thread(self.outputs.save, job, projection)

    async def _fail(self, job: VisionJob, stage: ErrorStage, exc: BaseException) -> VisionJob:
        retry_count = min(job.retry_count + 1, job.max_retries)
        detail = str(exc) or type(exc).__name__
        if retry_count < job.max_retries:
            message = f"{stage.value}: {detail}. Retry {retry_count}/{job.max_retries}"
        else:
            message = f"Failed after {job.max_retries} attempts in {stage.value}: {detail}"
            logger.error(f"[Job {job.id}] max retries reached")
        return await self._update(
            job.id,
            JobStatus.ERROR,
            job.progress,
            {"error_message": message, "error_stage": stage.value, "retry_count": retry_count},
        )

    async def _update(self, job_id: int, status: JobStatus, progress: int, patch: dict | None = None) -> VisionJob:
        job = await asyncio.to_thread(self.store.update_status, job_id, status, progress, patch)
        if self.on_update is not None:
            self.on_update(job)
        return job
