from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func
from sqlmodel import Session, select

from vision_pipeline.models.entities import JobStatus, VisionJob, utcnow
from vision_pipeline.schemas.contracts import EnqueueRequest

logger = logging.getLogger(__name__)

# Columns a status update may carry alongside status/progress
PATCHABLE_FIELDS = {
    "stage1_output",
    "stage2_output",
    "error_message",
    "error_stage",
    "retry_count",
}


class JobNotFoundError(LookupError):
    pass


class InvalidJobTransition(ValueError):
    pass


class JobCancelledError(InvalidJobTransition):
    pass


class JobStore:
    """Persistence contract for vision jobs.

    Every method opens its own short-lived session so the store can be driven
    from worker threads. Returned records are detached snapshots.
    """

    def __init__(self, engine, max_retries: int = 3):
        self.engine = engine
        self.max_retries = max_retries

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, req: EnqueueRequest) -> VisionJob:
        if not 0.0 <= req.creativity_level <= 2.0:
            raise ValueError("creativity_level must be within [0.0, 2.0]")
        job = VisionJob(
            user_id=req.user_id,
            source_url=req.source_url,
            context=req.context,
            purpose=req.purpose,
            output_format=req.output_format,
            creativity_level=req.creativity_level,
            additional_instructions=req.additional_instructions,
            status=JobStatus.PENDING.value,
            progress=0,
            retry_count=0,
            max_retries=self.max_retries,
        )
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info(f"Enqueued vision job {job.id} for user {job.user_id}")
        return job

    def get_by_id(self, job_id: int) -> VisionJob | None:
        with self._session() as session:
            return session.get(VisionJob, job_id)

    def get_next_pending(self, exclude: Iterable[int] = ()) -> VisionJob | None:
        stmt = (
            select(VisionJob)
            .where(VisionJob.status == JobStatus.PENDING.value, VisionJob.deleted_at.is_(None))
            .order_by(VisionJob.created_at, VisionJob.id)
        )
        exclude = list(exclude)
        if exclude:
            stmt = stmt.where(VisionJob.id.not_in(exclude))
        with self._session() as session:
            return session.exec(stmt.limit(1)).first()

    def get_retry_eligible(self, limit: int, exclude: Iterable[int] = ()) -> list[VisionJob]:
        if limit <= 0:
            return []
        stmt = (
            select(VisionJob)
            .where(
                VisionJob.status == JobStatus.ERROR.value,
                VisionJob.retry_count < VisionJob.max_retries,
                VisionJob.deleted_at.is_(None),
            )
            .order_by(VisionJob.updated_at, VisionJob.id)
        )
        exclude = list(exclude)
        if exclude:
            stmt = stmt.where(VisionJob.id.not_in(exclude))
        with self._session() as session:
            return list(session.exec(stmt.limit(limit)).all())

    def get_stalled(self, limit: int, older_than: datetime, exclude: Iterable[int] = ()) -> list[VisionJob]:
        """Jobs stuck in a running status that nothing is working on, e.g. after a restart."""
        if limit <= 0:
            return []
        stmt = (
            select(VisionJob)
            .where(
                VisionJob.status.in_([JobStatus.STAGE1_RUNNING.value, JobStatus.STAGE2_RUNNING.value]),
                VisionJob.updated_at < older_than,
                VisionJob.deleted_at.is_(None),
            )
            .order_by(VisionJob.updated_at, VisionJob.id)
        )
        exclude = list(exclude)
        if exclude:
            stmt = stmt.where(VisionJob.id.not_in(exclude))
        with self._session() as session:
            return list(session.exec(stmt.limit(limit)).all())

    def update_status(
        self,
        job_id: int,
        status: JobStatus | str,
        progress: int,
        patch: dict[str, Any] | None = None,
    ) -> VisionJob:
        status = JobStatus(status)
        patch = patch or {}
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported job fields: {sorted(unknown)}")

        with self._session() as session:
            job = session.get(VisionJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Vision job {job_id} not found")
            if job.status == JobStatus.CANCELLED.value and status is not JobStatus.CANCELLED:
                raise JobCancelledError(f"Vision job {job_id} was cancelled")

            now = utcnow()
            for key, value in patch.items():
                setattr(job, key, value)
            if job.retry_count > job.max_retries:
                raise InvalidJobTransition(
                    f"retry_count {job.retry_count} exceeds max_retries {job.max_retries}"
                )
            # Stage timestamps record the first time each stage produced output
            if "stage1_output" in patch and job.stage1_completed_at is None:
                job.stage1_completed_at = now
            if "stage2_output" in patch and job.stage2_completed_at is None:
                job.stage2_completed_at = now
            if status is JobStatus.COMPLETE:
                if job.stage1_output is None or job.stage2_output is None:
                    raise InvalidJobTransition(f"Vision job {job_id} cannot complete without both stage outputs")
                job.completed_at = now
                job.error_message = None
                job.error_stage = None

            job.status = status.value
            job.progress = progress
            job.updated_at = now
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def list_by_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        status: JobStatus | str | None = None,
    ) -> tuple[list[VisionJob], int]:
        conditions = [VisionJob.user_id == user_id, VisionJob.deleted_at.is_(None)]
        if status is not None:
            conditions.append(VisionJob.status == JobStatus(status).value)
        offset = (max(page, 1) - 1) * limit
        with self._session() as session:
            total = session.exec(select(func.count()).select_from(VisionJob).where(*conditions)).one()
            jobs = session.exec(
                select(VisionJob)
                .where(*conditions)
                .order_by(VisionJob.created_at.desc(), VisionJob.id.desc())
                .offset(offset)
                .limit(limit)
            ).all()
        return list(jobs), total

    def cancel(self, job_id: int) -> VisionJob:
        with self._session() as session:
            job = self._get_live(session, job_id)
            if job.status != JobStatus.PENDING.value:
                raise InvalidJobTransition("Only pending jobs can be cancelled")
            job.status = JobStatus.CANCELLED.value
            job.updated_at = utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info(f"Cancelled vision job {job_id}")
        return job

    def mark_for_retry(self, job_id: int) -> VisionJob:
        """Manual retry: back to pending with a fresh timeout window; the retry cap still applies."""
        with self._session() as session:
            job = self._get_live(session, job_id)
            if job.status != JobStatus.ERROR.value:
                raise InvalidJobTransition("Only failed jobs can be retried")
            if not job.is_retry_eligible:
                raise InvalidJobTransition("Maximum retry attempts reached")
            now = utcnow()
            job.status = JobStatus.PENDING.value
            job.progress = 0
            job.requeued_at = now
            job.updated_at = now
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info(f"Vision job {job_id} requeued manually (retry_count={job.retry_count})")
        return job

    def soft_delete(self, job_id: int) -> VisionJob:
        with self._session() as session:
            job = self._get_live(session, job_id)
            now = utcnow()
            job.deleted_at = now
            job.updated_at = now
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info(f"Vision job {job_id} soft-deleted")
        return job

    def _get_live(self, session: Session, job_id: int) -> VisionJob:
        job = session.get(VisionJob, job_id)
        if job is None or job.deleted_at is not None:
            raise JobNotFoundError(f"Vision job {job_id} not found")
        return job
