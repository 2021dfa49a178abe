from __future__ import annotations

import asyncio
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from vision_pipeline.core.settings import settings
from vision_pipeline.models.entities import JobStatus, VisionJob
from vision_pipeline.schemas.contracts import (
    EnqueueRequest,
    FeedbackRequest,
    JobListResponse,
    JobResponse,
    OutputResponse,
)
from vision_pipeline.services.events import is_final_snapshot, job_snapshot, to_sse
from vision_pipeline.services.jobs import InvalidJobTransition, JobNotFoundError
from vision_pipeline.services.outputs import to_response
from vision_pipeline.services.runtime import Pipeline

router = APIRouter(prefix="/api", tags=["vision-jobs"])

KEEPALIVE_S = 15.0


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _get_visible(pipeline: Pipeline, job_id: int) -> VisionJob:
    job = pipeline.store.get_by_id(job_id)
    if not job or job.deleted_at is not None:
        raise HTTPException(404, "Vision job not found")
    return job


@router.post("/vision-jobs", response_model=JobResponse, status_code=201)
def enqueue(req: EnqueueRequest, pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.store.create(req)


@router.get("/vision-jobs", response_model=JobListResponse)
def list_jobs(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[JobStatus] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    jobs, total = pipeline.store.list_by_user(user_id, page=page, limit=limit, status=status)
    return JobListResponse(
        items=[JobResponse.model_validate(j) for j in jobs],
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit),
    )


@router.get("/vision-jobs/{job_id}", response_model=JobResponse)
def get_status(job_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    return _get_visible(pipeline, job_id)


@router.post("/vision-jobs/{job_id}/cancel", response_model=JobResponse)
def cancel(job_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        return pipeline.store.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(404, "Vision job not found")
    except InvalidJobTransition as exc:
        raise HTTPException(409, str(exc))


@router.post("/vision-jobs/{job_id}/retry", response_model=JobResponse)
def retry(job_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        return pipeline.store.mark_for_retry(job_id)
    except JobNotFoundError:
        raise HTTPException(404, "Vision job not found")
    except InvalidJobTransition as exc:
        raise HTTPException(409, str(exc))


@router.delete("/vision-jobs/{job_id}")
def soft_delete(job_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        pipeline.store.soft_delete(job_id)
    except JobNotFoundError:
        raise HTTPException(404, "Vision job not found")
    return {"ok": True, "id": job_id}


@router.get("/vision-jobs/{job_id}/output", response_model=OutputResponse)
def get_output(job_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    _get_visible(pipeline, job_id)
    record = pipeline.outputs.get_for_job(job_id)
    if not record:
        raise HTTPException(404, "Structured output not available")
    return to_response(record)


@router.post("/vision-jobs/{job_id}/feedback", response_model=OutputResponse)
def feedback(job_id: int, req: FeedbackRequest, pipeline: Pipeline = Depends(get_pipeline)):
    _get_visible(pipeline, job_id)
    try:
        record = pipeline.outputs.record_feedback(job_id, req.rating, req.feedback)
    except JobNotFoundError:
        raise HTTPException(404, "Structured output not available")
    except InvalidJobTransition as exc:
        raise HTTPException(409, str(exc))
    return to_response(record)


@router.get("/vision-jobs/{job_id}/events")
async def job_events(job_id: int, request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    queue = pipeline.events.subscribe(job_id)
    try:
        job = await asyncio.to_thread(_get_visible, pipeline, job_id)
    except HTTPException:
        pipeline.events.unsubscribe(job_id, queue)
        raise
    await asyncio.to_thread(pipeline.sessions.expire_stale)
    observer = await asyncio.to_thread(pipeline.sessions.open, job.id, job.user_id, settings.session_ttl_s)

    async def stream():
        try:
            snapshot = job_snapshot(job)
            yield to_sse("job_update", snapshot)
            while not is_final_snapshot(snapshot):
                if await request.is_disconnected():
                    break
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield to_sse("job_update", snapshot)
        finally:
            pipeline.events.unsubscribe(job_id, queue)
            await asyncio.to_thread(pipeline.sessions.close, observer.session_id)

    return StreamingResponse(stream(), media_type="text/event-stream")


@router.get("/worker/status")
def worker_status(pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.scheduler.status()
