from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from vision_pipeline.models.entities import JobStatus, VisionJob
from vision_pipeline.schemas.contracts import JobResponse

logger = logging.getLogger(__name__)


def job_snapshot(job: VisionJob) -> dict[str, Any]:
    return JobResponse.model_validate(job).model_dump(mode="json")


def to_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class JobEventBroker:
    """Fans job state changes out to whoever is listening on that job."""

    def __init__(self):
        self._listeners: dict[int, set[asyncio.Queue]] = {}

    def subscribe(self, job_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.setdefault(job_id, set()).add(queue)
        return queue

    def unsubscribe(self, job_id: int, queue: asyncio.Queue) -> None:
        listeners = self._listeners.get(job_id)
        if not listeners:
            return
        listeners.discard(queue)
        if not listeners:
            del self._listeners[job_id]

    def listener_count(self, job_id: int) -> int:
        return len(self._listeners.get(job_id, ()))

    def publish(self, job: VisionJob) -> None:
        listeners = self._listeners.get(job.id)
        if not listeners:
            return
        snapshot = job_snapshot(job)
        for queue in list(listeners):
            queue.put_nowait(snapshot)
        logger.debug(f"Job {job.id} update sent to {len(listeners)} listeners")


def is_final_snapshot(snapshot: dict[str, Any]) -> bool:
    status = snapshot.get("status")
    if status in (JobStatus.COMPLETE.value, JobStatus.CANCELLED.value):
        return True
    return status == JobStatus.ERROR.value and snapshot.get("retry_count", 0) >= snapshot.get("max_retries", 0)
