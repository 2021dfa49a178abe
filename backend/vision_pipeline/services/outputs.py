"""Structured projection of a completed job's raw stage outputs."""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlmodel import Session, select

from vision_pipeline.models.entities import JobStatus, VisionJob, VisionJobOutput, utcnow
from vision_pipeline.schemas.contracts import BrandVision, OutputResponse
from vision_pipeline.services.jobs import InvalidJobTransition, JobNotFoundError
from vision_pipeline.services.llm_json import enforce_json_contract, parse_content_pieces, to_strict_json

logger = logging.getLogger(__name__)


def project_outputs(stage1_output: str, stage2_output: str) -> dict[str, Any]:
    """Parse both raw outputs into output-record columns.

    Raises ``ValueError`` (or pydantic's ``ValidationError``, a subclass) when
    either document does not parse; nothing is projected in that case.
    """
    vision = enforce_json_contract(stage1_output, BrandVision)
    pieces = parse_content_pieces(stage2_output)
    return {
        "colors_primary": to_strict_json(vision.colors.primary),
        "colors_secondary": to_strict_json(vision.colors.secondary),
        "colors_description": vision.colors.description,
        "mood": vision.mood_and_tone.mood,
        "tone": vision.mood_and_tone.tone,
        "composition_layout": vision.composition.layout,
        "brand_personality": vision.brand_insights.brand_personality,
        "perceived_industry": vision.brand_insights.perceived_industry,
        "target_audience": vision.brand_insights.target_audience,
        "content_pieces": to_strict_json([p.model_dump() for p in pieces]),
    }


class OutputStore:
    def __init__(self, engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def get_for_job(self, job_id: int) -> VisionJobOutput | None:
        with self._session() as session:
            return session.exec(select(VisionJobOutput).where(VisionJobOutput.job_id == job_id)).first()

    def save(self, job: VisionJob, projection: dict[str, Any]) -> VisionJobOutput:
        """Create the record once; later calls for the same job return the existing one."""
        with self._session() as session:
            existing = session.exec(select(VisionJobOutput).where(VisionJobOutput.job_id == job.id)).first()
            if existing is not None:
                logger.info(f"Structured output for job {job.id} already exists, keeping it")
                return existing
            record = VisionJobOutput(job_id=job.id, user_id=job.user_id, **projection)
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def record_feedback(self, job_id: int, rating: int, feedback: str | None = None) -> VisionJobOutput:
        if not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        with self._session() as session:
            record = session.exec(select(VisionJobOutput).where(VisionJobOutput.job_id == job_id)).first()
            if record is None:
                job = session.get(VisionJob, job_id)
                if job is None:
                    raise JobNotFoundError(f"Vision job {job_id} not found")
                if job.status != JobStatus.COMPLETE.value:
                    raise InvalidJobTransition("Feedback is only accepted for completed jobs")
                raise JobNotFoundError(f"Vision job {job_id} has no structured output")
            record.user_rating = rating
            record.user_feedback = feedback
            record.updated_at = utcnow()
            session.add(record)
            session.commit()
            session.refresh(record)
            return record


def to_response(record: VisionJobOutput) -> OutputResponse:
    return OutputResponse(
        job_id=record.job_id,
        colors_primary=json.loads(record.colors_primary),
        colors_secondary=json.loads(record.colors_secondary),
        colors_description=record.colors_description,
        mood=record.mood,
        tone=record.tone,
        composition_layout=record.composition_layout,
        brand_personality=record.brand_personality,
        perceived_industry=record.perceived_industry,
        target_audience=record.target_audience,
        content_pieces=json.loads(record.content_pieces),
        user_rating=record.user_rating,
        user_feedback=record.user_feedback,
    )
