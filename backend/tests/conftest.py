import os

# Must be set before vision_pipeline.core.settings is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKER_ENABLED", "false")

from datetime import timedelta
from pathlib import Path

import pytest
from sqlmodel import Session

from vision_pipeline.db.session import build_engine, init_db
from vision_pipeline.models.entities import JobStatus, VisionJob, utcnow
from vision_pipeline.schemas.contracts import EnqueueRequest
from vision_pipeline.services.jobs import JobStore
from vision_pipeline.services.outputs import OutputStore


@pytest.fixture
def engine(tmp_path: Path):
    eng = build_engine(f"sqlite:///{tmp_path / 'vision_jobs.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return JobStore(engine, max_retries=3)


@pytest.fixture
def outputs(engine):
    return OutputStore(engine)


@pytest.fixture
def enqueue(store):
    def _enqueue(**overrides) -> VisionJob:
        fields = {
            "user_id": 7,
            "source_url": "https://cdn.example.com/brand/hero.png",
            "context": "Tea brand launching in Shanghai",
            "purpose": "Social launch campaign",
            "output_format": "social_post",
            "creativity_level": 1.0,
        }
        fields.update(overrides)
        return store.create(EnqueueRequest(**fields))

    return _enqueue


@pytest.fixture
def backdate(engine):
    def _backdate(job_id: int, minutes: float) -> None:
        with Session(engine) as session:
            job = session.get(VisionJob, job_id)
            job.created_at = utcnow() - timedelta(minutes=minutes)
            session.add(job)
            session.commit()

    return _backdate


@pytest.fixture
def stall(engine):
    """Leave a job in a running status as if its attempt died ``minutes`` ago."""

    def _stall(job_id: int, minutes: float, status: JobStatus = JobStatus.STAGE1_RUNNING, progress: int = 25) -> None:
        with Session(engine) as session:
            job = session.get(VisionJob, job_id)
            job.status = status.value
            job.progress = progress
            job.created_at = utcnow() - timedelta(minutes=minutes)
            job.updated_at = job.created_at
            session.add(job)
            session.commit()

    return _stall
