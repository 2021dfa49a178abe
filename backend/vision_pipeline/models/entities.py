from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AwareDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite keeps no offset, so values are normalised to UTC on the way in and
    tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    STAGE1_RUNNING = "stage1_running"
    STAGE2_RUNNING = "stage2_running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class ErrorStage(str, Enum):
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    TIMEOUT = "timeout"


class VisionJob(SQLModel, table=True):
    __tablename__ = "vision_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)

    source_url: str
    context: str = ""
    purpose: str
    output_format: str
    creativity_level: float = 1.0
    additional_instructions: Optional[str] = None

    status: str = Field(default=JobStatus.PENDING.value, index=True)
    progress: int = 0
    stage1_output: Optional[str] = None
    stage2_output: Optional[str] = None

    error_message: Optional[str] = None
    error_stage: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3

    created_at: datetime = Field(default_factory=utcnow, sa_type=AwareDateTime, index=True)
    stage1_completed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    stage2_completed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    requeued_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    deleted_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=AwareDateTime)

    @property
    def is_retry_eligible(self) -> bool:
        return self.status == JobStatus.ERROR.value and self.retry_count < self.max_retries

    @property
    def is_final(self) -> bool:
        if self.status in (JobStatus.COMPLETE.value, JobStatus.CANCELLED.value):
            return True
        return self.status == JobStatus.ERROR.value and not self.is_retry_eligible


class VisionJobOutput(SQLModel, table=True):
    __tablename__ = "vision_job_outputs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(index=True, unique=True)
    user_id: int = Field(index=True)

    colors_primary: str = "[]"
    colors_secondary: str = "[]"
    colors_description: str = ""
    mood: str = ""
    tone: str = ""
    composition_layout: str = ""
    brand_personality: str = ""
    perceived_industry: str = ""
    target_audience: str = ""
    content_pieces: str = "[]"

    is_training_data: bool = True
    user_rating: Optional[int] = None
    user_feedback: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=AwareDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=AwareDateTime)


class VisionJobSession(SQLModel, table=True):
    __tablename__ = "vision_job_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(index=True)
    user_id: int
    session_id: str = Field(unique=True, max_length=128)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=AwareDateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
