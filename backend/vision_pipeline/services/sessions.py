from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlmodel import Session, select

from vision_pipeline.models.entities import VisionJobSession, utcnow

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Which observers are watching which job. Routing aid only, never job state."""

    def __init__(self, engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def open(self, job_id: int, user_id: int, ttl_s: int | None = None) -> VisionJobSession:
        expires_at = utcnow() + timedelta(seconds=ttl_s) if ttl_s else None
        record = VisionJobSession(
            job_id=job_id,
            user_id=user_id,
            session_id=uuid.uuid4().hex,
            expires_at=expires_at,
        )
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.debug(f"Observer session {record.session_id} opened for job {job_id}")
        return record

    def close(self, session_id: str) -> bool:
        with self._session() as session:
            record = session.exec(select(VisionJobSession).where(VisionJobSession.session_id == session_id)).first()
            if record is None or not record.is_active:
                return False
            record.is_active = False
            session.add(record)
            session.commit()
        logger.debug(f"Observer session {session_id} closed")
        return True

    def active_for_job(self, job_id: int) -> list[VisionJobSession]:
        now = utcnow()
        stmt = select(VisionJobSession).where(
            VisionJobSession.job_id == job_id,
            VisionJobSession.is_active.is_(True),
        )
        with self._session() as session:
            records = session.exec(stmt).all()
        return [r for r in records if r.expires_at is None or r.expires_at > now]

    def expire_stale(self) -> int:
        stmt = select(VisionJobSession).where(
            VisionJobSession.is_active.is_(True),
            VisionJobSession.expires_at.is_not(None),
            VisionJobSession.expires_at <= utcnow(),
        )
        with self._session() as session:
            stale = session.exec(stmt).all()
            for record in stale:
                record.is_active = False
                session.add(record)
            session.commit()
        if stale:
            logger.info(f"Expired {len(stale)} observer sessions")
        return len(stale)
