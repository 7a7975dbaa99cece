"""
SQLAlchemy models for conversion jobs, the durable job queue.

The conversion_jobs table is the queue itself: workers claim pending rows
directly, there is no separate in-memory queue to lose on crash.
"""
from sqlalchemy import Column, String, Integer, Text, JSON, Index
from converty.database import Base
from converty.models.types import UTCDateTime
import uuid


class ConversionJob(Base):
    __tablename__ = "conversion_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Source and requested conversion; format tags are stored as plain strings
    source_ref = Column(String(64), nullable=False, index=True)
    source_format = Column(String(100), nullable=False)
    target_format = Column(String(100), nullable=False)
    options = Column(JSON, nullable=True)
    original_filename = Column(String(500), nullable=True)
    webhook_url = Column(String(2000), nullable=True)

    # State: pending → running → done | failed, then expired
    state = Column(String(20), nullable=False, default="pending", index=True)

    # Retry tracking
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(UTCDateTime, nullable=True)

    # Ownership while running
    claim_token = Column(String(36), nullable=True)
    claimed_by = Column(String(100), nullable=True)
    heartbeat_at = Column(UTCDateTime, nullable=True)

    # Outcome: exactly one of result_ref / error_kind once terminal
    result_ref = Column(String(64), nullable=True, index=True)
    result_media_type = Column(String(100), nullable=True)
    error_kind = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    started_at = Column(UTCDateTime, nullable=True)
    finished_at = Column(UTCDateTime, nullable=True)
    expired_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_conversion_jobs_claim", "state", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ConversionJob {self.id} {self.state} attempt={self.attempt_count}>"


class JobTransition(Base):
    """Append-only audit trail of every state change"""
    __tablename__ = "job_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False, index=True)
    from_state = Column(String(20), nullable=True)
    to_state = Column(String(20), nullable=False)
    attempt = Column(Integer, nullable=False, default=0)
    worker_id = Column(String(100), nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
