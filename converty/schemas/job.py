"""
Pydantic schemas for conversion jobs
Options are a closed set: unknown keys are rejected, never ignored
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from converty.errors import ErrorKind


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED, JobState.EXPIRED)


# ========== Submission Schemas ==========
class ConversionOptions(BaseModel):
    """Recognized conversion parameters"""
    model_config = ConfigDict(extra="forbid")

    quality: Optional[int] = Field(None, ge=1, le=100, description="Output quality 1-100")
    width: Optional[int] = Field(None, ge=16, le=7680, description="Target width in pixels (video)")
    height: Optional[int] = Field(None, ge=16, le=7680, description="Target height in pixels (video)")
    dpi: Optional[int] = Field(None, ge=36, le=600, description="Rasterization resolution")
    first_page: Optional[int] = Field(None, ge=1, description="First page to rasterize (1-based)")
    last_page: Optional[int] = Field(None, ge=1, description="Last page to rasterize (inclusive)")

    @model_validator(mode="after")
    def check_page_range(self):
        if self.first_page is not None and self.last_page is not None and self.first_page > self.last_page:
            raise ValueError("first_page must not be greater than last_page")
        return self

    def provided(self) -> Dict[str, Any]:
        """Only the options the client actually set"""
        return self.model_dump(exclude_none=True)


class JobSubmission(BaseModel):
    """Submission body: a blob reference plus the requested conversion"""
    source_ref: str = Field(..., min_length=1, max_length=64)
    source_format: str = Field(..., min_length=1, max_length=100)
    target_format: str = Field(..., min_length=1, max_length=100)
    options: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = Field(None, max_length=2000)
    original_filename: Optional[str] = Field(None, max_length=500)


class JobAccepted(BaseModel):
    job_id: str
    state: JobState


class BlobStored(BaseModel):
    ref: str
    size: int
    source_format: Optional[str] = None


# ========== Query Schemas ==========
class JobErrorView(BaseModel):
    kind: ErrorKind
    message: str


class JobTransitionView(BaseModel):
    from_state: Optional[JobState] = None
    to_state: JobState
    attempt: int
    worker_id: Optional[str] = None
    detail: Optional[str] = None
    at: datetime


class JobView(BaseModel):
    """What the query path returns; built from the stored row, never mutates it"""
    job_id: str
    state: JobState
    source_format: str
    target_format: str
    options: Dict[str, Any] = Field(default_factory=dict)
    attempt_count: int
    max_attempts: int
    result_ref: Optional[str] = None
    result_media_type: Optional[str] = None
    error: Optional[JobErrorView] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    history: Optional[List[JobTransitionView]] = None


class JobFilter(BaseModel):
    state: Optional[JobState] = None
    source_format: Optional[str] = None
    target_format: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)
