"""
Submission and query operations used by the API.

Submission validates everything up front (formats, route, options, source
blob) and only then creates the job; it never waits on a conversion.
Queries read the job row and never write.
"""
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from converty.config import Settings, get_settings
from converty.errors import BlobNotFound, ErrorKind, JobNotCompleted, ValidationError
from converty.schemas.job import (
    JobErrorView,
    JobFilter,
    JobState,
    JobTransitionView,
    JobView,
)
from converty.services import job_store
from converty.services.blob_store import BlobStore, is_valid_ref
from converty.services.format_router import route, validate_options
from converty.services.formats import normalize_format


async def submit_job(
    db: AsyncSession,
    blob_store: BlobStore,
    *,
    source_ref: str,
    source_format: str,
    target_format: str,
    options: Optional[dict] = None,
    webhook_url: Optional[str] = None,
    original_filename: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Validate a conversion request and persist it as a pending job. Returns the job ID."""
    settings = settings or get_settings()

    source = normalize_format(source_format)
    target = normalize_format(target_format)
    handle = route(source, target)
    accepted = validate_options(handle, options)

    if webhook_url and not webhook_url.startswith(("http://", "https://")):
        raise ValidationError("webhook_url must be an http(s) URL")
    if not is_valid_ref(source_ref) or not await blob_store.exists(source_ref):
        raise ValidationError(f"Unknown source blob: {source_ref}")

    return await job_store.create_job(
        db,
        source_ref=source_ref,
        source_format=handle.source.value,
        target_format=handle.target.value,
        options=accepted,
        max_attempts=settings.max_attempts,
        webhook_url=webhook_url,
        original_filename=original_filename,
    )


def to_view(job, history: Optional[list] = None) -> JobView:
    error = None
    if job.error_kind:
        error = JobErrorView(kind=ErrorKind(job.error_kind), message=job.error_message or "")
    return JobView(
        job_id=job.id,
        state=JobState(job.state),
        source_format=job.source_format,
        target_format=job.target_format,
        options=job.options or {},
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        result_ref=job.result_ref,
        result_media_type=job.result_media_type,
        error=error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        finished_at=job.finished_at,
        history=[
            JobTransitionView(
                from_state=t.from_state,
                to_state=t.to_state,
                attempt=t.attempt,
                worker_id=t.worker_id,
                detail=t.detail,
                at=t.created_at,
            )
            for t in history
        ] if history is not None else None,
    )


async def get_job_view(db: AsyncSession, job_id: str, include_history: bool = False) -> JobView:
    job = await job_store.get_job(db, job_id)
    history = await job_store.transitions_for(db, job_id) if include_history else None
    return to_view(job, history)


async def list_job_views(db: AsyncSession, filters: Optional[JobFilter] = None) -> List[JobView]:
    return [to_view(job) for job in await job_store.list_jobs(db, filters)]


async def read_result(db: AsyncSession, blob_store: BlobStore, job_id: str) -> Tuple[bytes, str]:
    """Result bytes and media type of a done job; JobNotCompleted otherwise"""
    job = await job_store.get_job(db, job_id)
    if job.state == JobState.EXPIRED.value:
        raise BlobNotFound(job.result_ref or job_id)
    if job.state != JobState.DONE.value:
        raise JobNotCompleted(job_id, job.state)
    data = await blob_store.get(job.result_ref)
    return data, job.result_media_type or job.target_format
