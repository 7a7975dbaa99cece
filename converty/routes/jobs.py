"""
Conversion API Routes

Upload a source blob, submit a conversion job, poll it, fetch the result.
Submission only records the job; workers do the converting.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from fastapi.responses import Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from converty.config import get_settings
from converty.database import get_db
from converty.errors import ErrorKind
from converty.schemas.job import (
    BlobStored,
    JobAccepted,
    JobFilter,
    JobState,
    JobSubmission,
    JobView,
)
from converty.services import job_store
from converty.services.blob_store import BlobStore
from converty.services.formats import format_from_filename, normalize_format, parse_format
from converty.services.submission import get_job_view, list_job_views, read_result, submit_job
from converty.utils import metrics
from converty.utils.file_handler import FileHandler

router = APIRouter()
settings = get_settings()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_file_handler(request: Request) -> FileHandler:
    return request.app.state.uploads


@router.post("/blobs", response_model=BlobStored, status_code=201)
async def upload_blob(
    file: UploadFile = File(...),
    blob_store: BlobStore = Depends(get_blob_store),
    uploads: FileHandler = Depends(get_file_handler),
):
    """
    Store a source file and return its content ref.

    The format is guessed from the filename, then the declared content type;
    it is informational, the submission names the source format explicitly.
    """
    saved = await uploads.save_upload(file)
    try:
        ref = await blob_store.put_file(saved["file_path"])
    finally:
        uploads.cleanup(saved["file_path"])

    detected = format_from_filename(saved["filename"]) or parse_format(file.content_type or "")
    return BlobStored(ref=ref, size=saved["size"], source_format=detected.value if detected else None)


@router.post("/jobs", response_model=JobAccepted, status_code=202)
@limiter.limit(settings.submit_rate_limit)
async def create_job(
    request: Request,
    submission: JobSubmission,
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """
    Submit a conversion job. Returns immediately with the job ID.

    Unknown formats, unsupported pairs and unknown option keys are rejected
    with 400 before any job is created.
    """
    job_id = await submit_job(
        db,
        blob_store,
        source_ref=submission.source_ref,
        source_format=submission.source_format,
        target_format=submission.target_format,
        options=submission.options,
        webhook_url=submission.webhook_url,
        original_filename=submission.original_filename,
    )
    return JobAccepted(job_id=job_id, state=JobState.PENDING)


@router.get("/jobs", response_model=List[JobView])
async def list_jobs(
    state: Optional[JobState] = None,
    source_format: Optional[str] = None,
    target_format: Optional[str] = None,
    error_kind: Optional[ErrorKind] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    filters = JobFilter(
        state=state,
        source_format=normalize_format(source_format).value if source_format else None,
        target_format=normalize_format(target_format).value if target_format else None,
        error_kind=error_kind,
        limit=limit,
        offset=offset,
    )
    return await list_job_views(db, filters)


@router.get("/jobs/{job_id}", response_model=JobView)
async def get_job(
    job_id: str,
    history: bool = False,
    db: AsyncSession = Depends(get_db),
):
    return await get_job_view(db, job_id, include_history=history)


@router.get("/jobs/{job_id}/result")
async def download_result(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Result bytes of a done job; 202 while it is still pending or running"""
    data, media_type = await read_result(db, blob_store, job_id)
    tag = parse_format(media_type)
    filename = f"{job_id}.{tag.extension}" if tag else job_id
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/status")
async def service_status(request: Request, db: AsyncSession = Depends(get_db)):
    """Job counts come from the store; metrics are observational"""
    pool = getattr(request.app.state, "pool", None)
    return {
        "jobs": await job_store.count_by_state(db),
        "workers": {
            "running": bool(pool and pool.running),
            "count": settings.worker_count if pool else 0,
        },
        "metrics": metrics.get_snapshot(),
    }
