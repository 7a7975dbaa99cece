"""
Database-backed job store: durable, crash-safe job records.

Usage:
    job_id = await job_store.create_job(db, source_ref=..., source_format=..., target_format=...)
    job = await job_store.claim_next_pending(db, "worker-1")
    await job_store.update(db, job.id, lifecycle.complete(job, result_ref, media_type))

The claim is a single UPDATE whose WHERE clause re-checks state = 'pending',
so two workers can never both win the same row: SQLite serializes writers
and PostgreSQL skips rows locked by a concurrent claim.
"""
import functools
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update as sql_update
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from converty.errors import JobNotFound, StaleTransition, StoreError
from converty.models import ConversionJob, JobTransition
from converty.schemas.job import JobFilter, JobState
from converty.services.lifecycle import Transition, check_transition
from converty.utils.logger import get_logger
from converty.utils.time import after, utc_now

logger = get_logger("job_store")

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def _store_operation(fn):
    """Translate driver/connection failures into StoreError after rolling back"""
    @functools.wraps(fn)
    async def wrapper(db: AsyncSession, *args, **kwargs):
        try:
            return await fn(db, *args, **kwargs)
        except _TRANSIENT_ERRORS as exc:
            try:
                await db.rollback()
            except _TRANSIENT_ERRORS:
                pass
            raise StoreError(f"{fn.__name__} failed: {exc}") from exc
    return wrapper


def _record(db: AsyncSession, job_id: str, from_state: Optional[str], to_state: str,
            attempt: int, at: datetime, worker_id: str = None, detail: str = None) -> None:
    db.add(JobTransition(
        job_id=job_id,
        from_state=from_state,
        to_state=to_state,
        attempt=attempt,
        worker_id=worker_id,
        detail=detail[:2000] if detail else None,
        created_at=at,
    ))


@_store_operation
async def create_job(
    db: AsyncSession,
    *,
    source_ref: str,
    source_format: str,
    target_format: str,
    options: Optional[Dict[str, Any]] = None,
    max_attempts: int = 3,
    webhook_url: Optional[str] = None,
    original_filename: Optional[str] = None,
) -> str:
    """Create a new pending job and return its ID"""
    job_id = str(uuid.uuid4())
    now = utc_now()
    job = ConversionJob(
        id=job_id,
        source_ref=source_ref,
        source_format=source_format,
        target_format=target_format,
        options=options or {},
        state=JobState.PENDING.value,
        attempt_count=0,
        max_attempts=max_attempts,
        available_at=now,
        webhook_url=webhook_url,
        original_filename=original_filename,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    _record(db, job_id, None, JobState.PENDING.value, 0, now, detail="submitted")
    await db.commit()
    logger.info("job.created", extra={
        "job_id": job_id, "source_format": source_format, "target_format": target_format,
    })
    return job_id


@_store_operation
async def get_job(db: AsyncSession, job_id: str) -> ConversionJob:
    """Fetch a job fresh from the database; raises JobNotFound"""
    result = await db.execute(
        select(ConversionJob)
        .where(ConversionJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFound(job_id)
    return job


@_store_operation
async def claim_next_pending(
    db: AsyncSession,
    worker_id: str,
    as_of: Optional[datetime] = None,
) -> Optional[ConversionJob]:
    """
    Atomically claim the oldest available pending job.

    Sets it running, increments attempt_count and stamps a fresh claim token,
    all in one statement. Returns None when nothing is claimable.
    """
    now = utc_now()
    as_of = as_of or now
    token = str(uuid.uuid4())

    candidate = (
        select(ConversionJob.id)
        .where(
            ConversionJob.state == JobState.PENDING.value,
            or_(ConversionJob.available_at.is_(None), ConversionJob.available_at <= as_of),
        )
        .order_by(ConversionJob.created_at.asc(), ConversionJob.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    result = await db.execute(
        sql_update(ConversionJob)
        .where(
            ConversionJob.id == candidate,
            ConversionJob.state == JobState.PENDING.value,
        )
        .values(
            state=JobState.RUNNING.value,
            attempt_count=ConversionJob.attempt_count + 1,
            claim_token=token,
            claimed_by=worker_id,
            heartbeat_at=now,
            started_at=now,
            available_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return None

    claimed = await db.execute(
        select(ConversionJob)
        .where(ConversionJob.claim_token == token)
        .execution_options(populate_existing=True)
    )
    job = claimed.scalar_one()
    _record(db, job.id, JobState.PENDING.value, JobState.RUNNING.value,
            job.attempt_count, now, worker_id=worker_id)
    await db.commit()
    logger.info("job.claimed", extra={
        "job_id": job.id, "worker_id": worker_id, "attempt": job.attempt_count,
    })
    return job


def _values_for(transition: Transition, now: datetime) -> Dict[str, Any]:
    values: Dict[str, Any] = {"state": transition.to_state.value, "updated_at": now}
    if transition.to_state == JobState.EXPIRED:
        values["expired_at"] = now
        return values

    # Leaving running always releases ownership
    values.update(claim_token=None, claimed_by=None, heartbeat_at=None)
    if transition.to_state == JobState.DONE:
        values.update(
            result_ref=transition.result_ref,
            result_media_type=transition.result_media_type,
            error_kind=None,
            error_message=None,
            finished_at=now,
            available_at=None,
        )
    elif transition.to_state == JobState.FAILED:
        values.update(
            result_ref=None,
            result_media_type=None,
            error_kind=transition.error_kind.value,
            error_message=transition.error_message,
            finished_at=now,
            available_at=None,
        )
    elif transition.to_state == JobState.PENDING:
        values.update(
            result_ref=None,
            result_media_type=None,
            error_kind=None,
            error_message=None,
            available_at=transition.available_at or now,
        )
    return values


@_store_operation
async def update(db: AsyncSession, job_id: str, transition: Transition) -> ConversionJob:
    """
    Apply a transition with compare-and-set on the expected current state.

    Leaving running additionally requires the caller's claim token, so a
    worker presumed dead cannot overwrite the outcome of a newer attempt.
    Raises StaleTransition when the row moved on, IllegalTransition for
    edges outside the state machine.
    """
    check_transition(transition.from_state, transition.to_state)
    job = await get_job(db, job_id)

    leaving_running = transition.from_state == JobState.RUNNING
    if job.state != transition.from_state.value or (
        leaving_running and job.claim_token != transition.claim_token
    ):
        raise StaleTransition(job_id, transition.from_state.value)
    if transition.stale_before is not None and job.heartbeat_at is not None \
            and job.heartbeat_at >= transition.stale_before:
        raise StaleTransition(job_id, transition.from_state.value)

    now = after(job.updated_at)
    conditions = [
        ConversionJob.id == job_id,
        ConversionJob.state == transition.from_state.value,
    ]
    if leaving_running:
        conditions.append(ConversionJob.claim_token == transition.claim_token)
    if transition.stale_before is not None:
        conditions.append(or_(
            ConversionJob.heartbeat_at.is_(None),
            ConversionJob.heartbeat_at < transition.stale_before,
        ))

    result = await db.execute(
        sql_update(ConversionJob)
        .where(*conditions)
        .values(**_values_for(transition, now))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise StaleTransition(job_id, transition.from_state.value)

    _record(db, job_id, transition.from_state.value, transition.to_state.value,
            job.attempt_count, now, worker_id=transition.worker_id, detail=transition.detail)
    await db.commit()
    await db.refresh(job)

    logger.info(f"job.{transition.to_state.value}", extra={
        "job_id": job_id,
        "from_state": transition.from_state.value,
        "to_state": transition.to_state.value,
        "attempt": job.attempt_count,
        "error_kind": job.error_kind,
    })
    return job


@_store_operation
async def find_applied(db: AsyncSession, job_id: str, transition: Transition) -> Optional[ConversionJob]:
    """The job if its latest recorded transition is exactly this one, else None"""
    job = await get_job(db, job_id)
    if job.state != transition.to_state.value:
        return None
    result = await db.execute(
        select(JobTransition)
        .where(JobTransition.job_id == job_id)
        .order_by(JobTransition.id.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()
    if latest is None or latest.from_state != transition.from_state.value \
            or latest.worker_id != transition.worker_id or latest.attempt != job.attempt_count:
        return None
    if transition.to_state == JobState.DONE and job.result_ref != transition.result_ref:
        return None
    return job


@_store_operation
async def heartbeat(db: AsyncSession, job_id: str, claim_token: str) -> bool:
    """Refresh liveness of a running job; False if the caller no longer owns it"""
    result = await db.execute(
        sql_update(ConversionJob)
        .where(
            ConversionJob.id == job_id,
            ConversionJob.state == JobState.RUNNING.value,
            ConversionJob.claim_token == claim_token,
        )
        .values(heartbeat_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


@_store_operation
async def list_jobs(db: AsyncSession, filters: Optional[JobFilter] = None) -> List[ConversionJob]:
    """List jobs newest first"""
    filters = filters or JobFilter()
    query = select(ConversionJob)
    if filters.state is not None:
        query = query.where(ConversionJob.state == filters.state.value)
    if filters.source_format:
        query = query.where(ConversionJob.source_format == filters.source_format)
    if filters.target_format:
        query = query.where(ConversionJob.target_format == filters.target_format)
    if filters.error_kind is not None:
        query = query.where(ConversionJob.error_kind == filters.error_kind.value)
    query = (
        query.order_by(ConversionJob.created_at.desc())
        .limit(filters.limit)
        .offset(filters.offset)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


@_store_operation
async def count_by_state(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(ConversionJob.state, func.count()).group_by(ConversionJob.state)
    )
    counts = {state.value: 0 for state in JobState}
    counts.update({state: count for state, count in result.all()})
    return counts


@_store_operation
async def transitions_for(db: AsyncSession, job_id: str) -> List[JobTransition]:
    result = await db.execute(
        select(JobTransition)
        .where(JobTransition.job_id == job_id)
        .order_by(JobTransition.id.asc())
    )
    return list(result.scalars().all())


@_store_operation
async def find_orphaned(
    db: AsyncSession,
    liveness_timeout: float,
    now: Optional[datetime] = None,
) -> List[ConversionJob]:
    """Running jobs whose worker has not heartbeated within the liveness timeout"""
    cutoff = (now or utc_now()) - timedelta(seconds=liveness_timeout)
    result = await db.execute(
        select(ConversionJob)
        .where(
            ConversionJob.state == JobState.RUNNING.value,
            or_(ConversionJob.heartbeat_at.is_(None), ConversionJob.heartbeat_at < cutoff),
        )
        .order_by(ConversionJob.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@_store_operation
async def find_expirable(
    db: AsyncSession,
    retention_seconds: float,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> List[ConversionJob]:
    """Terminal jobs whose retention window has passed"""
    cutoff = (now or utc_now()) - timedelta(seconds=retention_seconds)
    result = await db.execute(
        select(ConversionJob)
        .where(
            ConversionJob.state.in_([JobState.DONE.value, JobState.FAILED.value]),
            ConversionJob.finished_at < cutoff,
        )
        .order_by(ConversionJob.finished_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@_store_operation
async def purge_expired(
    db: AsyncSession,
    purge_after_seconds: float,
    now: Optional[datetime] = None,
) -> int:
    """Delete expired job rows (and their audit trail) older than the purge window. Returns count deleted."""
    cutoff = (now or utc_now()) - timedelta(seconds=purge_after_seconds)
    doomed = select(ConversionJob.id).where(
        ConversionJob.state == JobState.EXPIRED.value,
        ConversionJob.expired_at < cutoff,
    )
    ids = list((await db.execute(doomed)).scalars().all())
    if not ids:
        return 0
    await db.execute(delete(JobTransition).where(JobTransition.job_id.in_(ids)))
    result = await db.execute(
        delete(ConversionJob).where(
            ConversionJob.id.in_(ids),
            ConversionJob.state == JobState.EXPIRED.value,
        )
    )
    await db.commit()
    count = result.rowcount
    if count > 0:
        logger.info("job.purged", extra={"deleted": count})
    return count


@_store_operation
async def blob_in_use(db: AsyncSession, ref: str, exclude_job_id: Optional[str] = None) -> bool:
    """Whether any non-expired job still references the blob as input or output"""
    query = select(func.count()).select_from(ConversionJob).where(
        ConversionJob.state != JobState.EXPIRED.value,
        or_(ConversionJob.source_ref == ref, ConversionJob.result_ref == ref),
    )
    if exclude_job_id:
        query = query.where(ConversionJob.id != exclude_job_id)
    count = (await db.execute(query)).scalar_one()
    return count > 0
