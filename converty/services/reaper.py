"""
Retention reaper: expires terminal jobs past the retention window, deletes
blobs nothing else references, and purges long-expired rows.

Uploads that never became a job are swept too: any blob older than the
retention window that no live job references is deleted.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from converty.errors import StaleTransition, StoreError
from converty.services import job_store, lifecycle
from converty.services.blob_store import BlobStore
from converty.utils.logger import get_logger
from converty.utils.time import utc_now

logger = get_logger("reaper")


@dataclass
class ReapResult:
    expired: int = 0
    blobs_deleted: int = 0
    purged: int = 0
    swept: int = 0


async def _release_blob(db, blob_store: BlobStore, ref: Optional[str]) -> bool:
    if not ref or await job_store.blob_in_use(db, ref):
        return False
    try:
        await blob_store.delete(ref)
    except StoreError as exc:
        logger.warning("reaper.blob_delete_failed", extra={"error": str(exc)[:500]})
        return False
    return True


async def reap(
    session_factory,
    blob_store: BlobStore,
    *,
    retention_seconds: float,
    purge_after_seconds: float,
    now: Optional[datetime] = None,
) -> ReapResult:
    now = now or utc_now()
    outcome = ReapResult()

    async with session_factory() as db:
        for job in await job_store.find_expirable(db, retention_seconds, now):
            try:
                await job_store.update(db, job.id, lifecycle.expire(job))
            except StaleTransition:
                continue
            outcome.expired += 1
            # Expired rows keep their refs as history; the blobs go once unreferenced
            for ref in {job.source_ref, job.result_ref}:
                if await _release_blob(db, blob_store, ref):
                    outcome.blobs_deleted += 1

        cutoff = now - timedelta(seconds=retention_seconds)
        for ref in await blob_store.list_older_than(cutoff):
            if await _release_blob(db, blob_store, ref):
                outcome.swept += 1

        outcome.purged = await job_store.purge_expired(db, purge_after_seconds, now)

    if outcome.expired or outcome.purged or outcome.swept:
        logger.info("reaper.completed", extra={
            "expired": outcome.expired, "deleted": outcome.blobs_deleted + outcome.swept, "count": outcome.purged,
        })
    return outcome
