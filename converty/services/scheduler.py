"""
Worker pool: N worker loops plus a recovery loop and a reaper loop.

The job store is the queue. A worker claims the oldest available pending
job, routes it, runs the converter, and records the outcome through the
lifecycle controller. Nothing is held in memory that a restart could lose:
a job left running by a dead worker is found by the recovery sweep once its
heartbeat goes stale.

Can run:
  1. Inside the API process (startup event, run_workers_in_process=True)
  2. Standalone: python -m converty.worker
"""
import asyncio
import os
import socket
from datetime import timedelta
from typing import List, Optional

from converty.config import Settings, get_settings
from converty.converters import ConverterRegistry
from converty.errors import (
    ConversionError,
    ProcessFailure,
    StaleTransition,
    StoreError,
    UnsupportedAtExecution,
    UnsupportedConversion,
)
from converty.schemas.job import JobState
from converty.services import job_store, lifecycle, reaper
from converty.services.blob_store import BlobStore
from converty.services.format_router import route
from converty.services.lifecycle import Transition
from converty.services.retry import retry_store_operation
from converty.services.webhooks import WebhookNotifier
from converty.utils import metrics
from converty.utils.logger import get_logger
from converty.utils.time import utc_now

logger = get_logger("scheduler")


class WorkerPool:
    def __init__(
        self,
        session_factory,
        blob_store: BlobStore,
        converters: ConverterRegistry,
        settings: Optional[Settings] = None,
        notifier: Optional[WebhookNotifier] = None,
    ) -> None:
        self._sessions = session_factory
        self._blobs = blob_store
        self._converters = converters
        self.settings = settings or get_settings()
        self._notifier = notifier or WebhookNotifier(timeout=self.settings.webhook_timeout_seconds)
        self._tasks: List[asyncio.Task] = []
        self._id_prefix = f"{socket.gethostname()}-{os.getpid()}"

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def worker_ids(self) -> List[str]:
        return [f"{self._id_prefix}-w{i + 1}" for i in range(self.settings.worker_count)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        # Jobs left running by a previous process are recovered before new work starts
        try:
            await self.recover_orphans()
        except StoreError as exc:
            logger.error("pool.startup_recovery_failed", extra={"error": str(exc)[:500]})

        for worker_id in self.worker_ids():
            self._tasks.append(asyncio.create_task(self._worker_loop(worker_id), name=worker_id))
        self._tasks.append(asyncio.create_task(self._recovery_loop(), name="recovery"))
        self._tasks.append(asyncio.create_task(self._reaper_loop(), name="reaper"))
        logger.info("pool.started", extra={"workers": self.settings.worker_count})

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._notifier.drain()
        logger.info("pool.stopped", extra={"workers": len(tasks)})

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: str) -> None:
        """
        Claim and process jobs until cancelled.

        Adaptive polling: an idle worker backs off from poll_interval to
        max_idle_interval and snaps back as soon as it finds work.
        """
        poll_interval = self.settings.poll_interval_seconds
        max_idle_interval = self.settings.max_idle_interval_seconds
        current_interval = poll_interval
        logger.info("worker.started", extra={"worker_id": worker_id, "poll_interval": poll_interval})

        while True:
            try:
                if await self.run_once(worker_id):
                    current_interval = poll_interval
                    continue
                current_interval = min(current_interval * 1.5, max_idle_interval)
            except StoreError as exc:
                logger.error("worker.store_unavailable", extra={
                    "worker_id": worker_id, "error": str(exc)[:500],
                })
                current_interval = max_idle_interval
            except Exception as exc:
                logger.error("worker.poll_error", extra={
                    "worker_id": worker_id, "error": str(exc)[:500], "error_type": type(exc).__name__,
                })
                current_interval = max_idle_interval

            await asyncio.sleep(current_interval)

    async def run_once(self, worker_id: str) -> bool:
        """Claim and fully process one job. Returns False when nothing was claimable."""
        async with self._sessions() as db:
            job = await job_store.claim_next_pending(db, worker_id)
        if job is None:
            return False
        await self._process(job, worker_id)
        return True

    async def _process(self, job, worker_id: str) -> None:
        try:
            handle = route(job.source_format, job.target_format)
            adapter = self._converters.get(handle.adapter)
        except (UnsupportedConversion, UnsupportedAtExecution) as exc:
            await self._record_outcome(job, self._failure(job, UnsupportedAtExecution(str(exc)), worker_id))
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.converter_timeout_seconds
        conversion = asyncio.create_task(adapter.execute(
            job.source_ref,
            job.target_format,
            job.options or {},
            deadline,
            source_format=job.source_format,
        ))
        heartbeat = asyncio.create_task(self._heartbeat(job, worker_id, conversion))
        output = None
        try:
            output = await conversion
            outcome = lifecycle.complete(job, output.ref, output.media_type, worker_id=worker_id)
        except ConversionError as exc:
            outcome = self._failure(job, exc, worker_id)
        except asyncio.CancelledError:
            if heartbeat.done() and not heartbeat.cancelled() and heartbeat.result():
                # Ownership moved on; the job is no longer ours to release
                logger.warning("worker.conversion_abandoned", extra={"job_id": job.id, "worker_id": worker_id})
                metrics.inc("worker.ownership_lost")
                return
            await self._release(job, worker_id)
            raise
        except Exception as exc:
            logger.error("worker.adapter_error", extra={
                "job_id": job.id, "worker_id": worker_id,
                "error": str(exc)[:500], "error_type": type(exc).__name__,
            })
            outcome = self._failure(job, ProcessFailure(f"unexpected converter error: {exc}"), worker_id)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        recorded = await self._record_outcome(job, outcome)
        if not recorded and output is not None:
            await self._discard_output(output.ref, job.id)

    def _failure(self, job, error: ConversionError, worker_id: str) -> Transition:
        metrics.inc(f"conversion.{error.kind.value}")
        logger.warning("worker.conversion_failed", extra={
            "job_id": job.id,
            "worker_id": worker_id,
            "attempt": job.attempt_count,
            "max_attempts": job.max_attempts,
            "error_kind": error.kind.value,
            "error": str(error)[:500],
        })
        return lifecycle.on_failure(
            job,
            error,
            utc_now(),
            self.settings.backoff_base_seconds,
            self.settings.backoff_max_seconds,
            worker_id=worker_id,
        )

    async def _apply(self, job_id: str, transition: Transition):
        interrupted = False

        async def attempt():
            nonlocal interrupted
            async with self._sessions() as db:
                try:
                    return await job_store.update(db, job_id, transition)
                except StoreError:
                    interrupted = True
                    raise
                except StaleTransition:
                    # A failed attempt may still have committed before erroring
                    if interrupted:
                        landed = await job_store.find_applied(db, job_id, transition)
                        if landed is not None:
                            return landed
                    raise

        return await retry_store_operation(
            attempt,
            attempts=self.settings.store_retry_attempts,
            base_delay=self.settings.store_retry_base_seconds,
            description="job.update",
        )

    async def _record_outcome(self, job, transition: Transition) -> bool:
        """Persist a worker outcome; False when the job was taken away from this worker"""
        try:
            updated = await self._apply(job.id, transition)
        except StaleTransition:
            logger.warning("worker.ownership_lost", extra={
                "job_id": job.id, "worker_id": transition.worker_id, "to_state": transition.to_state.value,
            })
            return False
        metrics.inc(f"jobs.{updated.state}")
        if JobState(updated.state) in (JobState.DONE, JobState.FAILED):
            self._notifier.notify(updated)
        return True

    async def _release(self, job, worker_id: str) -> None:
        """Hand a job back to the queue when its worker is shut down mid-run"""
        transition = Transition(
            from_state=JobState.RUNNING,
            to_state=JobState.PENDING,
            claim_token=job.claim_token,
            available_at=utc_now(),
            worker_id=worker_id,
            detail="worker stopped, requeued",
        )
        try:
            async with self._sessions() as db:
                await job_store.update(db, job.id, transition)
        except (StaleTransition, StoreError) as exc:
            # Recovery sweep picks it up once the heartbeat goes stale
            logger.warning("worker.release_failed", extra={"job_id": job.id, "error": str(exc)[:500]})

    async def _discard_output(self, ref: str, job_id: str) -> None:
        try:
            async with self._sessions() as db:
                in_use = await job_store.blob_in_use(db, ref, exclude_job_id=job_id)
            if not in_use:
                await self._blobs.delete(ref)
        except StoreError as exc:
            logger.warning("worker.discard_failed", extra={"job_id": job_id, "error": str(exc)[:500]})

    async def _heartbeat(self, job, worker_id: str, conversion: asyncio.Task) -> bool:
        """Refresh liveness until cancelled. On lost ownership, cancel the conversion and return True."""
        interval = self.settings.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._sessions() as db:
                    owned = await job_store.heartbeat(db, job.id, job.claim_token)
            except StoreError as exc:
                logger.warning("worker.heartbeat_failed", extra={
                    "job_id": job.id, "worker_id": worker_id, "error": str(exc)[:500],
                })
                continue
            if not owned:
                logger.warning("worker.heartbeat_lost", extra={"job_id": job.id, "worker_id": worker_id})
                conversion.cancel()
                return True

    # ------------------------------------------------------------------
    # Recovery and retention
    # ------------------------------------------------------------------

    async def recover_orphans(self) -> int:
        """Requeue (or fail) running jobs whose worker stopped heartbeating. Returns count recovered."""
        now = utc_now()
        timeout = self.settings.liveness_timeout_seconds
        stale_before = now - timedelta(seconds=timeout)
        recovered = 0
        async with self._sessions() as db:
            for job in await job_store.find_orphaned(db, timeout, now):
                try:
                    updated = await job_store.update(db, job.id, lifecycle.on_orphaned(job, now, stale_before))
                except StaleTransition:
                    continue
                recovered += 1
                if updated.state == JobState.FAILED.value:
                    self._notifier.notify(updated)
        if recovered:
            logger.warning("pool.orphans_recovered", extra={"recovered": recovered})
        return recovered

    async def reap(self) -> reaper.ReapResult:
        return await reaper.reap(
            self._sessions,
            self._blobs,
            retention_seconds=self.settings.retention_seconds,
            purge_after_seconds=self.settings.purge_after_seconds,
        )

    async def _recovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.recovery_interval_seconds)
            try:
                await self.recover_orphans()
            except Exception as exc:
                logger.error("pool.recovery_error", extra={"error": str(exc)[:500]})

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reaper_interval_seconds)
            try:
                await self.reap()
            except Exception as exc:
                logger.error("pool.reaper_error", extra={"error": str(exc)[:500]})
