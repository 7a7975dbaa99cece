"""
Job lifecycle controller: the state machine and retry/backoff policy.

    pending → running → done
                      → pending   (retryable failure, after backoff; or orphan recovery)
                      → failed    (terminal failure or attempts exhausted)
    done | failed → expired       (retention window passed)

Builders here only describe a transition; the job store applies it with a
compare-and-set on the expected state.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from converty.errors import ConversionError, ErrorKind, IllegalTransition
from converty.schemas.job import JobState


ALLOWED_TRANSITIONS = {
    JobState.PENDING: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset({JobState.DONE, JobState.PENDING, JobState.FAILED}),
    JobState.DONE: frozenset({JobState.EXPIRED}),
    JobState.FAILED: frozenset({JobState.EXPIRED}),
    JobState.EXPIRED: frozenset(),
}


@dataclass(frozen=True)
class Transition:
    from_state: JobState
    to_state: JobState
    claim_token: Optional[str] = None
    result_ref: Optional[str] = None
    result_media_type: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    available_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    detail: Optional[str] = None
    # orphan recovery only: the heartbeat must still be older than this
    stale_before: Optional[datetime] = None


def is_allowed(from_state: JobState, to_state: JobState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(JobState(from_state), frozenset())


def check_transition(from_state: JobState, to_state: JobState) -> None:
    if not is_allowed(from_state, to_state):
        raise IllegalTransition(JobState(from_state).value, JobState(to_state).value)


def backoff_delay(attempt_count: int, base: float, cap: float) -> float:
    """delay = base * 2^attempt_count, capped"""
    # Cap the exponent as well so huge attempt counts never overflow
    return min(cap, base * (2 ** min(attempt_count, 32)))


def complete(job, result_ref: str, media_type: str, worker_id: str = None) -> Transition:
    return Transition(
        from_state=JobState.RUNNING,
        to_state=JobState.DONE,
        claim_token=job.claim_token,
        result_ref=result_ref,
        result_media_type=media_type,
        worker_id=worker_id,
    )


def on_failure(
    job,
    error: ConversionError,
    now: datetime,
    backoff_base: float,
    backoff_cap: float,
    worker_id: str = None,
) -> Transition:
    """Retry with backoff while the error is retryable and attempts remain, else fail"""
    message = str(error) or error.kind.value
    if error.retryable and job.attempt_count < job.max_attempts:
        delay = backoff_delay(job.attempt_count, backoff_base, backoff_cap)
        return Transition(
            from_state=JobState.RUNNING,
            to_state=JobState.PENDING,
            claim_token=job.claim_token,
            available_at=now + timedelta(seconds=delay),
            worker_id=worker_id,
            detail=f"{error.kind.value}: {message} (retry in {delay:.3f}s)",
        )
    return Transition(
        from_state=JobState.RUNNING,
        to_state=JobState.FAILED,
        claim_token=job.claim_token,
        error_kind=error.kind,
        error_message=message,
        worker_id=worker_id,
        detail=f"{error.kind.value}: {message}",
    )


def on_orphaned(job, now: datetime, stale_before: Optional[datetime] = None) -> Transition:
    """A running job whose worker stopped heartbeating: requeue, or fail once attempts are spent"""
    if job.attempt_count < job.max_attempts:
        return Transition(
            from_state=JobState.RUNNING,
            to_state=JobState.PENDING,
            claim_token=job.claim_token,
            available_at=now,
            detail=f"orphaned by {job.claimed_by}, requeued",
            stale_before=stale_before,
        )
    message = f"worker {job.claimed_by} lost during attempt {job.attempt_count} of {job.max_attempts}"
    return Transition(
        from_state=JobState.RUNNING,
        to_state=JobState.FAILED,
        claim_token=job.claim_token,
        error_kind=ErrorKind.PROCESS_FAILURE,
        error_message=message,
        detail=message,
        stale_before=stale_before,
    )


def expire(job) -> Transition:
    return Transition(
        from_state=JobState(job.state),
        to_state=JobState.EXPIRED,
        detail="retention window passed",
    )
