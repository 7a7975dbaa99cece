from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from converty.errors import (
    ConversionTimeout,
    ErrorKind,
    IllegalTransition,
    InputCorrupt,
    ProcessFailure,
    UnsupportedAtExecution,
)
from converty.schemas.job import JobState
from converty.services import lifecycle

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def running_job(attempt_count=1, max_attempts=3):
    return SimpleNamespace(
        id="job-1",
        state="running",
        attempt_count=attempt_count,
        max_attempts=max_attempts,
        claim_token="token-1",
        claimed_by="worker-1",
    )


def test_allowed_edges():
    assert lifecycle.is_allowed(JobState.PENDING, JobState.RUNNING)
    assert lifecycle.is_allowed(JobState.RUNNING, JobState.DONE)
    assert lifecycle.is_allowed(JobState.RUNNING, JobState.PENDING)
    assert lifecycle.is_allowed(JobState.RUNNING, JobState.FAILED)
    assert lifecycle.is_allowed(JobState.DONE, JobState.EXPIRED)
    assert lifecycle.is_allowed(JobState.FAILED, JobState.EXPIRED)


@pytest.mark.parametrize("from_state,to_state", [
    (JobState.PENDING, JobState.DONE),
    (JobState.PENDING, JobState.FAILED),
    (JobState.DONE, JobState.RUNNING),
    (JobState.FAILED, JobState.PENDING),
    (JobState.EXPIRED, JobState.PENDING),
    (JobState.RUNNING, JobState.EXPIRED),
])
def test_illegal_edges(from_state, to_state):
    assert not lifecycle.is_allowed(from_state, to_state)
    with pytest.raises(IllegalTransition):
        lifecycle.check_transition(from_state, to_state)


def test_backoff_doubles_and_caps():
    delays = [lifecycle.backoff_delay(n, base=1.0, cap=10.0) for n in range(1, 6)]
    assert delays == [2.0, 4.0, 8.0, 10.0, 10.0]
    assert lifecycle.backoff_delay(10_000, base=1.0, cap=60.0) == 60.0


def test_complete_carries_result_and_token():
    transition = lifecycle.complete(running_job(), "ref", "video/webm", worker_id="w")
    assert transition.to_state == JobState.DONE
    assert transition.result_ref == "ref"
    assert transition.claim_token == "token-1"


@pytest.mark.parametrize("error", [ConversionTimeout("slow"), ProcessFailure("crashed")])
def test_retryable_failure_requeues_with_backoff(error):
    transition = lifecycle.on_failure(running_job(attempt_count=1), error, NOW, 2.0, 300.0)
    assert transition.to_state == JobState.PENDING
    assert (transition.available_at - NOW).total_seconds() == 4.0
    assert transition.error_kind is None


def test_retryable_failure_fails_when_attempts_exhausted():
    transition = lifecycle.on_failure(running_job(attempt_count=3), ConversionTimeout("slow"), NOW, 2.0, 300.0)
    assert transition.to_state == JobState.FAILED
    assert transition.error_kind == ErrorKind.TIMEOUT
    assert transition.error_message == "slow"


@pytest.mark.parametrize("error,kind", [
    (InputCorrupt("bad header"), ErrorKind.INPUT_CORRUPT),
    (UnsupportedAtExecution("gone"), ErrorKind.UNSUPPORTED),
])
def test_terminal_errors_fail_immediately(error, kind):
    transition = lifecycle.on_failure(running_job(attempt_count=1), error, NOW, 2.0, 300.0)
    assert transition.to_state == JobState.FAILED
    assert transition.error_kind == kind


def test_orphan_requeued_while_attempts_remain():
    transition = lifecycle.on_orphaned(running_job(attempt_count=1), NOW)
    assert transition.to_state == JobState.PENDING
    assert transition.available_at == NOW


def test_orphan_fails_after_last_attempt():
    transition = lifecycle.on_orphaned(running_job(attempt_count=3), NOW)
    assert transition.to_state == JobState.FAILED
    assert transition.error_kind == ErrorKind.PROCESS_FAILURE
    assert "worker-1" in transition.error_message


def test_expire_from_terminal_state():
    job = SimpleNamespace(state="done")
    assert lifecycle.expire(job).from_state == JobState.DONE
    assert lifecycle.expire(job).to_state == JobState.EXPIRED
