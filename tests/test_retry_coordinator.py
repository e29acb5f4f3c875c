from __future__ import annotations

from pathlib import Path

import pytest

from src.runtime.errors import InvalidTransitionError, RetryExhaustedError, SubmissionNotFoundError
from src.runtime.queue import EvaluationQueue
from src.runtime.retry import RetryCoordinator
from src.sandbox.outcome import Failure, Success, Timeout


def _setup(tmp_path: Path, *, max_retries: int = 3, max_auto_retries: int = 1) -> tuple[EvaluationQueue, RetryCoordinator]:
    q = EvaluationQueue(tmp_path / "eval.db", poll_interval_s=0.05)
    return q, RetryCoordinator(q, max_retries=max_retries, max_auto_retries=max_auto_retries)


def _run(q: EvaluationQueue, job_id: str, outcome) -> None:
    q.mark_active(job_id, "w1")
    q.mark_terminal(job_id, "w1", outcome)


def test_retry_requires_failed_current_job(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path)
    job_id = q.submit(submission_id="s1", artifact_path="/a")

    with pytest.raises(RetryExhaustedError) as e:
        rc.retry("s1")
    assert e.value.reason == "not_failed"

    _run(q, job_id, Success(score=1.0, logs="", duration_s=0.1))
    with pytest.raises(RetryExhaustedError) as e2:
        rc.retry("s1")
    assert e2.value.reason == "not_failed"

    with pytest.raises(SubmissionNotFoundError):
        rc.retry("unknown")


def test_retry_archives_failed_job_and_requeues(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path)
    first = q.submit(submission_id="s2", artifact_path="/a")
    _run(q, first, Timeout(logs="slow", duration_s=30.0))

    second = rc.retry("s2")
    current = q.get_current_job("s2")
    assert current.job_id == second
    assert current.state == "waiting"
    assert current.retry_count == 1
    assert current.auto_retry_count == 0

    old = q.get_job(first)
    assert old.state == "failed"
    assert old.error == "timeout"
    assert old.archived_at is not None
    assert old.superseded_by == second

    _run(q, second, Success(score=70.0, logs="ok", duration_s=2.0))
    history = q.list_history("s2")
    assert [(j.state, j.archived_at is not None) for j in history] == [("failed", True), ("completed", False)]


def test_retry_bound_is_enforced_and_repeatable(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path, max_retries=1)
    job_id = q.submit(submission_id="s3", artifact_path="/a")
    _run(q, job_id, Failure(reason="nonzero-exit", logs="", duration_s=0.1))

    retried = rc.retry("s3")
    _run(q, retried, Failure(reason="nonzero-exit", logs="", duration_s=0.1))

    for _ in range(3):
        with pytest.raises(RetryExhaustedError) as e:
            rc.retry("s3")
        assert e.value.reason == "max_retries"
        assert e.value.retry_count == 1
    assert max(j.retry_count for j in q.list_history("s3")) == 1


def test_exhausted_submission_cannot_be_resubmitted(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path, max_retries=1)
    job_id = q.submit(submission_id="s7", artifact_path="/a")
    _run(q, job_id, Failure(reason="nonzero-exit", logs="", duration_s=0.1))
    _run(q, rc.retry("s7"), Failure(reason="nonzero-exit", logs="", duration_s=0.1))

    with pytest.raises(InvalidTransitionError):
        q.submit(submission_id="s7", artifact_path="/a")
    with pytest.raises(RetryExhaustedError) as e:
        rc.retry("s7")
    assert e.value.reason == "max_retries"
    assert all(j.retry_count <= 1 for j in q.list_history("s7"))


def test_retry_after_retention_pruning(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path, max_retries=3)
    job_id = q.submit(submission_id="s8", artifact_path="/a")
    _run(q, job_id, Failure(reason="nonzero-exit", logs="", duration_s=0.1))

    q.prune(retention_s=-1, retention_max=0)

    new_job = rc.retry("s8")
    assert q.get_current_job("s8").job_id == new_job
    assert q.get_current_job("s8").retry_count == 1


def test_auto_retry_only_for_infrastructure_faults(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path, max_retries=3, max_auto_retries=1)

    user_fault = q.submit(submission_id="s4", artifact_path="/a")
    _run(q, user_fault, Failure(reason="nonzero-exit", logs="", duration_s=0.1))
    assert rc.auto_retry(q.get_job(user_fault)) is None

    infra = q.submit(submission_id="s5", artifact_path="/a")
    _run(q, infra, Failure(reason="launch-failed", logs="", duration_s=0.1))
    new_id = rc.auto_retry(q.get_job(infra))
    assert new_id is not None
    assert q.get_job(new_id).auto_retry_count == 1

    # Second infrastructure failure in the same chain exceeds max_auto_retries.
    _run(q, new_id, Failure(reason="launch-failed", logs="", duration_s=0.1))
    assert rc.auto_retry(q.get_job(new_id)) is None
    with pytest.raises(RetryExhaustedError) as e:
        rc.retry("s5", automatic=True)
    assert e.value.reason == "max_auto_retries"

    # A manual retry is still allowed.
    assert rc.retry("s5") is not None


def test_auto_retry_skips_superseded_job(tmp_path: Path) -> None:
    q, rc = _setup(tmp_path)
    job_id = q.submit(submission_id="s6", artifact_path="/a")
    _run(q, job_id, Failure(reason="launch-failed", logs="", duration_s=0.1))
    stale = q.get_job(job_id)

    manual = rc.retry("s6")
    _run(q, manual, Failure(reason="nonzero-exit", logs="", duration_s=0.1))
    assert rc.auto_retry(stale) is None
    assert q.get_current_job("s6").job_id == manual
