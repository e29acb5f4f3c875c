from __future__ import annotations

import sqlite3
import time
from pathlib import Path

import pytest

from src.runtime.queue import EvaluationQueue
from src.runtime.retry import RetryCoordinator
from src.runtime.stats import QueueStatsAggregator
from src.sandbox.outcome import Failure, Success


def test_empty_queue_uses_default_duration(tmp_path: Path) -> None:
    stats = QueueStatsAggregator(tmp_path / "eval.db", default_job_duration_s=120.0)
    snap = stats.snapshot()
    assert snap.as_dict() == {
        "waiting": 0,
        "active": 0,
        "completed": 0,
        "failed": 0,
        "estimated_wait_s": 0.0,
        "average_job_duration_s": 120.0,
    }


def test_counts_match_admitted_minus_archived_and_pruned(tmp_path: Path) -> None:
    db = tmp_path / "eval.db"
    q = EvaluationQueue(db, poll_interval_s=0.05)
    rc = RetryCoordinator(q, max_retries=3)
    stats = QueueStatsAggregator(db, default_job_duration_s=100.0)

    ids = [q.submit(submission_id=f"s{i}", artifact_path="/a") for i in range(5)]
    admitted = len(ids)

    q.mark_active(ids[0], "w1")
    q.mark_terminal(ids[0], "w1", Success(score=1.0, logs="", duration_s=10.0))
    q.mark_active(ids[1], "w1")
    q.mark_terminal(ids[1], "w1", Failure(reason="nonzero-exit", logs="", duration_s=30.0))
    q.mark_active(ids[2], "w2")

    snap = stats.snapshot()
    assert (snap.waiting, snap.active, snap.completed, snap.failed) == (2, 1, 1, 1)
    assert snap.total == admitted
    assert snap.average_job_duration_s == pytest.approx(20.0)
    assert snap.estimated_wait_s == pytest.approx(2 * 20.0)

    # A retry admits one job and archives one.
    rc.retry("s1")
    admitted += 1
    archived = 1
    snap = stats.snapshot()
    assert (snap.waiting, snap.failed) == (3, 0)
    assert snap.total == admitted - archived

    # Pruning drops superseded jobs, which the projection never counted.
    pruned = q.prune(retention_s=-1, retention_max=100)
    assert pruned == 1
    snap = stats.snapshot()
    assert snap.total == admitted - archived
    assert snap.completed == 1

    # Terminal jobs past the retention window leave the projection; live jobs stay.
    windowed = QueueStatsAggregator(db, default_job_duration_s=100.0, retention_s=-1)
    snap = windowed.snapshot()
    assert (snap.waiting, snap.active, snap.completed, snap.failed) == (3, 1, 0, 0)


def test_retention_count_bound(tmp_path: Path) -> None:
    db = tmp_path / "eval.db"
    q = EvaluationQueue(db, poll_interval_s=0.05)
    for i in range(3):
        job_id = q.submit(submission_id=f"s{i}", artifact_path="/a")
        q.mark_active(job_id, "w1")
        q.mark_terminal(job_id, "w1", Success(score=1.0, logs="", duration_s=1.0))

    snap = QueueStatsAggregator(db, retention_s=3600, retention_max=2).snapshot()
    assert snap.completed == 2


def test_snapshot_does_not_wait_for_writers(tmp_path: Path) -> None:
    db = tmp_path / "eval.db"
    q = EvaluationQueue(db, poll_interval_s=0.05)
    q.submit(submission_id="s1", artifact_path="/a")
    stats = QueueStatsAggregator(db, default_job_duration_s=10.0)

    writer = sqlite3.connect(str(db), isolation_level=None)
    try:
        writer.execute("BEGIN IMMEDIATE;")
        writer.execute("UPDATE evaluation_jobs SET state = 'active', worker_id = 'w1', started_at = 0;")

        started = time.monotonic()
        snap = stats.snapshot()
        assert time.monotonic() - started < 2.0
        # Uncommitted work is invisible to the reader.
        assert (snap.waiting, snap.active) == (1, 0)
        assert stats.estimate_for_position(1) == pytest.approx(10.0)
    finally:
        writer.execute("ROLLBACK;")
        writer.close()


def test_estimate_for_position(tmp_path: Path) -> None:
    stats = QueueStatsAggregator(tmp_path / "eval.db", default_job_duration_s=60.0)
    assert stats.estimate_for_position(3) == pytest.approx(180.0)
    assert stats.estimate_for_position(2, average_job_duration_s=5.0) == pytest.approx(10.0)
