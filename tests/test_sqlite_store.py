from __future__ import annotations

import sqlite3
import tempfile

import pytest

from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def test_schema_is_created_and_versioned() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/eval.db")
        try:
            for table in ["meta", "submissions", "evaluation_jobs", "evaluation_results", "events"]:
                assert _table_exists(store._conn, table)
            mode = store._conn.execute("PRAGMA journal_mode;").fetchone()[0]
            assert str(mode).lower() == "wal"
        finally:
            store.close()

        # Reopening an existing database is a no-op.
        store = SQLiteStore(f"{td}/eval.db")
        store.close()


def test_newer_schema_is_refused() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/eval.db")
        try:
            store._conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version';", (str(SCHEMA_VERSION + 1),))
            store._conn.commit()
        finally:
            store.close()
        with pytest.raises(RuntimeError):
            SQLiteStore(f"{td}/eval.db")


def test_fail_active_jobs_marks_failed_and_records_event() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/eval.db")
        try:
            store.insert_submission(submission_id="s1", artifact_path="/a")
            job_id = store.insert_job(submission_id="s1")
            assert store.claim_job(job_id=job_id, worker_id="w1") is True
            assert store.claim_job(job_id=job_id, worker_id="w2") is False

            failed = store.fail_active_jobs(reason="worker-lost", note="restarted")
            assert [j.job_id for j in failed] == [job_id]
            job = store.get_job(job_id=job_id)
            assert job is not None
            assert job.state == "failed"
            assert job.error == "worker-lost"
            assert job.duration_s is not None and job.duration_s >= 0

            events = list(store.iter_events(job_id))
            assert [(e["event_type"], e["payload"]) for e in events] == [("job_failed", {"error": "worker-lost"})]

            # The worker that lost the job can no longer finish it.
            assert (
                store.finish_job(
                    job_id=job_id,
                    worker_id="w1",
                    state="completed",
                    logs="",
                    error=None,
                    score=1.0,
                    duration_s=1.0,
                )
                is False
            )
        finally:
            store.close()


def test_result_is_written_once_per_job() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/eval.db")
        try:
            store.insert_submission(submission_id="s1", artifact_path="/a")
            r1 = store.insert_result(
                job_id="job_1", submission_id="s1", score=3.0, failure_reason=None, logs="ok", duration_s=1.0
            )
            r2 = store.insert_result(
                job_id="job_1", submission_id="s1", score=9.0, failure_reason=None, logs="again", duration_s=2.0
            )
            assert r1 == r2
            results = store.list_results(submission_id="s1")
            assert len(results) == 1
            assert results[0]["score"] == 3.0
            assert results[0]["logs"] == "ok"
        finally:
            store.close()


def test_events_trace_is_ordered() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/eval.db")
        try:
            store.append_event("job_1", "job_admitted", {"n": 1})
            store.append_event("job_1", "job_started", {"n": 2})
            assert [e["event_type"] for e in store.iter_events("job_1")] == ["job_admitted", "job_started"]
        finally:
            store.close()


def test_read_only_handle_refuses_writes_and_skips_the_write_lock() -> None:
    with tempfile.TemporaryDirectory() as td:
        path = f"{td}/eval.db"
        # First read-only open of a missing database creates the schema.
        reader = SQLiteStore(path, read_only=True)
        reader.close()

        writer = sqlite3.connect(path, isolation_level=None)
        try:
            writer.execute("BEGIN IMMEDIATE;")
            reader = SQLiteStore(path, read_only=True)
            try:
                assert reader.count_jobs_by_state() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}
                with pytest.raises(sqlite3.OperationalError):
                    reader.insert_submission(submission_id="s1", artifact_path="/a")
            finally:
                reader.close()
        finally:
            writer.execute("ROLLBACK;")
            writer.close()
