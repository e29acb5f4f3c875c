from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 1

JOB_STATES = ("waiting", "active", "completed", "failed")
TERMINAL_STATES = ("completed", "failed")


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def default_db_path() -> str:
    return os.getenv("ARENA_EVAL_SQLITE_PATH", "data/arena_eval.db")


@dataclass(frozen=True)
class SubmissionRecord:
    submission_id: str
    created_at: float
    artifact_path: str
    rubric_ref: str
    owner_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "created_at": self.created_at,
            "artifact_path": self.artifact_path,
            "rubric_ref": self.rubric_ref,
            "owner_id": self.owner_id,
        }


@dataclass(frozen=True)
class EvaluationJob:
    job_id: str
    submission_id: str
    seq: int
    state: str
    retry_count: int
    auto_retry_count: int
    enqueued_at: float
    started_at: float | None
    finished_at: float | None
    worker_id: str | None
    logs: str
    error: str | None
    score: float | None
    duration_s: float | None
    archived_at: float | None
    superseded_by: str | None
    # Denormalized from the submission so the executor needs no second lookup.
    artifact_path: str = ""
    rubric_ref: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def as_dict(self, *, include_logs: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "job_id": self.job_id,
            "submission_id": self.submission_id,
            "state": self.state,
            "retry_count": self.retry_count,
            "auto_retry_count": self.auto_retry_count,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "worker_id": self.worker_id,
            "error": self.error,
            "score": self.score,
            "duration_s": self.duration_s,
            "archived": self.archived_at is not None,
            "archived_at": self.archived_at,
            "superseded_by": self.superseded_by,
        }
        if include_logs:
            out["logs"] = self.logs
        return out


_JOB_SELECT = """
SELECT
  j.job_id, j.submission_id, j.seq, j.state, j.retry_count, j.auto_retry_count,
  j.enqueued_at, j.started_at, j.finished_at, j.worker_id, j.logs, j.error, j.score,
  j.duration_s, j.archived_at, j.superseded_by,
  s.artifact_path, s.rubric_ref
FROM evaluation_jobs j
JOIN submissions s ON s.submission_id = j.submission_id
"""


def _job_from_row(r: sqlite3.Row) -> EvaluationJob:
    return EvaluationJob(
        job_id=r["job_id"],
        submission_id=r["submission_id"],
        seq=int(r["seq"]),
        state=r["state"],
        retry_count=int(r["retry_count"]),
        auto_retry_count=int(r["auto_retry_count"]),
        enqueued_at=float(r["enqueued_at"]),
        started_at=_opt_float(r["started_at"]),
        finished_at=_opt_float(r["finished_at"]),
        worker_id=r["worker_id"],
        logs=r["logs"] or "",
        error=r["error"],
        score=_opt_float(r["score"]),
        duration_s=_opt_float(r["duration_s"]),
        archived_at=_opt_float(r["archived_at"]),
        superseded_by=r["superseded_by"],
        artifact_path=r["artifact_path"] or "",
        rubric_ref=r["rubric_ref"] or "",
    )


def _result_from_row(r: sqlite3.Row) -> dict[str, Any]:
    return {
        "result_id": r["result_id"],
        "job_id": r["job_id"],
        "submission_id": r["submission_id"],
        "created_at": float(r["created_at"]),
        "score": _opt_float(r["score"]),
        "failure_reason": r["failure_reason"],
        "logs": r["logs"] or "",
        "duration_s": _opt_float(r["duration_s"]),
    }


class SQLiteStore:
    """SQLite-backed store for submissions, evaluation jobs, results and trace events.

    Design goals:
    - One connection per thread; every state transition is a conditional
      `UPDATE ... WHERE state = ?` inside `BEGIN IMMEDIATE`, so competing
      writers serialize and exactly one of them observes `rowcount == 1`.
    - WAL mode so stats readers never wait on the worker pool. Opening an
      existing database only reads; `read_only=True` handles also refuse writes.
    - Jobs are pruned after a retention window; results and events are not.
    """

    def __init__(self, db_path: str | Path | None = None, *, read_only: bool = False) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.read_only = read_only

        if read_only and not self.db_path.exists():
            # First use of this path: create the schema once with a writable handle.
            SQLiteStore(self.db_path).close()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")
        if read_only:
            self._conn.execute("PRAGMA query_only = ON;")

        if self._schema_ready():
            self._migrate_if_needed()
        elif read_only:
            raise RuntimeError(f"DB at {self.db_path} has no schema; open it writable first.")
        else:
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so a read-then-update
        sequence inside it cannot interleave with another writer.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _schema_ready(self) -> bool:
        # Plain reads only: opening an existing database must not take the write lock.
        r = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'meta' LIMIT 1;"
        ).fetchone()
        if r is None:
            return False
        return self._get_schema_version() > 0

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS submissions (
              submission_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              artifact_path TEXT NOT NULL,
              rubric_ref TEXT NOT NULL DEFAULT '',
              owner_id TEXT NOT NULL DEFAULT ''
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS evaluation_jobs (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              job_id TEXT NOT NULL UNIQUE,
              submission_id TEXT NOT NULL,
              state TEXT NOT NULL,
              retry_count INTEGER NOT NULL DEFAULT 0,
              auto_retry_count INTEGER NOT NULL DEFAULT 0,
              enqueued_at REAL NOT NULL,
              started_at REAL,
              finished_at REAL,
              worker_id TEXT,
              logs TEXT NOT NULL DEFAULT '',
              error TEXT,
              score REAL,
              duration_s REAL,
              archived_at REAL,
              superseded_by TEXT,
              FOREIGN KEY (submission_id) REFERENCES submissions(submission_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS evaluation_results (
              result_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL UNIQUE,
              submission_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              score REAL,
              failure_reason TEXT,
              logs TEXT NOT NULL DEFAULT '',
              duration_s REAL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              job_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL
            );
            """
        )
        # At most one live (waiting/active) job per submission, even across processes.
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_live_submission
            ON evaluation_jobs(submission_id) WHERE state IN ('waiting', 'active');
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state_order ON evaluation_jobs(state, seq);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_submission ON evaluation_jobs(submission_id, seq);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_results_submission ON evaluation_results(submission_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_job_ts ON events(job_id, created_at, event_id);")

        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")
        raise RuntimeError(f"Missing migration step for schema_version={current} -> {target}")

    # --- Submissions (collaborator-owned references)
    def get_submission(self, *, submission_id: str) -> SubmissionRecord | None:
        r = self._conn.execute(
            """
            SELECT submission_id, created_at, artifact_path, rubric_ref, owner_id
            FROM submissions
            WHERE submission_id = ?
            LIMIT 1;
            """,
            (submission_id,),
        ).fetchone()
        if r is None:
            return None
        return SubmissionRecord(
            submission_id=r["submission_id"],
            created_at=float(r["created_at"]),
            artifact_path=r["artifact_path"],
            rubric_ref=r["rubric_ref"] or "",
            owner_id=r["owner_id"] or "",
        )

    def insert_submission(
        self,
        *,
        submission_id: str,
        artifact_path: str,
        rubric_ref: str = "",
        owner_id: str = "",
        commit: bool = True,
    ) -> SubmissionRecord:
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO submissions(submission_id, created_at, artifact_path, rubric_ref, owner_id)
            VALUES(?, ?, ?, ?, ?);
            """,
            (submission_id, created_at, artifact_path, rubric_ref or "", owner_id or ""),
        )
        if commit:
            self._conn.commit()
        return SubmissionRecord(
            submission_id=submission_id,
            created_at=created_at,
            artifact_path=artifact_path,
            rubric_ref=rubric_ref or "",
            owner_id=owner_id or "",
        )

    # --- Jobs
    def insert_job(
        self,
        *,
        submission_id: str,
        retry_count: int = 0,
        auto_retry_count: int = 0,
        commit: bool = True,
    ) -> str:
        job_id = _new_id("job")
        self._conn.execute(
            """
            INSERT INTO evaluation_jobs(
              job_id, submission_id, state, retry_count, auto_retry_count, enqueued_at
            ) VALUES(?, ?, 'waiting', ?, ?, ?);
            """,
            (job_id, submission_id, int(retry_count), int(auto_retry_count), _utc_ts()),
        )
        if commit:
            self._conn.commit()
        return job_id

    def get_job(self, *, job_id: str) -> EvaluationJob | None:
        r = self._conn.execute(_JOB_SELECT + " WHERE j.job_id = ? LIMIT 1;", (job_id,)).fetchone()
        return _job_from_row(r) if r is not None else None

    def get_current_job(self, *, submission_id: str) -> EvaluationJob | None:
        """The newest job of the submission that has not been superseded."""
        r = self._conn.execute(
            _JOB_SELECT
            + """
            WHERE j.submission_id = ? AND j.archived_at IS NULL
            ORDER BY j.seq DESC
            LIMIT 1;
            """,
            (submission_id,),
        ).fetchone()
        return _job_from_row(r) if r is not None else None

    def list_jobs_for_submission(self, *, submission_id: str) -> list[EvaluationJob]:
        rows = self._conn.execute(
            _JOB_SELECT + " WHERE j.submission_id = ? ORDER BY j.seq ASC;",
            (submission_id,),
        ).fetchall()
        return [_job_from_row(r) for r in rows]

    def list_jobs_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        states: list[str] | None,
        include_archived: bool = False,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if states:
            where.append("j.state IN (%s)" % ",".join(["?"] * len(states)))
            params.extend(states)

        if not include_archived:
            where.append("j.archived_at IS NULL")

        if cursor is not None:
            enqueued_at, job_id = cursor
            # Newest-first pagination (DESC).
            where.append("(j.enqueued_at < ? OR (j.enqueued_at = ? AND j.job_id < ?))")
            params.extend([float(enqueued_at), float(enqueued_at), str(job_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            _JOB_SELECT
            + f"""
            WHERE {where_sql}
            ORDER BY j.enqueued_at DESC, j.job_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [_job_from_row(r).as_dict(include_logs=False) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["enqueued_at"]), str(last["job_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def next_waiting_job(self) -> EvaluationJob | None:
        r = self._conn.execute(
            _JOB_SELECT
            + """
            WHERE j.state = 'waiting'
            ORDER BY j.seq ASC
            LIMIT 1;
            """
        ).fetchone()
        return _job_from_row(r) if r is not None else None

    def waiting_position(self, *, job_id: str) -> int | None:
        """1-based FIFO position of a waiting job, or None if it is not waiting."""
        r = self._conn.execute(
            """
            SELECT COUNT(*) AS n
            FROM evaluation_jobs w, evaluation_jobs j
            WHERE j.job_id = ?
              AND j.state = 'waiting'
              AND w.state = 'waiting'
              AND w.seq <= j.seq;
            """,
            (job_id,),
        ).fetchone()
        n = int(r["n"]) if r is not None else 0
        return n or None

    def claim_job(self, *, job_id: str, worker_id: str, commit: bool = True) -> bool:
        updated = self._conn.execute(
            """
            UPDATE evaluation_jobs
            SET
              state = 'active',
              started_at = ?,
              worker_id = ?
            WHERE job_id = ? AND state = 'waiting';
            """,
            (_utc_ts(), worker_id, job_id),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def finish_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        state: str,
        logs: str,
        error: str | None,
        score: float | None,
        duration_s: float | None,
        commit: bool = True,
    ) -> bool:
        if state not in TERMINAL_STATES:
            raise ValueError(f"Not a terminal state: {state!r}")
        updated = self._conn.execute(
            """
            UPDATE evaluation_jobs
            SET
              state = ?,
              finished_at = ?,
              logs = ?,
              error = ?,
              score = ?,
              duration_s = ?
            WHERE job_id = ? AND state = 'active' AND worker_id = ?;
            """,
            (state, _utc_ts(), logs or "", error, score, duration_s, job_id, worker_id),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def fail_active_jobs(
        self,
        *,
        reason: str,
        note: str,
        started_before: float | None = None,
    ) -> list[EvaluationJob]:
        """Force `active` jobs to failed; returns the jobs that were transitioned.

        With `started_before` only jobs claimed before that timestamp are touched
        (the liveness sweep); without it every active job is failed (startup
        reconcile after a restart).
        """
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            if started_before is None:
                rows = self._conn.execute(
                    "SELECT job_id FROM evaluation_jobs WHERE state = 'active';",
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT job_id FROM evaluation_jobs WHERE state = 'active' AND started_at < ?;",
                    (float(started_before),),
                ).fetchall()

            failed: list[str] = []
            for r in rows:
                job_id = str(r["job_id"])
                updated = self._conn.execute(
                    """
                    UPDATE evaluation_jobs
                    SET
                      state = 'failed',
                      finished_at = ?,
                      error = ?,
                      logs = CASE WHEN logs = '' THEN ? ELSE logs || char(10) || ? END,
                      duration_s = ? - started_at
                    WHERE job_id = ? AND state = 'active';
                    """,
                    (ts, reason, note, note, ts, job_id),
                )
                if updated.rowcount != 1:
                    continue
                self._conn.execute(
                    """
                    INSERT INTO events(event_id, job_id, created_at, event_type, payload_json)
                    VALUES(?, ?, ?, ?, ?);
                    """,
                    (_new_id("evt"), job_id, ts, "job_failed", _json_dumps({"error": reason})),
                )
                failed.append(job_id)

        out: list[EvaluationJob] = []
        for job_id in failed:
            job = self.get_job(job_id=job_id)
            if job is not None:
                out.append(job)
        return out

    def archive_job(self, *, job_id: str, superseded_by: str | None, commit: bool = True) -> bool:
        updated = self._conn.execute(
            """
            UPDATE evaluation_jobs
            SET
              archived_at = ?,
              superseded_by = ?
            WHERE job_id = ? AND state IN ('completed', 'failed') AND archived_at IS NULL;
            """,
            (_utc_ts(), superseded_by, job_id),
        )
        if commit:
            self._conn.commit()
        return updated.rowcount == 1

    def count_jobs_by_state(
        self,
        *,
        finished_after: float | None = None,
        terminal_max: int | None = None,
    ) -> dict[str, int]:
        """Counts of current (non-archived) jobs per state.

        Live jobs are always counted. Terminal jobs are counted only inside the
        retention window: finished after `finished_after` and among the newest
        `terminal_max` of them.
        """
        counts = {s: 0 for s in JOB_STATES}
        live = self._conn.execute(
            """
            SELECT state, COUNT(*) AS n
            FROM evaluation_jobs
            WHERE archived_at IS NULL AND state IN ('waiting', 'active')
            GROUP BY state;
            """,
        ).fetchall()
        terminal = self._conn.execute(
            """
            SELECT state, COUNT(*) AS n FROM (
              SELECT state
              FROM evaluation_jobs
              WHERE archived_at IS NULL
                AND state IN ('completed', 'failed')
                AND finished_at >= ?
              ORDER BY finished_at DESC, seq DESC
              LIMIT ?
            )
            GROUP BY state;
            """,
            (
                float(finished_after) if finished_after is not None else float("-inf"),
                int(terminal_max) if terminal_max is not None else -1,
            ),
        ).fetchall()
        counts.update({str(r["state"]): int(r["n"]) for r in [*live, *terminal]})
        return counts

    def average_duration_s(self, *, sample: int = 50) -> float | None:
        r = self._conn.execute(
            """
            SELECT AVG(duration_s) AS avg_s FROM (
              SELECT duration_s
              FROM evaluation_jobs
              WHERE state IN ('completed', 'failed') AND duration_s IS NOT NULL
              ORDER BY finished_at DESC, seq DESC
              LIMIT ?
            );
            """,
            (int(sample),),
        ).fetchone()
        if r is None or r["avg_s"] is None:
            return None
        return float(r["avg_s"])

    def prune_terminal_jobs(self, *, finished_before: float, keep_max: int) -> int:
        """Delete superseded terminal jobs outside the retention window (age or count).

        The current job of a submission is never deleted: status and retry
        read it. It only drops out of the stats window.
        """
        with self.transaction(mode="IMMEDIATE"):
            by_age = self._conn.execute(
                """
                DELETE FROM evaluation_jobs
                WHERE archived_at IS NOT NULL
                  AND state IN ('completed', 'failed')
                  AND finished_at < ?;
                """,
                (float(finished_before),),
            )
            by_count = self._conn.execute(
                """
                DELETE FROM evaluation_jobs
                WHERE archived_at IS NOT NULL
                  AND state IN ('completed', 'failed')
                  AND seq NOT IN (
                    SELECT seq FROM evaluation_jobs
                    WHERE archived_at IS NOT NULL AND state IN ('completed', 'failed')
                    ORDER BY finished_at DESC, seq DESC
                    LIMIT ?
                  );
                """,
                (int(keep_max),),
            )
        return int(by_age.rowcount) + int(by_count.rowcount)

    # --- Results (append-only)
    def insert_result(
        self,
        *,
        job_id: str,
        submission_id: str,
        score: float | None,
        failure_reason: str | None,
        logs: str,
        duration_s: float | None,
    ) -> str:
        """Insert the result of a terminal job; a second call for the same job is a no-op."""
        result_id = _new_id("res")
        self._conn.execute(
            """
            INSERT INTO evaluation_results(
              result_id, job_id, submission_id, created_at, score, failure_reason, logs, duration_s
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO NOTHING;
            """,
            (result_id, job_id, submission_id, _utc_ts(), score, failure_reason, logs or "", duration_s),
        )
        self._conn.commit()
        r = self._conn.execute(
            "SELECT result_id FROM evaluation_results WHERE job_id = ? LIMIT 1;",
            (job_id,),
        ).fetchone()
        return str(r["result_id"]) if r is not None else result_id

    def list_results(self, *, submission_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT result_id, job_id, submission_id, created_at, score, failure_reason, logs, duration_s
            FROM evaluation_results
            WHERE submission_id = ?
            ORDER BY created_at ASC, rowid ASC;
            """,
            (submission_id,),
        ).fetchall()
        return [_result_from_row(r) for r in rows]

    # --- Events (trace)
    def append_event(self, job_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO events(event_id, job_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, job_id, created_at, event_type, _json_dumps(payload)),
        )
        self._conn.commit()
        return event_id

    def iter_events(self, job_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT created_at, event_type, payload_json
            FROM events
            WHERE job_id = ?
            ORDER BY created_at, rowid;
            """,
            (job_id,),
        )
        for r in rows:
            yield {
                "job_id": job_id,
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
