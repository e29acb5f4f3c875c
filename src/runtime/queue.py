from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from src.runtime.errors import (
    AlreadyClaimedError,
    DuplicateSubmissionError,
    InvalidTransitionError,
    JobNotFoundError,
    SubmissionConflictError,
    SubmissionNotFoundError,
)
from src.runtime.events import EventSink, LoggingEventSink
from src.sandbox.log_buffer import truncate_log
from src.sandbox.outcome import ExecutionOutcome, Success, outcome_error, outcome_state
from src.storage.sqlite_store import EvaluationJob, SQLiteStore, SubmissionRecord


class EvaluationQueue:
    """Durable FIFO of evaluation jobs on top of SQLite.

    Every call opens its own connection, so the queue can be shared by the
    worker threads, the sweep thread and HTTP handlers. Claims are decided by
    conditional updates inside `BEGIN IMMEDIATE`; the in-process condition
    variable only shortens the wait of idle workers.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        poll_interval_s: float = 0.5,
        log_max_chars: int = 65536,
        events: EventSink | None = None,
    ) -> None:
        self.db_path = db_path
        self.poll_interval_s = max(0.01, float(poll_interval_s))
        self.log_max_chars = int(log_max_chars)
        self.events: EventSink = events or LoggingEventSink()
        self._cond = threading.Condition()

    @contextmanager
    def connect(self, *, read_only: bool = False) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self.db_path, read_only=read_only)
        try:
            yield store
        finally:
            store.close()

    def notify(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # --- Submissions
    def register_submission(
        self,
        *,
        submission_id: str,
        artifact_path: str,
        rubric_ref: str = "",
        owner_id: str = "",
    ) -> SubmissionRecord:
        """Record a submission reference; re-registering identical fields is a no-op."""
        with self.connect() as store:
            with store.transaction():
                existing = store.get_submission(submission_id=submission_id)
                if existing is not None:
                    if (existing.artifact_path, existing.rubric_ref, existing.owner_id) != (
                        artifact_path,
                        rubric_ref or "",
                        owner_id or "",
                    ):
                        raise SubmissionConflictError(submission_id)
                    return existing
                return store.insert_submission(
                    submission_id=submission_id,
                    artifact_path=artifact_path,
                    rubric_ref=rubric_ref,
                    owner_id=owner_id,
                    commit=False,
                )

    # --- Admission
    def admit(self, submission_id: str) -> str:
        with self.connect() as store:
            with store.transaction():
                if store.get_submission(submission_id=submission_id) is None:
                    raise SubmissionNotFoundError(submission_id)
                current = store.get_current_job(submission_id=submission_id)
                if current is not None and not current.is_terminal:
                    raise DuplicateSubmissionError(submission_id, current.job_id)
                if current is not None and current.state == "failed":
                    # failed -> waiting only goes through the retry policy.
                    raise InvalidTransitionError(current.job_id, current.state, "waiting")
                try:
                    job_id = store.insert_job(submission_id=submission_id, commit=False)
                except sqlite3.IntegrityError as e:
                    # Another process admitted between our read and insert.
                    raise DuplicateSubmissionError(submission_id) from e
                if current is not None:
                    # A fresh evaluation of a completed submission starts a new retry chain.
                    store.archive_job(job_id=current.job_id, superseded_by=job_id, commit=False)

        self.events.emit(job_id, "job_admitted", {"submission_id": submission_id})
        self.notify()
        return job_id

    def submit(
        self,
        *,
        submission_id: str,
        artifact_path: str,
        rubric_ref: str = "",
        owner_id: str = "",
    ) -> str:
        self.register_submission(
            submission_id=submission_id,
            artifact_path=artifact_path,
            rubric_ref=rubric_ref,
            owner_id=owner_id,
        )
        return self.admit(submission_id)

    # --- Dequeue / transitions
    def peek_next(self) -> EvaluationJob | None:
        with self.connect(read_only=True) as store:
            return store.next_waiting_job()

    def dequeue_next(self, timeout_s: float, *, stop_event: threading.Event | None = None) -> EvaluationJob | None:
        """Oldest waiting job, waiting up to `timeout_s` for one to appear.

        The job is not claimed; callers follow up with `mark_active`, which
        tells concurrent workers apart. Returns None on timeout or when
        `stop_event` is set.
        """
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        while stop_event is None or not stop_event.is_set():
            job = self.peek_next()
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            # Jobs admitted by other processes are only seen by polling.
            with self._cond:
                self._cond.wait(timeout=min(self.poll_interval_s, remaining))
        return None

    def mark_active(self, job_id: str, worker_id: str) -> EvaluationJob:
        with self.connect() as store:
            with store.transaction():
                job = store.get_job(job_id=job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                if not store.claim_job(job_id=job_id, worker_id=worker_id, commit=False):
                    if job.state == "active":
                        raise AlreadyClaimedError(job_id, worker_id, owner=job.worker_id, state=job.state)
                    raise InvalidTransitionError(job_id, job.state, "active")
            claimed = store.get_job(job_id=job_id)

        if claimed is None:
            raise JobNotFoundError(job_id)
        self.events.emit(job_id, "job_started", {"worker_id": worker_id, "submission_id": claimed.submission_id})
        return claimed

    def mark_terminal(self, job_id: str, worker_id: str, outcome: ExecutionOutcome) -> EvaluationJob:
        """Move an active job owned by `worker_id` to completed/failed.

        Raises AlreadyClaimedError when the worker no longer owns the job,
        e.g. the liveness sweep already failed it.
        """
        state = outcome_state(outcome)
        logs = truncate_log(outcome.logs or "", self.log_max_chars)

        with self.connect() as store:
            with store.transaction():
                job = store.get_job(job_id=job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                ok = store.finish_job(
                    job_id=job_id,
                    worker_id=worker_id,
                    state=state,
                    logs=logs,
                    error=outcome_error(outcome),
                    score=outcome.score if isinstance(outcome, Success) else None,
                    duration_s=float(outcome.duration_s),
                    commit=False,
                )
                if not ok:
                    raise AlreadyClaimedError(job_id, worker_id, owner=job.worker_id, state=job.state)
            finished = store.get_job(job_id=job_id)

        if finished is None:
            raise JobNotFoundError(job_id)
        payload: dict[str, Any] = {"state": state, "duration_s": finished.duration_s}
        if finished.error:
            payload["error"] = finished.error
        if finished.score is not None:
            payload["score"] = finished.score
        self.events.emit(job_id, "job_finished", payload)
        return finished

    # --- Recovery
    def fail_lost_jobs(self, *, started_before: float, reason: str, note: str) -> list[EvaluationJob]:
        with self.connect() as store:
            return store.fail_active_jobs(reason=reason, note=note, started_before=started_before)

    def reconcile_active_jobs(self, *, reason: str, note: str) -> list[EvaluationJob]:
        """Fail every active job left behind by a previous process."""
        with self.connect() as store:
            return store.fail_active_jobs(reason=reason, note=note)

    def prune(self, *, retention_s: float, retention_max: int) -> int:
        with self.connect() as store:
            return store.prune_terminal_jobs(
                finished_before=time.time() - float(retention_s),
                keep_max=int(retention_max),
            )

    # --- Reads
    def get_job(self, job_id: str) -> EvaluationJob | None:
        with self.connect(read_only=True) as store:
            return store.get_job(job_id=job_id)

    def get_current_job(self, submission_id: str) -> EvaluationJob | None:
        with self.connect(read_only=True) as store:
            return store.get_current_job(submission_id=submission_id)

    def get_submission(self, submission_id: str) -> SubmissionRecord | None:
        with self.connect(read_only=True) as store:
            return store.get_submission(submission_id=submission_id)

    def position(self, job_id: str) -> int | None:
        with self.connect(read_only=True) as store:
            return store.waiting_position(job_id=job_id)

    def list_history(self, submission_id: str) -> list[EvaluationJob]:
        """All retained jobs of a submission, oldest first, archived ones included."""
        with self.connect(read_only=True) as store:
            return store.list_jobs_for_submission(submission_id=submission_id)

    def list_results(self, submission_id: str) -> list[dict[str, Any]]:
        with self.connect(read_only=True) as store:
            return store.list_results(submission_id=submission_id)

    def list_events(self, submission_id: str) -> list[dict[str, Any]]:
        """Lifecycle trace of every retained job of a submission, oldest first."""
        with self.connect(read_only=True) as store:
            events: list[dict[str, Any]] = []
            for job in store.list_jobs_for_submission(submission_id=submission_id):
                events.extend(store.iter_events(job.job_id))
        events.sort(key=lambda e: e["created_at"])
        return events
