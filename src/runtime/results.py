from __future__ import annotations

from pathlib import Path
from typing import Protocol

from src.storage.sqlite_store import EvaluationJob, SQLiteStore


class ResultSink(Protocol):
    def record(self, job: EvaluationJob) -> str: ...


class StoreResultSink:
    """Writes one `evaluation_results` row per terminal job (idempotent per job)."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = db_path

    def record(self, job: EvaluationJob) -> str:
        if not job.is_terminal:
            raise ValueError(f"Job {job.job_id} is not terminal (state={job.state}).")
        store = SQLiteStore(self.db_path)
        try:
            return store.insert_result(
                job_id=job.job_id,
                submission_id=job.submission_id,
                score=job.score if job.state == "completed" else None,
                failure_reason=job.error if job.state == "failed" else None,
                logs=job.logs,
                duration_s=job.duration_s,
            )
        finally:
            store.close()
