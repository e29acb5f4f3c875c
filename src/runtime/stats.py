from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.storage.sqlite_store import SQLiteStore


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    average_job_duration_s: float
    estimated_wait_s: float

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed

    def as_dict(self) -> dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "estimated_wait_s": self.estimated_wait_s,
            "average_job_duration_s": self.average_job_duration_s,
        }


class QueueStatsAggregator:
    """Read-only projection of queue state.

    Each snapshot uses a fresh read-only connection and a deferred (read)
    transaction, so under WAL it sees one consistent version of the table and
    never takes the write lock workers and admission need. Terminal jobs count
    only inside the retention window. The wait estimate is advisory.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        default_job_duration_s: float = 120.0,
        retention_s: float | None = None,
        retention_max: int | None = None,
    ) -> None:
        self.db_path = db_path
        self.default_job_duration_s = float(default_job_duration_s)
        self.retention_s = retention_s
        self.retention_max = retention_max

    def snapshot(self) -> QueueStats:
        finished_after = time.time() - float(self.retention_s) if self.retention_s is not None else None
        store = SQLiteStore(self.db_path, read_only=True)
        try:
            with store.transaction(mode="DEFERRED"):
                counts = store.count_jobs_by_state(finished_after=finished_after, terminal_max=self.retention_max)
                avg = store.average_duration_s()
        finally:
            store.close()

        avg_s = avg if avg is not None and avg > 0 else self.default_job_duration_s
        return QueueStats(
            waiting=counts["waiting"],
            active=counts["active"],
            completed=counts["completed"],
            failed=counts["failed"],
            average_job_duration_s=avg_s,
            estimated_wait_s=counts["waiting"] * avg_s,
        )

    def estimate_for_position(self, position: int, *, average_job_duration_s: float | None = None) -> float:
        avg_s = average_job_duration_s
        if avg_s is None:
            store = SQLiteStore(self.db_path, read_only=True)
            try:
                avg_s = store.average_duration_s()
            finally:
                store.close()
        if avg_s is None or avg_s <= 0:
            avg_s = self.default_job_duration_s
        return max(0, int(position)) * float(avg_s)
