from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from src.config.load_config import AppConfig, load_app_config
from src.runtime.events import EventSink, StoreEventSink
from src.runtime.queue import EvaluationQueue
from src.runtime.results import StoreResultSink
from src.runtime.retry import RetryCoordinator
from src.runtime.stats import QueueStatsAggregator
from src.runtime.worker import Executor, WorkerPool, recover_lost_jobs
from src.sandbox.executor import SandboxExecutor
from src.sandbox.outcome import REASON_WORKER_LOST
from src.sandbox.probe import ProbeResult
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


@dataclass
class EvaluationService:
    """The pipeline's components wired against one database."""

    config: AppConfig
    queue: EvaluationQueue
    retry: RetryCoordinator
    stats: QueueStatsAggregator
    results: StoreResultSink

    def build_pool(
        self,
        *,
        executor: Executor | None = None,
        probe: Callable[[], ProbeResult] | None = None,
    ) -> WorkerPool:
        return WorkerPool(
            self.config,
            queue=self.queue,
            executor=executor or SandboxExecutor(self.config.sandbox, max_log_chars=self.config.logs.max_chars),
            retry=self.retry,
            results=self.results,
            probe=probe,
        )

    def reconcile(self, *, reason: str = REASON_WORKER_LOST) -> int:
        """Fail jobs left `active` by a previous process, then apply the auto-retry policy."""
        lost = self.queue.reconcile_active_jobs(
            reason=reason,
            note="[arena-eval] evaluation interrupted by a service restart",
        )
        if lost:
            logger.warning("reconciled %d active jobs from a previous process", len(lost))
            recover_lost_jobs(lost, results=self.results, retry=self.retry)
        return len(lost)


def build_service(
    config: AppConfig | None = None,
    *,
    db_path: str | Path | None = None,
    events: EventSink | None = None,
) -> EvaluationService:
    cfg = config or load_app_config()
    # Create the schema once; later connections only read it.
    SQLiteStore(db_path).close()
    queue = EvaluationQueue(
        db_path,
        poll_interval_s=cfg.worker.poll_interval_s,
        log_max_chars=cfg.logs.max_chars,
        events=events or StoreEventSink(db_path),
    )
    return EvaluationService(
        config=cfg,
        queue=queue,
        retry=RetryCoordinator(
            queue,
            max_retries=cfg.retry.max_retries,
            max_auto_retries=cfg.retry.max_auto_retries,
        ),
        stats=QueueStatsAggregator(
            db_path,
            default_job_duration_s=cfg.queue.default_job_duration_s,
            retention_s=cfg.queue.retention_s,
            retention_max=cfg.queue.retention_max,
        ),
        results=StoreResultSink(db_path),
    )
