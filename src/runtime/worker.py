from __future__ import annotations

import logging
import os
import threading
import time
import traceback
from typing import Any, Callable, Iterable, Protocol

from src.config.load_config import AppConfig
from src.runtime.errors import AlreadyClaimedError, InvalidTransitionError, JobNotFoundError
from src.runtime.queue import EvaluationQueue
from src.runtime.results import ResultSink
from src.runtime.retry import RetryCoordinator
from src.sandbox.log_buffer import truncate_log
from src.sandbox.outcome import (
    REASON_LAUNCH_FAILED,
    REASON_WORKER_ERROR,
    REASON_WORKER_LOST,
    ExecutionOutcome,
    Failure,
)
from src.sandbox.probe import ProbeResult, RuntimeProbe
from src.storage.sqlite_store import EvaluationJob


logger = logging.getLogger(__name__)


class Executor(Protocol):
    def execute(self, job: EvaluationJob) -> ExecutionOutcome: ...


class EnvironmentGate:
    """Pauses dequeueing while the sandbox runtime is unavailable.

    Starts closed; the first `ready()` call probes. A failed probe (or a
    launch failure reported by a worker) closes the gate and schedules the next
    probe after an exponential backoff. Admission is never affected.
    """

    def __init__(
        self,
        probe: Callable[[], ProbeResult],
        *,
        backoff_s: float,
        backoff_max_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._backoff_base = max(0.0, float(backoff_s))
        self._backoff_max = max(self._backoff_base, float(backoff_max_s))
        self._clock = clock
        self._lock = threading.Lock()
        self._open = False
        self._backoff = self._backoff_base
        self._next_probe_at = 0.0
        self._last: ProbeResult | None = None
        self._reason = "not probed yet"

    @property
    def is_open(self) -> bool:
        return self._open

    def ready(self) -> bool:
        with self._lock:
            if self._open:
                return True
            if self._clock() < self._next_probe_at:
                return False
            result = self._probe()
            self._last = result
            if result.ok:
                if self._reason:
                    logger.info("sandbox runtime available; resuming evaluations")
                self._open = True
                self._backoff = self._backoff_base
                self._reason = ""
                return True
            logger.warning(
                "sandbox runtime unavailable (%s check failed, retry in %.0fs): %s",
                result.check or "probe",
                self._backoff,
                result.output.strip()[:500],
            )
            self._close_locked(f"probe failed: {result.check or 'probe'}")
            return False

    def trip(self, reason: str) -> None:
        with self._lock:
            if not self._open:
                return
            logger.warning("pausing evaluations: %s", reason)
            self._close_locked(reason)

    def _close_locked(self, reason: str) -> None:
        self._open = False
        self._reason = reason
        self._next_probe_at = self._clock() + self._backoff
        self._backoff = min(self._backoff_max, max(self._backoff * 2, self._backoff_base))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "open": self._open,
                "reason": self._reason,
                "next_probe_in_s": max(0.0, self._next_probe_at - self._clock()) if not self._open else 0.0,
                "last_probe": self._last.as_dict() if self._last is not None else None,
            }


def recover_lost_jobs(
    jobs: Iterable[EvaluationJob],
    *,
    results: ResultSink,
    retry: RetryCoordinator,
) -> list[str]:
    """Persist results for force-failed jobs and apply the automatic retry policy.

    Returns the ids of the jobs created by automatic retries.
    """
    retried: list[str] = []
    for job in jobs:
        try:
            results.record(job)
        except Exception:
            logger.exception("could not record result for lost job %s", job.job_id)
        new_job_id = retry.auto_retry(job)
        if new_job_id is not None:
            retried.append(new_job_id)
    return retried


class WorkerPool:
    """Fixed set of worker threads driving jobs through the sandbox executor.

    Each worker: gate -> dequeue -> mark_active -> execute -> mark_terminal ->
    record result. A separate sweep thread fails jobs stuck in `active` past
    their deadline plus grace and prunes terminal jobs past retention.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        queue: EvaluationQueue,
        executor: Executor,
        retry: RetryCoordinator,
        results: ResultSink,
        probe: Callable[[], ProbeResult] | None = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.executor = executor
        self.retry = retry
        self.results = results
        self.gate = EnvironmentGate(
            probe or RuntimeProbe(config.sandbox).check,
            backoff_s=config.worker.probe_backoff_s,
            backoff_max_s=config.worker.probe_backoff_max_s,
        )

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._sweeper: threading.Thread | None = None
        self._lock = threading.Lock()
        self._current: dict[str, str] = {}
        self._counters = {"completed": 0, "failed": 0, "lost": 0, "auto_retried": 0}

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def worker_ids(self) -> list[str]:
        return [f"worker-{os.getpid()}-{i}" for i in range(int(self.config.worker.concurrency))]

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, args=(worker_id,), name=f"arena-eval-{worker_id}", daemon=True)
            for worker_id in self.worker_ids()
        ]
        for t in self._threads:
            t.start()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="arena-eval-sweep", daemon=True)
        self._sweeper.start()
        logger.info("worker pool started (concurrency=%d)", len(self._threads))

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        self.queue.notify()
        for t in [*self._threads, self._sweeper]:
            if t is not None:
                t.join(timeout=timeout_s)

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            current = dict(self._current)
            counters = dict(self._counters)
        return {
            "running": self.running,
            "concurrency": int(self.config.worker.concurrency),
            "alive_workers": sum(1 for t in self._threads if t.is_alive()),
            "current_jobs": current,
            "processed": counters,
            "environment": self.gate.snapshot(),
            "poll_interval_s": float(self.config.worker.poll_interval_s),
            "sweep_interval_s": float(self.config.worker.sweep_interval_s),
        }

    # --- Worker
    def _run_loop(self, worker_id: str) -> None:
        poll_s = float(self.config.worker.poll_interval_s)
        while not self._stop.is_set():
            try:
                if not self.gate.ready():
                    self._stop.wait(poll_s)
                    continue
                job = self.queue.dequeue_next(max(poll_s, 1.0), stop_event=self._stop)
                if job is None:
                    continue
                self.process(job, worker_id)
            except Exception:
                # Never let a store or bookkeeping error kill the worker thread.
                logger.exception("%s: unexpected error in worker loop", worker_id)
                self._stop.wait(poll_s)

    def process(self, job: EvaluationJob, worker_id: str) -> EvaluationJob | None:
        """Claim and run one job. Returns the terminal job, or None if another worker had it."""
        try:
            active = self.queue.mark_active(job.job_id, worker_id)
        except (AlreadyClaimedError, InvalidTransitionError, JobNotFoundError) as e:
            logger.debug("%s: skipped %s: %s", worker_id, job.job_id, e)
            return None

        with self._lock:
            self._current[worker_id] = active.job_id
        try:
            outcome = self._execute(active)
        finally:
            with self._lock:
                self._current.pop(worker_id, None)

        if isinstance(outcome, Failure) and outcome.reason == REASON_LAUNCH_FAILED:
            self.gate.trip(f"job {active.job_id} could not launch a sandbox")

        try:
            finished = self.queue.mark_terminal(active.job_id, worker_id, outcome)
        except AlreadyClaimedError as e:
            # The sweep declared this worker lost; its verdict stands.
            logger.warning("%s: discarding late outcome for %s: %s", worker_id, active.job_id, e)
            return None

        with self._lock:
            self._counters[finished.state] += 1
        try:
            self.results.record(finished)
        except Exception:
            logger.exception("%s: could not record result for %s", worker_id, finished.job_id)

        if self.retry.auto_retry(finished) is not None:
            with self._lock:
                self._counters["auto_retried"] += 1
        return finished

    def _execute(self, job: EvaluationJob) -> ExecutionOutcome:
        started = time.monotonic()
        try:
            return self.executor.execute(job)
        except Exception as e:
            logger.exception("executor raised for %s", job.job_id)
            logs = truncate_log(
                f"[arena-eval] worker error: {type(e).__name__}: {e}\n{traceback.format_exc()}",
                self.queue.log_max_chars,
            )
            return Failure(reason=REASON_WORKER_ERROR, logs=logs, duration_s=time.monotonic() - started)

    def run_until_idle(self, worker_id: str | None = None, *, max_jobs: int | None = None) -> list[EvaluationJob]:
        """Process waiting jobs on the calling thread until none are left.

        Used by the CLI and by tests; skips the environment gate's background
        re-probing but still refuses to run when the gate is closed.
        """
        worker_id = worker_id or f"inline-{os.getpid()}"
        done: list[EvaluationJob] = []
        while max_jobs is None or len(done) < max_jobs:
            if not self.gate.ready():
                break
            job = self.queue.peek_next()
            if job is None:
                break
            finished = self.process(job, worker_id)
            if finished is not None:
                done.append(finished)
        return done

    # --- Liveness sweep
    def _sweep_loop(self) -> None:
        interval = float(self.config.worker.sweep_interval_s)
        while not self._stop.wait(interval):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("liveness sweep failed")

    def sweep_once(self) -> list[EvaluationJob]:
        limit_s = float(self.config.sandbox.timeout_s) + float(self.config.worker.grace_s)
        lost = self.queue.fail_lost_jobs(
            started_before=time.time() - limit_s,
            reason=REASON_WORKER_LOST,
            note=f"[arena-eval] no terminal report within {limit_s:g}s of start; worker presumed lost",
        )
        for job in lost:
            logger.warning("job %s marked %s (worker %s)", job.job_id, REASON_WORKER_LOST, job.worker_id)
            self.queue.events.emit(job.job_id, "job_lost", {"worker_id": job.worker_id})
        retried = recover_lost_jobs(lost, results=self.results, retry=self.retry)
        with self._lock:
            self._counters["lost"] += len(lost)
            self._counters["auto_retried"] += len(retried)

        pruned = self.queue.prune(
            retention_s=self.config.queue.retention_s,
            retention_max=self.config.queue.retention_max,
        )
        if pruned:
            logger.info("pruned %d terminal jobs past retention", pruned)
        return lost
