"""Run one evaluation inside a throwaway container.

The executor talks to the container runtime only through its CLI and reads
back three things: the client's exit status, the combined output, and the
wall-clock time it took. Retry policy lives elsewhere; one call is one attempt.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from src.config.load_config import SandboxConfig
from src.sandbox.log_buffer import LogBuffer
from src.sandbox.outcome import (
    REASON_CRASH_SIGNAL,
    REASON_LAUNCH_FAILED,
    REASON_NONZERO_EXIT,
    REASON_PARSE_ERROR,
    REASON_RESOURCE_EXCEEDED,
    ExecutionOutcome,
    Failure,
    Success,
    Timeout,
)
from src.storage.sqlite_store import EvaluationJob
from src.utils.json_extract import JSONExtractionError, extract_score


logger = logging.getLogger(__name__)

# `docker run` reserves 125-127 for "could not start the container/command".
_LAUNCH_EXIT_CODES = frozenset({125, 126, 127})
# 128 + SIGKILL: the kernel OOM killer (memory ceiling) or the pids/cpu cgroup.
_RESOURCE_EXIT_CODE = 137


def _pump(stream: IO[str], buf: LogBuffer) -> None:
    for line in iter(stream.readline, ""):
        buf.append(line)


class SandboxExecutor:
    def __init__(self, config: SandboxConfig, *, max_log_chars: int) -> None:
        self._config = config
        self._max_log_chars = int(max_log_chars)

    @property
    def timeout_s(self) -> float:
        return float(self._config.timeout_s)

    @staticmethod
    def container_name(job_id: str) -> str:
        return f"arena-eval-{job_id}"

    def build_command(self, job: EvaluationJob) -> list[str]:
        cfg = self._config
        argv = [
            cfg.runtime_bin,
            "run",
            "--rm",
            "--name",
            self.container_name(job.job_id),
            "--label",
            f"arena-eval.job={job.job_id}",
            "--network",
            cfg.network,
            "--memory",
            cfg.memory,
            "--memory-swap",
            cfg.memory,
            "--cpus",
            cfg.cpus,
            "--pids-limit",
            str(cfg.pids_limit),
            "-e",
            f"ARENA_EVAL_JOB_ID={job.job_id}",
            "-e",
            f"ARENA_EVAL_SUBMISSION_ID={job.submission_id}",
            "-v",
            f"{Path(job.artifact_path).resolve()}:{cfg.submission_mount}:ro",
        ]
        if job.rubric_ref:
            argv += ["-v", f"{Path(job.rubric_ref).resolve()}:{cfg.rubric_mount}:ro"]
        argv.append(cfg.image)
        argv.extend(cfg.command)
        return argv

    def execute(self, job: EvaluationJob) -> ExecutionOutcome:
        buf = LogBuffer(self._max_log_chars)
        name = self.container_name(job.job_id)
        argv = self.build_command(job)
        started = time.monotonic()

        try:
            with self._sandbox_process(argv, name) as proc:
                if proc.stdout is None:
                    raise RuntimeError(f"sandbox process for {job.job_id} has no output pipe")
                reader = threading.Thread(
                    target=_pump,
                    args=(proc.stdout, buf),
                    name=f"sandbox-output-{job.job_id}",
                    daemon=True,
                )
                reader.start()
                try:
                    exit_code = proc.wait(timeout=self.timeout_s)
                except subprocess.TimeoutExpired:
                    self._terminate(proc, name)
                    reader.join(timeout=self._config.kill_grace_s + 1.0)
                    buf.append(f"\n[arena-eval] deadline of {self.timeout_s:g}s exceeded; sandbox terminated\n")
                    logger.warning("job %s timed out after %.1fs", job.job_id, self.timeout_s)
                    return Timeout(logs=buf.text(), duration_s=time.monotonic() - started)
                reader.join(timeout=self._config.kill_grace_s + 1.0)
        except OSError as e:
            buf.append(f"[arena-eval] failed to launch sandbox runtime {argv[0]!r}: {e}\n")
            return Failure(
                reason=REASON_LAUNCH_FAILED,
                logs=buf.text(),
                duration_s=time.monotonic() - started,
            )

        return self._classify(exit_code, buf, duration_s=time.monotonic() - started)

    def _classify(self, exit_code: int, buf: LogBuffer, *, duration_s: float) -> ExecutionOutcome:
        if exit_code == 0:
            try:
                score = extract_score(buf.text())
            except JSONExtractionError as e:
                buf.append(f"\n[arena-eval] {e}\n")
                return Failure(reason=REASON_PARSE_ERROR, logs=buf.text(), duration_s=duration_s, exit_code=0)
            return Success(score=score, logs=buf.text(), duration_s=duration_s)

        if exit_code == _RESOURCE_EXIT_CODE:
            reason = REASON_RESOURCE_EXCEEDED
        elif exit_code in _LAUNCH_EXIT_CODES:
            reason = REASON_LAUNCH_FAILED
        elif exit_code < 0 or exit_code > 128:
            reason = REASON_CRASH_SIGNAL
        else:
            reason = REASON_NONZERO_EXIT
        buf.append(f"\n[arena-eval] sandbox exited with status {exit_code} ({reason})\n")
        return Failure(reason=reason, logs=buf.text(), duration_s=duration_s, exit_code=exit_code)

    @contextmanager
    def _sandbox_process(self, argv: list[str], name: str) -> Iterator[subprocess.Popen[str]]:
        """Start the runtime client in its own session; always reap it on exit."""
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
        try:
            yield proc
        finally:
            if proc.poll() is None:
                self._terminate(proc, name)
            if proc.stdout is not None:
                proc.stdout.close()

    def _terminate(self, proc: subprocess.Popen[str], name: str) -> None:
        # Stop the container first; killing only the client would leave it running.
        self._runtime_quiet(["kill", name])
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self._config.kill_grace_s)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            proc.wait()
        self._runtime_quiet(["rm", "-f", name])

    @staticmethod
    def _signal_group(proc: subprocess.Popen[str], sig: signal.Signals) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return
        except OSError:
            proc.send_signal(sig)

    def _runtime_quiet(self, args: list[str]) -> None:
        # Best-effort cleanup: the container may already be gone.
        try:
            subprocess.run(
                [self._config.runtime_bin, *args],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self._config.probe_timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("sandbox cleanup %r failed: %s", args, e)
