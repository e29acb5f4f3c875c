from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


REPO_ROOT = Path(__file__).resolve().parents[2]


def _as_int(value: Any, *, key: str, min_v: int | None = None) -> int:
    try:
        out = int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str, min_v: float | None = None) -> float:
    try:
        out = float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_str_list(value: Any, *, key: str) -> list[str]:
    if isinstance(value, str):
        # Env overrides arrive as a single shell-style string.
        parts = value.split()
    elif isinstance(value, list):
        parts = [str(v) for v in value]
    else:
        raise ConfigError(f"Invalid list for {key}: {value!r}")
    if not parts:
        raise ConfigError(f"Invalid {key}: empty command")
    return parts


@dataclass(frozen=True)
class SandboxConfig:
    runtime_bin: str
    image: str
    command: list[str]
    timeout_s: float
    memory: str
    cpus: str
    pids_limit: int
    network: str
    submission_mount: str
    rubric_mount: str
    probe_timeout_s: float
    kill_grace_s: float


@dataclass(frozen=True)
class QueueConfig:
    retention_s: float
    retention_max: int
    default_job_duration_s: float


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int
    poll_interval_s: float
    sweep_interval_s: float
    grace_s: float
    probe_backoff_s: float
    probe_backoff_max_s: float


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    max_auto_retries: int


@dataclass(frozen=True)
class LogsConfig:
    max_chars: int


@dataclass(frozen=True)
class AppConfig:
    sandbox: SandboxConfig
    queue: QueueConfig
    worker: WorkerConfig
    retry: RetryConfig
    logs: LogsConfig


# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "ARENA_EVAL_RUNTIME_BIN": ("sandbox", "runtime_bin"),
    "ARENA_EVAL_IMAGE": ("sandbox", "image"),
    "ARENA_EVAL_COMMAND": ("sandbox", "command"),
    "ARENA_EVAL_TIMEOUT_S": ("sandbox", "timeout_s"),
    "ARENA_EVAL_MEMORY": ("sandbox", "memory"),
    "ARENA_EVAL_CPUS": ("sandbox", "cpus"),
    "ARENA_EVAL_CONCURRENCY": ("worker", "concurrency"),
    "ARENA_EVAL_MAX_RETRIES": ("retry", "max_retries"),
    "ARENA_EVAL_LOG_MAX_CHARS": ("logs", "max_chars"),
}


def default_config_path() -> Path:
    raw = os.getenv("ARENA_EVAL_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    local = Path("config/default.toml").resolve()
    if local.exists():
        return local
    # Running from another cwd (e.g. an installed checkout): use the repo copy.
    return (REPO_ROOT / "config" / "default.toml").resolve()


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()}
    for env_key, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value is None or not value.strip():
            continue
        merged.setdefault(section, {})[key] = value.strip()
    return merged


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = _apply_env_overrides(tomllib.loads(cfg_path.read_text(encoding="utf-8")))

    sandbox = raw.get("sandbox", {})
    queue = raw.get("queue", {})
    worker = raw.get("worker", {})
    retry = raw.get("retry", {})
    logs = raw.get("logs", {})

    return AppConfig(
        sandbox=SandboxConfig(
            runtime_bin=_as_str(sandbox.get("runtime_bin"), key="sandbox.runtime_bin"),
            image=_as_str(sandbox.get("image"), key="sandbox.image"),
            command=_as_str_list(sandbox.get("command"), key="sandbox.command"),
            timeout_s=_as_float(sandbox.get("timeout_s"), key="sandbox.timeout_s", min_v=0.001),
            memory=_as_str(sandbox.get("memory"), key="sandbox.memory"),
            cpus=_as_str(sandbox.get("cpus"), key="sandbox.cpus"),
            pids_limit=_as_int(sandbox.get("pids_limit"), key="sandbox.pids_limit", min_v=1),
            network=_as_str(sandbox.get("network"), key="sandbox.network"),
            submission_mount=_as_str(sandbox.get("submission_mount"), key="sandbox.submission_mount"),
            rubric_mount=_as_str(sandbox.get("rubric_mount"), key="sandbox.rubric_mount"),
            probe_timeout_s=_as_float(
                sandbox.get("probe_timeout_s"), key="sandbox.probe_timeout_s", min_v=0.001
            ),
            kill_grace_s=_as_float(sandbox.get("kill_grace_s"), key="sandbox.kill_grace_s", min_v=0.0),
        ),
        queue=QueueConfig(
            retention_s=_as_float(queue.get("retention_s"), key="queue.retention_s", min_v=0.0),
            retention_max=_as_int(queue.get("retention_max"), key="queue.retention_max", min_v=0),
            default_job_duration_s=_as_float(
                queue.get("default_job_duration_s"), key="queue.default_job_duration_s", min_v=0.0
            ),
        ),
        worker=WorkerConfig(
            concurrency=_as_int(worker.get("concurrency"), key="worker.concurrency", min_v=1),
            poll_interval_s=_as_float(
                worker.get("poll_interval_s"), key="worker.poll_interval_s", min_v=0.001
            ),
            sweep_interval_s=_as_float(
                worker.get("sweep_interval_s"), key="worker.sweep_interval_s", min_v=0.001
            ),
            grace_s=_as_float(worker.get("grace_s"), key="worker.grace_s", min_v=0.0),
            probe_backoff_s=_as_float(
                worker.get("probe_backoff_s"), key="worker.probe_backoff_s", min_v=0.0
            ),
            probe_backoff_max_s=_as_float(
                worker.get("probe_backoff_max_s"), key="worker.probe_backoff_max_s", min_v=0.0
            ),
        ),
        retry=RetryConfig(
            max_retries=_as_int(retry.get("max_retries"), key="retry.max_retries", min_v=0),
            max_auto_retries=_as_int(retry.get("max_auto_retries"), key="retry.max_auto_retries", min_v=0),
        ),
        logs=LogsConfig(
            max_chars=_as_int(logs.get("max_chars"), key="logs.max_chars", min_v=1),
        ),
    )
