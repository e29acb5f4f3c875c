from __future__ import annotations

import dataclasses
import os
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.config.load_config import AppConfig, load_app_config  # noqa: E402


# Stands in for the container CLI: `run` executes the last argv element with sh,
# so a sandbox command of ["sh", "-c", "<snippet>"] runs <snippet> directly.
FAKE_RUNTIME = """#!/bin/sh
case "$1" in
  --version) echo "fake-runtime 1.0"; exit 0 ;;
  info) echo "Server: fake"; exit 0 ;;
  kill|rm) exit 0 ;;
  run) for last; do :; done; exec sh -c "$last" ;;
esac
echo "unsupported: $*" >&2
exit 2
"""


def write_script(path: Path, body: str) -> str:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_runtime(tmp_path: Path) -> str:
    return write_script(tmp_path / "fake-runtime", FAKE_RUNTIME)


@pytest.fixture
def make_config(fake_runtime: str) -> Callable[..., AppConfig]:
    """Factory for an AppConfig based on config/default.toml with per-section overrides.

    Usage: make_config(sandbox={"timeout_s": 1.0}, retry={"max_retries": 1})
    """
    base = load_app_config(REPO_ROOT / "config" / "default.toml")

    def _make(**sections: dict[str, Any]) -> AppConfig:
        sandbox = {"runtime_bin": fake_runtime, "kill_grace_s": 1.0, **sections.get("sandbox", {})}
        worker = {"poll_interval_s": 0.05, "probe_backoff_s": 0.0, **sections.get("worker", {})}
        return dataclasses.replace(
            base,
            sandbox=dataclasses.replace(base.sandbox, **sandbox),
            queue=dataclasses.replace(base.queue, **sections.get("queue", {})),
            worker=dataclasses.replace(base.worker, **worker),
            retry=dataclasses.replace(base.retry, **sections.get("retry", {})),
            logs=dataclasses.replace(base.logs, **sections.get("logs", {})),
        )

    return _make


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep a developer's ARENA_EVAL_* overrides out of the tests.
    for key in list(os.environ):
        if key.startswith("ARENA_EVAL_"):
            monkeypatch.delenv(key, raising=False)
