from __future__ import annotations

from pathlib import Path

import pytest

from src.config.load_config import REPO_ROOT, ConfigError, default_config_path, load_app_config


def test_default_config_loads() -> None:
    cfg = load_app_config(REPO_ROOT / "config" / "default.toml")
    assert cfg.sandbox.runtime_bin == "docker"
    assert cfg.sandbox.network == "none"
    assert cfg.sandbox.command == ["/rubric/evaluate"]
    assert cfg.worker.concurrency >= 1
    assert cfg.retry.max_retries == 3
    assert cfg.logs.max_chars > 0


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARENA_EVAL_RUNTIME_BIN", "podman")
    monkeypatch.setenv("ARENA_EVAL_COMMAND", "python /rubric/run.py --strict")
    monkeypatch.setenv("ARENA_EVAL_TIMEOUT_S", "45")
    monkeypatch.setenv("ARENA_EVAL_CONCURRENCY", "4")
    cfg = load_app_config(REPO_ROOT / "config" / "default.toml")
    assert cfg.sandbox.runtime_bin == "podman"
    assert cfg.sandbox.command == ["python", "/rubric/run.py", "--strict"]
    assert cfg.sandbox.timeout_s == 45.0
    assert cfg.worker.concurrency == 4


def test_config_path_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "custom.toml"
    monkeypatch.setenv("ARENA_EVAL_CONFIG_PATH", str(path))
    assert default_config_path() == path.resolve()


def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ARENA_EVAL_CONCURRENCY", "0")
    with pytest.raises(ConfigError):
        load_app_config(REPO_ROOT / "config" / "default.toml")

    monkeypatch.delenv("ARENA_EVAL_CONCURRENCY")
    monkeypatch.setenv("ARENA_EVAL_TIMEOUT_S", "soon")
    with pytest.raises(ConfigError):
        load_app_config(REPO_ROOT / "config" / "default.toml")

    with pytest.raises(ConfigError):
        load_app_config(tmp_path / "missing.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text('[sandbox]\nruntime_bin = "docker"\n', encoding="utf-8")
    monkeypatch.delenv("ARENA_EVAL_TIMEOUT_S")
    with pytest.raises(ConfigError):
        load_app_config(broken)
