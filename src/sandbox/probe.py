"""Sandbox runtime availability checks.

Both probes shell out to the runtime CLI with a cheap query and never raise:
a missing binary, a non-zero exit or a hung client all read as "not available".
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

from src.config.load_config import SandboxConfig


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    exit_code: int | None
    output: str
    check: str = ""

    def as_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "exit_code": self.exit_code, "output": self.output, "check": self.check}


def run_probe(argv: list[str], *, timeout_s: float, check: str = "") -> ProbeResult:
    try:
        proc = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        out = e.output if isinstance(e.output, str) else (e.output or b"").decode("utf-8", "replace")
        return ProbeResult(ok=False, exit_code=None, output=f"{out}\nprobe timed out after {timeout_s}s", check=check)
    except OSError as e:
        return ProbeResult(ok=False, exit_code=None, output=f"failed to launch {argv[0]!r}: {e}", check=check)
    return ProbeResult(ok=proc.returncode == 0, exit_code=proc.returncode, output=proc.stdout or "", check=check)


def probe_installed(runtime_bin: str = "docker", *, timeout_s: float = 10.0) -> bool:
    return run_probe([runtime_bin, "--version"], timeout_s=timeout_s, check="installed").ok


def probe_daemon_ready(runtime_bin: str = "docker", *, timeout_s: float = 10.0) -> bool:
    return run_probe([runtime_bin, "info"], timeout_s=timeout_s, check="daemon").ok


class RuntimeProbe:
    def __init__(self, config: SandboxConfig) -> None:
        self._bin = config.runtime_bin
        self._timeout_s = float(config.probe_timeout_s)

    def check(self) -> ProbeResult:
        """Installed check first; the daemon query only runs if the client exists."""
        installed = run_probe([self._bin, "--version"], timeout_s=self._timeout_s, check="installed")
        if not installed.ok:
            return installed
        return run_probe([self._bin, "info"], timeout_s=self._timeout_s, check="daemon")
