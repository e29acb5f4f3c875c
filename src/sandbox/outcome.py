from __future__ import annotations

from dataclasses import dataclass
from typing import Union


# Failure reasons recorded on failed jobs and results.
REASON_TIMEOUT = "timeout"
REASON_RESOURCE_EXCEEDED = "resource-exceeded"
REASON_PARSE_ERROR = "parse-error"
REASON_NONZERO_EXIT = "nonzero-exit"
REASON_CRASH_SIGNAL = "crash-signal"
REASON_LAUNCH_FAILED = "launch-failed"
REASON_WORKER_LOST = "worker-lost"
REASON_WORKER_ERROR = "worker-error"

# Infrastructure faults: eligible for a bounded number of automatic retries.
INFRA_REASONS = frozenset({REASON_WORKER_LOST, REASON_LAUNCH_FAILED})


@dataclass(frozen=True)
class Success:
    score: float
    logs: str
    duration_s: float


@dataclass(frozen=True)
class Failure:
    reason: str
    logs: str
    duration_s: float
    exit_code: int | None = None


@dataclass(frozen=True)
class Timeout:
    logs: str
    duration_s: float

    @property
    def reason(self) -> str:
        return REASON_TIMEOUT


ExecutionOutcome = Union[Success, Failure, Timeout]


def outcome_state(outcome: ExecutionOutcome) -> str:
    return "completed" if isinstance(outcome, Success) else "failed"


def outcome_error(outcome: ExecutionOutcome) -> str | None:
    if isinstance(outcome, Success):
        return None
    return outcome.reason
