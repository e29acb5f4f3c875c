"""Coordination errors raised synchronously by the queue and retry paths.

Execution failures never surface as exceptions; they are recorded on the job.
"""

from __future__ import annotations

from typing import Any


class EvaluationError(Exception):
    code = "evaluation_error"

    def details(self) -> dict[str, Any]:
        return {}


class SubmissionNotFoundError(EvaluationError):
    code = "submission_not_found"

    def __init__(self, submission_id: str) -> None:
        super().__init__(f"Unknown submission: {submission_id}")
        self.submission_id = submission_id

    def details(self) -> dict[str, Any]:
        return {"submission_id": self.submission_id}


class SubmissionConflictError(EvaluationError):
    """A submission id was registered again with different fields."""

    code = "submission_conflict"

    def __init__(self, submission_id: str) -> None:
        super().__init__(f"Submission {submission_id} already exists with different fields.")
        self.submission_id = submission_id

    def details(self) -> dict[str, Any]:
        return {"submission_id": self.submission_id}


class JobNotFoundError(EvaluationError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Unknown job: {job_id}")
        self.job_id = job_id

    def details(self) -> dict[str, Any]:
        return {"job_id": self.job_id}


class DuplicateSubmissionError(EvaluationError):
    code = "duplicate_submission"

    def __init__(self, submission_id: str, job_id: str | None = None) -> None:
        super().__init__(f"Submission {submission_id} already has a waiting or active evaluation.")
        self.submission_id = submission_id
        self.job_id = job_id

    def details(self) -> dict[str, Any]:
        return {"submission_id": self.submission_id, "job_id": self.job_id}


class AlreadyClaimedError(EvaluationError):
    code = "already_claimed"

    def __init__(self, job_id: str, worker_id: str, *, owner: str | None = None, state: str | None = None) -> None:
        super().__init__(f"Job {job_id} is not claimable by {worker_id} (state={state}, owner={owner}).")
        self.job_id = job_id
        self.worker_id = worker_id
        self.owner = owner
        self.state = state

    def details(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "worker_id": self.worker_id, "owner": self.owner, "state": self.state}


class InvalidTransitionError(EvaluationError):
    code = "invalid_transition"

    def __init__(self, job_id: str, state: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {state} to {target}.")
        self.job_id = job_id
        self.state = state
        self.target = target

    def details(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "state": self.state, "target": self.target}


RETRY_NOT_FAILED = "not_failed"
RETRY_MAX_RETRIES = "max_retries"
RETRY_MAX_AUTO_RETRIES = "max_auto_retries"


class RetryExhaustedError(EvaluationError):
    code = "retry_exhausted"

    def __init__(self, submission_id: str, *, reason: str, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Submission {submission_id} cannot be retried ({reason}; retry_count={retry_count}, max_retries={max_retries})."
        )
        self.submission_id = submission_id
        self.reason = reason
        self.retry_count = retry_count
        self.max_retries = max_retries

    def details(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "reason": self.reason,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }
