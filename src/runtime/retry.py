from __future__ import annotations

import logging

from src.runtime.errors import (
    RETRY_MAX_AUTO_RETRIES,
    RETRY_MAX_RETRIES,
    RETRY_NOT_FAILED,
    RetryExhaustedError,
    SubmissionNotFoundError,
)
from src.runtime.queue import EvaluationQueue
from src.sandbox.outcome import INFRA_REASONS
from src.storage.sqlite_store import EvaluationJob


logger = logging.getLogger(__name__)


class RetryCoordinator:
    """Re-admits failed evaluations under a bounded-retry policy.

    `retry_count` counts every retry in a submission's chain; automatic retries
    (infrastructure faults only) additionally count against `max_auto_retries`.
    """

    def __init__(self, queue: EvaluationQueue, *, max_retries: int, max_auto_retries: int = 1) -> None:
        self.queue = queue
        self.max_retries = int(max_retries)
        self.max_auto_retries = int(max_auto_retries)

    def retry(self, submission_id: str, *, automatic: bool = False, expected_job_id: str | None = None) -> str:
        with self.queue.connect() as store:
            with store.transaction():
                if store.get_submission(submission_id=submission_id) is None:
                    raise SubmissionNotFoundError(submission_id)
                current = store.get_current_job(submission_id=submission_id)
                retry_count = current.retry_count if current is not None else 0

                if current is None or current.state != "failed":
                    raise RetryExhaustedError(
                        submission_id, reason=RETRY_NOT_FAILED, retry_count=retry_count, max_retries=self.max_retries
                    )
                if expected_job_id is not None and current.job_id != expected_job_id:
                    # Someone else already moved this submission on.
                    raise RetryExhaustedError(
                        submission_id, reason=RETRY_NOT_FAILED, retry_count=retry_count, max_retries=self.max_retries
                    )
                if retry_count >= self.max_retries:
                    raise RetryExhaustedError(
                        submission_id, reason=RETRY_MAX_RETRIES, retry_count=retry_count, max_retries=self.max_retries
                    )
                if automatic and current.auto_retry_count >= self.max_auto_retries:
                    raise RetryExhaustedError(
                        submission_id,
                        reason=RETRY_MAX_AUTO_RETRIES,
                        retry_count=retry_count,
                        max_retries=self.max_retries,
                    )

                job_id = store.insert_job(
                    submission_id=submission_id,
                    retry_count=retry_count + 1,
                    auto_retry_count=current.auto_retry_count + (1 if automatic else 0),
                    commit=False,
                )
                store.archive_job(job_id=current.job_id, superseded_by=job_id, commit=False)

        self.queue.events.emit(
            job_id,
            "job_retried",
            {
                "submission_id": submission_id,
                "previous_job_id": current.job_id,
                "previous_error": current.error,
                "retry_count": retry_count + 1,
                "automatic": automatic,
            },
        )
        self.queue.notify()
        return job_id

    def auto_retry(self, job: EvaluationJob) -> str | None:
        """Retry an infrastructure failure if the policy still allows it."""
        if job.state != "failed" or job.error not in INFRA_REASONS:
            return None
        try:
            return self.retry(job.submission_id, automatic=True, expected_job_id=job.job_id)
        except RetryExhaustedError as e:
            logger.warning("not retrying %s after %s: %s", job.job_id, job.error, e)
            return None
