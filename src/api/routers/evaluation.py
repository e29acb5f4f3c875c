from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from src.api.dependencies import get_evaluation_service
from src.api.errors import APIError
from src.api.pagination import Cursor, CursorError, decode_cursor, encode_next_cursor
from src.runtime.service import EvaluationService


router = APIRouter()


class QueueSubmissionRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    artifact_path: str = Field(min_length=1, description="Host path of the unpacked artifact (mounted read-only).")
    rubric_ref: str = Field(default="", description="Host path of the rubric/evaluator pack; empty uses the image default.")
    owner_id: str = Field(default="")


def _evaluation_available(request: Request) -> bool:
    pool = getattr(request.app.state, "worker_pool", None)
    return bool(pool is not None and pool.gate.is_open)


@router.post("/evaluation/queue")
def queue_submission(
    req: QueueSubmissionRequest,
    request: Request,
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    """Register a submission reference (if new) and admit it for evaluation.

    Admission does not depend on the sandbox runtime; `evaluation_available`
    only tells the caller whether workers are currently executing jobs.
    """
    job_id = service.queue.submit(
        submission_id=req.submission_id.strip(),
        artifact_path=req.artifact_path,
        rubric_ref=req.rubric_ref,
        owner_id=req.owner_id,
    )
    return {
        "submission_id": req.submission_id.strip(),
        "job_id": job_id,
        "evaluation_available": _evaluation_available(request),
    }


@router.get("/evaluation/status/{submission_id}")
def get_evaluation_status(
    submission_id: str,
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    job = service.queue.get_current_job(submission_id)
    if job is None:
        raise APIError(status_code=404, code="not_found", message="No evaluation found for this submission.")

    out: dict[str, Any] = {
        "submission_id": job.submission_id,
        "job_id": job.job_id,
        "state": job.state,
        "retry_count": job.retry_count,
        "enqueued_at": job.enqueued_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }
    if job.state == "waiting":
        position = service.queue.position(job.job_id)
        if position is not None:
            out["position"] = position
            # Advisory only (seconds).
            out["estimated_time"] = service.stats.estimate_for_position(position)
    if job.logs:
        out["logs"] = job.logs
    if job.error:
        out["error"] = job.error
    if job.score is not None:
        out["score"] = job.score
    return out


@router.get("/evaluation/queue/stats")
def get_queue_stats(service: EvaluationService = Depends(get_evaluation_service)) -> dict[str, Any]:
    return service.stats.snapshot().as_dict()


@router.post("/evaluation/retry/{submission_id}")
def retry_evaluation(
    submission_id: str,
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    job_id = service.retry.retry(submission_id)
    job = service.queue.get_job(job_id)
    return {
        "submission_id": submission_id,
        "job_id": job_id,
        "retry_count": job.retry_count if job is not None else None,
    }


@router.get("/evaluation/history/{submission_id}")
def get_evaluation_history(
    submission_id: str,
    include_logs: bool = Query(default=False),
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    if service.queue.get_submission(submission_id) is None:
        raise APIError(status_code=404, code="not_found", message="Submission not found.")
    results = service.queue.list_results(submission_id)
    if not include_logs:
        for r in results:
            r.pop("logs", None)
    return {
        "submission_id": submission_id,
        "jobs": [j.as_dict(include_logs=include_logs) for j in service.queue.list_history(submission_id)],
        "results": results,
        "events": service.queue.list_events(submission_id),
    }


@router.get("/evaluation/jobs")
def list_evaluation_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    state: list[str] | None = Query(default=None),
    include_archived: bool = Query(default=False),
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor)
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    with service.queue.connect(read_only=True) as store:
        page = store.list_jobs_page(
            limit=int(limit),
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            states=state or None,
            include_archived=include_archived,
        )
    page["next_cursor"] = encode_next_cursor(page.get("next_cursor"))
    return page
