from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends
from fastapi import Request

from src.api.dependencies import get_evaluation_service
from src.runtime.service import EvaluationService
from src.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "arena-eval",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/worker")
def system_worker(
    request: Request,
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, Any]:
    # Pool, sandbox gate and queue counts in one place for operators.
    pool = getattr(request.app.state, "worker_pool", None)
    worker_snapshot: dict[str, Any] = {"enabled": pool is not None, "running": False}
    if pool is not None:
        worker_snapshot.update(pool.status_snapshot())

    return {
        "ts": time.time(),
        "worker": worker_snapshot,
        "evaluation_available": bool(pool is not None and pool.gate.is_open),
        "queue": service.stats.snapshot().as_dict(),
        "startup": {
            "reconciled_active_jobs": getattr(request.app.state, "reconciled_active_jobs", 0),
        },
    }
