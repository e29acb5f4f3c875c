from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    evaluation_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.runtime.errors import EvaluationError
from src.runtime.service import build_service

from .routers.evaluation import router as evaluation_router
from .routers.health import router as health_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("ARENA_EVAL_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    def _env_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        service = build_service()
        app.state.evaluation = service

        # Jobs left 'active' by a previous process have lost their worker.
        if _env_bool("ARENA_EVAL_RECONCILE_ON_STARTUP", True):
            app.state.reconciled_active_jobs = service.reconcile()
        else:
            app.state.reconciled_active_jobs = 0

        # Single-process scheduler: one pool per service instance.
        if _env_bool("ARENA_EVAL_ENABLE_WORKER", True):
            pool = service.build_pool()
            pool.start()
            app.state.worker_pool = pool
        try:
            yield
        finally:
            pool = getattr(app.state, "worker_pool", None)
            if pool is not None:
                pool.stop()

    app = FastAPI(title="arena-eval API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(EvaluationError, evaluation_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(evaluation_router, prefix="/api/v1", tags=["evaluation"])

    return app


app = create_app()
