from __future__ import annotations

import threading

from fastapi import Request

from src.api.errors import APIError
from src.config.load_config import ConfigError
from src.runtime.service import EvaluationService, build_service


_SERVICE_INIT_LOCK = threading.Lock()


def get_evaluation_service(request: Request) -> EvaluationService:
    """FastAPI dependency: returns the app's EvaluationService (lazy init).

    The lifespan normally builds it on startup; handlers invoked without the
    lifespan (e.g. a TestClient used outside a `with` block) build it here.
    The instance is cached in `app.state` for the lifetime of the process.
    """
    cached = getattr(request.app.state, "evaluation", None)
    if isinstance(cached, EvaluationService):
        return cached

    with _SERVICE_INIT_LOCK:
        cached2 = getattr(request.app.state, "evaluation", None)
        if isinstance(cached2, EvaluationService):
            return cached2

        try:
            service = build_service()
        except ConfigError as e:
            raise APIError(status_code=503, code="config_error", message=str(e)) from e

        request.app.state.evaluation = service
        return service
