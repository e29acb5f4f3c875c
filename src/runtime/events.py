from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingEventSink:
    """Logs lifecycle events without persisting them."""

    def emit(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("%s %s %s", event_type, job_id, payload)


class StoreEventSink:
    """Appends lifecycle events to the `events` trace table and logs them.

    A failed trace write is logged and dropped; it must never fail a job transition
    that already committed.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = db_path

    def emit(self, job_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("%s %s %s", event_type, job_id, payload)
        try:
            store = SQLiteStore(self.db_path)
        except Exception:
            logger.exception("could not open trace store for %s", event_type)
            return
        try:
            store.append_event(job_id, event_type, payload)
        except Exception:
            logger.exception("could not record %s for %s", event_type, job_id)
        finally:
            store.close()
