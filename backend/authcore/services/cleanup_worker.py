"""Background retention sweep for expired refresh tokens."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authcore.config import settings
from authcore.core.database import SessionLocal
from authcore.services.token_service import TokenService, token_service

logger = logging.getLogger(__name__)

# Batches per cleanup() call; the worker checks for stop between calls.
_BATCHES_PER_STEP = 10


class CleanupWorker:
    """Periodically reclaims expired refresh tokens in bounded steps."""

    def __init__(
        self,
        service: TokenService,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._service = service
        self._session_factory = session_factory
        self._interval = interval_seconds if interval_seconds is not None else settings.CLEANUP_INTERVAL_SECONDS
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._runs: int = 0
        self._reclaimed: int = 0
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="token-cleanup", daemon=True)
        self._thread.start()
        logger.info("Token cleanup worker started (interval=%ss)", self._interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("Token cleanup worker stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "runs": self._runs,
            "reclaimed": self._reclaimed,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except SQLAlchemyError as exc:
                logger.error("Token cleanup pass failed: %s", exc)
            self._heartbeat = time.time()
            self._stop_event.wait(max(1.0, self._interval))

    def run_once(self) -> int:
        """One full sweep, stopping early between steps if asked to; returns rows deleted."""
        db = self._session_factory()
        deleted = 0
        try:
            while not self._stop_event.is_set():
                result = self._service.cleanup(db, max_batches=_BATCHES_PER_STEP)
                deleted += result.deleted
                if result.complete:
                    break
        finally:
            db.close()
        with self._lock:
            self._runs += 1
            self._reclaimed += deleted
        return deleted


cleanup_worker = CleanupWorker(token_service)
