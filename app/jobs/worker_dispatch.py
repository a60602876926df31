"""Background worker running scheduler and cron test ticks on an interval.

Used when no external cron drives ``/api/v1/scheduler/tick``. Each iteration
takes the tick lock, opens its own session and runs both ticks to completion
inside ``asyncio.run`` on the worker thread.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional

from sqlalchemy.orm import Session

from app import database
from app.config import WORKER_SETTINGS
from app.jobs.tick_lock import TickLock
from app.services.cron_tests import run_cron_test_tick
from app.services.dispatch_runner import run_scheduler_tick
from app.utils import get_logger

logger = get_logger(__name__)


class DispatchWorker:
    def __init__(self, *, interval_seconds: Optional[float] = None, lock: Optional[TickLock] = None, sender: Any = None):
        self.interval_seconds = float(interval_seconds if interval_seconds is not None else WORKER_SETTINGS["interval_seconds"])  # type: ignore[arg-type]
        self.lock = lock or TickLock()
        self.sender = sender
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="dispatch-worker", daemon=True)
        self._thread.start()
        logger.info("Dispatch worker started", interval_seconds=self.interval_seconds, lock_backend=self.lock.backend)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        logger.info("Dispatch worker stop requested")
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Dispatch worker still finishing a tick after stop", timeout_seconds=timeout)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:  # pragma: no cover - keep the thread alive
                logger.error("Dispatch worker loop error", error=str(e), exc_info=True)
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> Optional[dict[str, Any]]:
        """One locked iteration; ``None`` when another holder owns the tick."""
        token = self.lock.acquire()
        if token is None:
            logger.debug("Tick lock busy; skipping iteration")
            return None
        session: Session = database.SessionLocal()
        try:
            return asyncio.run(self._run_ticks(session))
        finally:
            session.close()
            self.lock.release(token)

    async def _run_ticks(self, session: Session) -> dict[str, Any]:
        scheduler = await run_scheduler_tick(session, sender=self.sender)
        cron = await run_cron_test_tick(session, sender=self.sender)
        logger.info(
            "Dispatch worker iteration finished",
            scheduler_triggered=scheduler.triggered,
            scheduler_failed=scheduler.failed,
            cron_tests_triggered=cron.triggered,
        )
        return {"scheduler": scheduler.to_dict(), "cron_tests": cron.to_dict()}


__all__ = ["DispatchWorker"]
