"""Periodic timer driving ``Dispatcher.run_tick``.

Fire times sit on a fixed grid (start + k * interval). When a tick overruns
one or more grid points those fires are skipped, not queued, so ticks in one
process never overlap. The manual trigger goes through the same tick lock.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable

from app.config import DISPATCH_SETTINGS
from app.jobs.dispatcher import Dispatcher, TickResult
from app.utils import get_logger
from app.utils.time import format_elapsed

logger = get_logger(__name__)


class DispatchScheduler:
    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        interval_seconds: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        interval = float(DISPATCH_SETTINGS["interval_seconds"] if interval_seconds is None else interval_seconds)
        if interval <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.dispatcher = dispatcher
        self.interval_seconds = interval
        self._monotonic = monotonic
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._ticks_run = 0
        self._skipped_fires = 0
        self._last_result: TickResult | None = None

    # ------------------------------- lifecycle ------------------------------- #
    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="dispatch-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Dispatch scheduler started",
            interval_seconds=self.interval_seconds,
            batch_limit=self.dispatcher.batch_limit,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop and wait for it; an in-flight tick finishes its batch first."""
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Dispatch scheduler did not stop within timeout", timeout=timeout)
                return
        self._thread = None
        logger.info("Dispatch scheduler stopped", ticks_run=self._ticks_run)

    # --------------------------------- ticks --------------------------------- #
    def run_once(self, now: datetime | None = None) -> TickResult:
        """Manual trigger: one synchronous tick, serialized with the timer."""
        with self._tick_lock:
            return self._run_tick(now)

    def _run_tick(self, now: datetime | None) -> TickResult:
        result = self.dispatcher.run_tick(now)
        with self._state_lock:
            self._ticks_run += 1
            self._last_result = result
        logger.info(
            "Tick complete",
            claimed=result.claimed,
            sent=result.sent,
            failed=result.failed,
            elapsed=format_elapsed(result.started_at, result.finished_at),
        )
        return result

    def _loop(self) -> None:
        anchor = self._monotonic()
        fire_index = 1
        while not self._stop_event.is_set():
            delay = anchor + fire_index * self.interval_seconds - self._monotonic()
            if delay > 0 and self._stop_event.wait(delay):
                break
            if self._stop_event.is_set():
                break
            try:
                with self._tick_lock:
                    self._run_tick(None)
            except Exception as e:  # pragma: no cover - run_tick already contains its own failures
                logger.error("Unexpected error in dispatch tick", error=str(e), exc_info=True)

            elapsed_fires = int((self._monotonic() - anchor) // self.interval_seconds)
            skipped = elapsed_fires - fire_index
            if skipped > 0:
                with self._state_lock:
                    self._skipped_fires += skipped
                logger.warning(
                    "Tick overran its interval; skipping missed fires",
                    skipped=skipped,
                    interval_seconds=self.interval_seconds,
                )
            fire_index = max(fire_index, elapsed_fires) + 1

    # -------------------------------- status --------------------------------- #
    def snapshot(self) -> dict:
        with self._state_lock:
            last = self._last_result.as_dict() if self._last_result else None
            return {
                "running": self.running,
                "interval_seconds": self.interval_seconds,
                "batch_limit": self.dispatcher.batch_limit,
                "ticks_run": self._ticks_run,
                "skipped_fires": self._skipped_fires,
                "tick_in_progress": self._tick_lock.locked(),
                "last_tick": last,
            }


__all__ = ["DispatchScheduler"]
