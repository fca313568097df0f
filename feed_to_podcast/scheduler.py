from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


RunFn = Callable[[threading.Event], Any]


@dataclass
class SchedulerStatus:
    enabled: bool
    is_running: bool
    last_run: Optional[str] = None
    next_run: Optional[str] = None


def _iso(when: dt.datetime) -> str:
    return when.isoformat(timespec="seconds")


class BatchScheduler:
    """Runs the batch periodically on a worker thread, never two at once.

    All state lives behind one condition variable. `_running` is set before the
    worker thread starts and cleared in the worker's finally block.
    """

    def __init__(
        self,
        run_fn: RunFn,
        interval_seconds: float,
        initial_delay_seconds: float = 10.0,
        enabled: bool = True,
        disable_initial_run: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.run_fn = run_fn
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.disable_initial_run = disable_initial_run

        self._cond = threading.Condition(threading.Lock())
        self._enabled = enabled
        self._running = False
        self._started = False
        self._stopped = False
        self._timer: Optional[threading.Timer] = None
        self._cancel: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._last_run: Optional[dt.datetime] = None
        self._next_run: Optional[dt.datetime] = None

    # Timer handling; callers hold self._cond

    def _schedule_locked(self, delay: float) -> None:
        self._cancel_timer_locked()
        timer = threading.Timer(delay, self._on_timer)
        timer.daemon = True
        timer.name = "batch-timer"
        self._timer = timer
        self._next_run = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=delay)
        timer.start()
        logger.info("Next batch scheduled", extra={"next_run": _iso(self._next_run)})

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._next_run = None

    def _on_timer(self) -> None:
        with self._cond:
            if self._timer is not threading.current_thread():
                return
            self._timer = None
            if not self._enabled or self._stopped:
                return
        self._start_run("scheduled")

    # Runs

    def _start_run(self, reason: str) -> bool:
        with self._cond:
            if self._stopped:
                return False
            if self._running:
                logger.info("Batch already running, skipping", extra={"reason": reason})
                return False
            self._running = True
            self._last_run = dt.datetime.now(dt.timezone.utc)
            self._cancel = threading.Event()
            self._cancel_timer_locked()
            thread = threading.Thread(target=self._run, args=(self._cancel, reason), name="batch-run", daemon=True)
            self._thread = thread
        thread.start()
        return True

    def _run(self, cancel: threading.Event, reason: str) -> None:
        logger.info("Batch run starting", extra={"reason": reason})
        try:
            self.run_fn(cancel)
        except Exception:  # noqa: BLE001
            logger.exception("Batch run failed")
        finally:
            with self._cond:
                self._running = False
                self._cancel = None
                if self._enabled and self._started and not self._stopped:
                    self._schedule_locked(self.interval_seconds)
                self._cond.notify_all()
            logger.info("Batch run ended", extra={"reason": reason, "cancelled": cancel.is_set()})

    # Public API

    def start(self) -> None:
        with self._cond:
            if self._started:
                return
            self._started = True
            self._stopped = False
            if not self._enabled:
                logger.info("Batch scheduler started disabled")
                return
            if self.disable_initial_run:
                self._schedule_locked(self.interval_seconds)
            else:
                self._schedule_locked(self.initial_delay_seconds)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        with self._cond:
            self._stopped = True
            self._cancel_timer_locked()
            if self._cancel is not None:
                self._cancel.set()
        if wait:
            self.wait_idle(timeout)
        logger.info("Batch scheduler stopped")

    def enable(self) -> None:
        with self._cond:
            if self._enabled:
                return
            self._enabled = True
            if self._started and not self._running and not self._stopped:
                self._schedule_locked(self.interval_seconds)
        logger.info("Batch scheduler enabled")

    def disable(self) -> None:
        with self._cond:
            self._enabled = False
            self._cancel_timer_locked()
        logger.info("Batch scheduler disabled")

    def trigger_manual_run(self) -> bool:
        return self._start_run("manual")

    def force_stop(self) -> bool:
        """Ask the running batch to stop at its next checkpoint. False when idle."""
        with self._cond:
            if not self._running or self._cancel is None:
                return False
            self._cancel.set()
        logger.warning("Force stop requested for running batch")
        return True

    def status(self) -> SchedulerStatus:
        with self._cond:
            return SchedulerStatus(
                enabled=self._enabled,
                is_running=self._running,
                last_run=_iso(self._last_run) if self._last_run else None,
                next_run=_iso(self._next_run) if self._next_run else None,
            )

    @property
    def is_running(self) -> bool:
        with self._cond:
            return self._running

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._running, timeout)
