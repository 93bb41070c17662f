"""Fixed-rate background scheduling for the refresh job.

**Architecture:**

    RefreshScheduler
      └─ Tick thread: waits for the next due time (or a trigger), runs the job,
         repeats until stopped

A single thread runs every cycle, so cycles never overlap.  When a cycle
overruns one or more ticks, the missed ticks are dropped and the next cycle
starts at the following future tick.

**Usage:**

    scheduler = RefreshScheduler(refresher.refresh_all, interval=900, initial_delay=0)
    scheduler.start()
    ...
    scheduler.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

__all__ = ["RefreshScheduler"]

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Run ``job`` every ``interval`` seconds on a daemon thread.

    Attributes:
        interval: Seconds between scheduled ticks.
        initial_delay: Seconds before the first tick.
        cycles: Number of completed job runs.
    """

    def __init__(
        self,
        job: Callable[[], Any],
        *,
        interval: float,
        initial_delay: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "archive-refresh",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        self.job = job
        self.interval = interval
        self.initial_delay = initial_delay
        self.cycles = 0
        self._clock = clock
        self._name = name
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start the tick thread; calling it twice is a no-op."""

        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._wake.clear()
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()
        logger.info(
            "refresh scheduler started",
            extra={
                "stage": "schedule",
                "interval_sec": self.interval,
                "initial_delay_sec": self.initial_delay,
            },
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Signal stop and wait for an in-flight cycle to finish."""

        with self._lock:
            thread = self._thread
            self._stop.set()
            self._wake.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("refresh cycle still running after stop timeout", extra={"stage": "schedule"})
        logger.info("refresh scheduler stopped", extra={"stage": "schedule", "cycles": self.cycles})

    def trigger(self) -> None:
        """Run a cycle as soon as the current one (if any) finishes."""

        self._wake.set()

    def _wait_until(self, due: float) -> bool:
        """Block until ``due`` or a wake-up; return ``True`` if woken early."""

        remaining = due - self._clock()
        woken = False
        if remaining > 0:
            woken = self._wake.wait(timeout=remaining)
        self._wake.clear()
        return woken

    def _run(self) -> None:
        due = self._clock() + self.initial_delay
        while not self._stop.is_set():
            triggered = self._wait_until(due)
            if self._stop.is_set():
                break
            try:
                self.job()
            except Exception:
                logger.exception("refresh cycle failed", extra={"stage": "schedule"})
            self.cycles += 1

            if triggered:
                # out-of-band run; keep the regular tick
                continue
            due += self.interval
            now = self._clock()
            if due <= now:
                missed = int((now - due) // self.interval) + 1
                due += missed * self.interval
                logger.warning(
                    "refresh cycle overran schedule; skipping ticks",
                    extra={"stage": "schedule", "skipped_ticks": missed},
                )
