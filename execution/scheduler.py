"""
execution.scheduler
-------------------
Single-flight periodic task.

A dedicated thread fires `fn` every `interval` seconds. Each fire tries a
non-blocking acquire of the task lock; when a previous run still holds it the
fire is skipped (and counted) instead of queueing. stop() lets the in-flight
run finish and joins the thread.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from utils.logger import get_logger

log = get_logger(__name__)


class SingleFlightTask:
    def __init__(self, name: str, interval: float, fn: Callable[[], object], run_immediately: bool = True):
        if interval <= 0:
            raise ValueError(f"{name}: interval must be > 0")
        self.name = name
        self.interval = float(interval)
        self.fn = fn
        self.run_immediately = run_immediately
        self._run_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def fire(self) -> bool:
        """Run once if idle; False when a run was already in flight."""
        if not self._run_lock.acquire(blocking=False):
            with self._stats_lock:
                self.skipped += 1
            log.debug("%s: previous run still active, skipping", self.name)
            return False
        try:
            self.runs += 1
            self.fn()
        except Exception:
            self.failures += 1
            log.exception("%s: run failed", self.name)
        finally:
            self._run_lock.release()
        return True

    def _loop(self) -> None:
        if self.run_immediately and not self._stop.is_set():
            self.fire()
        while not self._stop.wait(self.interval):
            self.fire()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Prevent new runs, wait for the in-flight one; safe to call twice."""
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
        self._thread = None
