"""
Cancelable periodic tasks for countdowns and confirmation polling.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

__all__ = ["ScheduledTask"]

logger = logging.getLogger(__name__)


class ScheduledTask:
    """
    Calls ``step`` every ``interval`` seconds on a daemon thread until it
    returns ``True``, ``deadline`` passes, or :meth:`stop` is called.

    ``on_timeout`` runs once when the deadline is reached. A stopped task
    never calls ``step`` or ``on_timeout`` again, so a caller that has moved on
    cannot be surprised by a late callback.
    """

    def __init__(
        self,
        step: Callable[[], bool],
        interval: float,
        *,
        timeout: Optional[float] = None,
        on_timeout: Optional[Callable[[], None]] = None,
        name: str = "scheduled-task",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        self.step = step
        self.interval = interval
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.name = name
        self.clock = clock
        self._stop = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.timed_out = False

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._done.is_set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def start(self) -> "ScheduledTask":
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the task to finish; ``True`` when it has."""
        return self._done.wait(timeout)

    def _run(self) -> None:
        deadline = None if self.timeout is None else self.clock() + self.timeout
        try:
            while not self._stop.is_set():
                try:
                    if self.step():
                        return
                except Exception:  # noqa: BLE001
                    logger.exception("%s step failed; will retry", self.name)
                if self._stop.is_set():
                    return
                if deadline is not None and self.clock() >= deadline:
                    self.timed_out = True
                    if self.on_timeout is not None:
                        self.on_timeout()
                    return
                self._stop.wait(self.interval)
        finally:
            self._done.set()
