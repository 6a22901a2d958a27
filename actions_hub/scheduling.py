# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Scheduled tasks for the pollers.

A PeriodicTask calls its function on a daemon thread every `interval_s` seconds until
stopped. The function takes no arguments, so it has to read current state through
its owner on every tick rather than from a captured snapshot.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

_logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name: str, interval_s: float, fn: Callable[[], object], *, run_immediately: bool = True):
        self.name = str(name)
        self.interval_s = float(interval_s)
        self.fn = fn
        self.run_immediately = bool(run_immediately)
        self._mu = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._mu:
            return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """Start the loop; no-op when already running."""
        with self._mu:
            if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._loop,
                args=(stop_event,),
                name=f"actions-hub-{self.name}",
                daemon=True,
            )
            self._thread.start()
        _logger.debug("started %s (every %ss)", self.name, self.interval_s)

    def stop(self, *, join_timeout_s: Optional[float] = None) -> None:
        with self._mu:
            stop_event, thread = self._stop_event, self._thread
            self._stop_event, self._thread = None, None
        if stop_event is None:
            return
        stop_event.set()
        if join_timeout_s is not None and thread is not None and thread is not threading.current_thread():
            thread.join(join_timeout_s)
        _logger.debug("stopped %s", self.name)

    def restart(self) -> None:
        """Reset the interval: stop the current loop and start a fresh one."""
        self.stop()
        self.start()

    def _loop(self, stop_event: threading.Event) -> None:
        if self.run_immediately:
            self._tick()
        while not stop_event.wait(self.interval_s):
            self._tick()

    def _tick(self) -> None:
        try:
            self.fn()
        except Exception:
            _logger.exception("%s: tick failed", self.name)


def call_later(delay_s: float, fn: Callable[[], object], *, name: str = "actions-hub-timer") -> threading.Timer:
    """Run `fn` once after `delay_s` seconds on a daemon timer thread."""
    timer = threading.Timer(max(0.0, float(delay_s)), fn)
    timer.name = name
    timer.daemon = True
    timer.start()
    return timer
