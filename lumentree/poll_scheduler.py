"""Periodic poll trigger for an active session"""

import threading
from typing import Callable, Optional

from .logging_setup import get_logger

DEFAULT_POLL_INTERVAL = 5.0


class PollScheduler:
    """
    Runs an action once immediately, then every `interval` seconds.

    Only one run is active at a time: start() cancels the previous run before
    spawning a new worker. Each run owns its own stop event, so a worker from
    an older run can never be revived by a later start().
    """

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL, name: str = "PollScheduler"):
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")
        self.interval = interval
        self.name = name
        self.log = get_logger()
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

        # Stats
        self.runs_started = 0
        self.ticks = 0
        self.tick_errors = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self, action: Callable[[], None]):
        """Cancel any active run and start a new one with `action`."""
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(action, stop_event),
                daemon=True,
                name=self.name
            )
            self._stop_event = stop_event
            self._thread = thread
            self.runs_started += 1

        thread.start()
        self.log.debug(f"{self.name}: started (interval: {self.interval}s)")

    def cancel(self):
        """Stop the active run. Never blocks, safe to call repeatedly."""
        with self._lock:
            if self._stop_event is not None and not self._stop_event.is_set():
                self._stop_event.set()
                self.log.debug(f"{self.name}: cancelled")

    def join(self, timeout: float = 2.0):
        """Wait for the current worker to exit (no-op from the worker itself)."""
        with self._lock:
            thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _run(self, action: Callable[[], None], stop_event: threading.Event):
        if not stop_event.is_set():
            self._tick(action)
        while not stop_event.wait(self.interval):
            self._tick(action)

    def _tick(self, action: Callable[[], None]):
        self.ticks += 1
        try:
            action()
        except Exception as e:
            self.tick_errors += 1
            self.log.error(f"{self.name}: poll action failed: {e}")

    def get_stats(self):
        """Return scheduler statistics"""
        return {
            'interval': self.interval,
            'running': self.running,
            'runs_started': self.runs_started,
            'ticks': self.ticks,
            'tick_errors': self.tick_errors
        }
