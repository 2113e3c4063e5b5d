"""Optional automatic restart of failed sessions

The session itself never retries. This supervisor watches its state and
calls start() again after a delay taken from a caller-supplied schedule.
"""

import threading
from typing import Callable, List, Optional

from .logging_setup import get_logger
from .session import Session, SessionState


class ReconnectSupervisor:
    """
    Restarts a session after FAILED with a backoff schedule.

    Features:
    - Delay schedule indexed by attempt number (last entry repeats)
    - Optional cap on consecutive attempts (0 = unlimited)
    - Attempt counter reset once the session is polling again
    - Pending retry cancelled by stop() or an explicit session stop
    """

    def __init__(self, session: Session, delays: List[float], max_attempts: int = 0,
                 timer_factory: Callable = threading.Timer):
        if not delays:
            raise ValueError("Reconnect delay schedule must not be empty")
        self.session = session
        self.delays = list(delays)
        self.max_attempts = max_attempts
        self.log = get_logger()
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._token = 0
        self._running = False
        self._device_id = session.device_id

        # Stats
        self.attempts = 0
        self.total_retries = 0
        self.gave_up = False

        session.add_state_listener(self._on_state)

    def start(self):
        with self._lock:
            self._running = True
            self.gave_up = False
        self.log.info(f"Reconnect enabled (delays: {self.delays}, "
                      f"max attempts: {self.max_attempts or 'unlimited'})")

    def stop(self):
        with self._lock:
            self._running = False
            self._cancel_locked()

    def next_delay(self) -> float:
        """Delay before the next retry, given the attempts made so far."""
        return self.delays[min(self.attempts, len(self.delays) - 1)]

    def _on_state(self, state: SessionState, error: Optional[Exception], device_id: str):
        with self._lock:
            self._device_id = device_id
            if state == SessionState.POLLING:
                if self.attempts:
                    self.log.info(f"Reconnected after {self.attempts} attempt(s)")
                self.attempts = 0
                self.gave_up = False
            elif state == SessionState.DISCONNECTED:
                self._cancel_locked()
            elif state == SessionState.FAILED and self._running:
                self._schedule_locked(error)

    def _schedule_locked(self, error: Optional[Exception]):
        if self.max_attempts and self.attempts >= self.max_attempts:
            self.gave_up = True
            self.log.error(f"Giving up after {self.attempts} reconnect attempt(s): {error}")
            return

        delay = self.next_delay()
        self.attempts += 1
        self._cancel_locked()
        self._token += 1
        timer = self._timer_factory(delay, self._retry, args=(self._token,))
        timer.daemon = True
        self._timer = timer
        timer.start()
        self.log.info(f"Reconnect attempt {self.attempts} in {delay}s")

    def _cancel_locked(self):
        self._token += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _retry(self, token: int):
        with self._lock:
            if not self._running or token != self._token:
                return
            self._timer = None
            self.total_retries += 1
            device_id = self._device_id

        if self.session.state != SessionState.FAILED:
            return
        self.session.start(device_id)

    def get_stats(self):
        """Return reconnect statistics"""
        return {
            'running': self._running,
            'attempts': self.attempts,
            'total_retries': self.total_retries,
            'gave_up': self.gave_up
        }
