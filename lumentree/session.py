"""Session state machine: connect, subscribe, poll, teardown

    DISCONNECTED --start--> CONNECTING --Connected--> SUBSCRIBING --Subscribed--> POLLING
    CONNECTING / SUBSCRIBING / POLLING --error, close or timeout--> FAILED
    any --stop--> DISCONNECTED
    FAILED --start--> CONNECTING   (never automatic, see ReconnectSupervisor)

All mutation happens under one re-entrant lock. Transport callbacks, poll ticks
and the connect timeout enter through generation-checked entry points; the
generation is bumped on every start, stop and failure so that anything issued
for an older connection is ignored. Transports are closed and listeners are
notified only after the lock is released.

Listener delivery runs under a separate delivery lock that start() and stop()
also take, and the generation is re-checked before every listener call. Once
stop() or a device switch has returned, no listener sees a notification from
the previous connection. Each notification carries the device it was produced
for.
"""

import enum
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .config import BrokerConfig, PollingConfig
from .errors import ConnectTimeoutError, TransportError
from .events import (
    Connected,
    MessageReceived,
    SessionEvent,
    Subscribed,
    TransportClosed,
    TransportFailed,
)
from .frame_codec import DecodeResult, build_read_request, try_decode_response
from .logging_setup import get_logger
from .poll_scheduler import PollScheduler
from .register_map import TelemetrySample, derive_sample

SampleListener = Callable[[TelemetrySample, str], None]
StateListener = Callable[['SessionState', Optional[Exception], str], None]


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    POLLING = "polling"
    FAILED = "failed"


ACTIVE_STATES = (SessionState.CONNECTING, SessionState.SUBSCRIBING, SessionState.POLLING)
PENDING_STATES = (SessionState.CONNECTING, SessionState.SUBSCRIBING)


class Session:
    """
    Connection and polling lifecycle for one inverter at a time.

    The transport factory is called as factory(device_id, generation, sink)
    and must return an object with open(), subscribe(topic),
    publish(topic, payload) and close(); it reports back by calling
    sink(event) with events from lumentree.events.
    """

    def __init__(self, broker_config: BrokerConfig, polling_config: PollingConfig,
                 transport_factory: Callable, scheduler: PollScheduler = None,
                 timer_factory: Callable = threading.Timer):
        self.broker_config = broker_config
        self.polling_config = polling_config
        self.log = get_logger()
        self._transport_factory = transport_factory
        self._timer_factory = timer_factory
        self._scheduler = scheduler or PollScheduler(polling_config.interval)

        self._lock = threading.RLock()
        self._delivery_lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._state = SessionState.DISCONNECTED
        self._generation = 0
        self._transport = None
        self._connect_timer = None

        self.device_id: str = ""
        self.connect_attempts = 0
        self.last_error: Optional[Exception] = None

        self._sample_listeners: List[SampleListener] = []
        self._state_listeners: List[StateListener] = []

        # Stats
        self.messages_received = 0
        self.samples_decoded = 0
        self.decode_errors = 0
        self.decode_errors_by_reason: Dict[str, int] = {}
        self.requests_published = 0
        self.stale_events = 0
        self.stale_notifications = 0
        self.last_sample_time = 0.0

    # ------------------------------------------------------------------
    # Properties and listeners
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    def add_sample_listener(self, listener: SampleListener):
        self._sample_listeners.append(listener)

    def add_state_listener(self, listener: StateListener):
        self._state_listeners.append(listener)

    def wait_for_state(self, *states: SessionState, timeout: float = None) -> bool:
        """Block until the session is in one of `states`; False on timeout."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state in states, timeout=timeout)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start(self, device_id: str):
        """
        Start (or restart) polling a device.

        A session active for another device is torn down first. Starting
        the device that is already connecting or polling is a no-op.

        Args:
            device_id: Inverter device identifier
        """
        device_id = (device_id or "").strip()
        if not device_id:
            raise ValueError("device_id must not be empty")

        to_close = []
        notifications = []
        with self._delivery_lock, self._lock:
            if self._state in ACTIVE_STATES and device_id == self.device_id:
                self.log.debug(f"Session for {device_id} already {self._state.value}")
                return

            if self._state in ACTIVE_STATES:
                self.log.info(f"Switching device {self.device_id} -> {device_id}")
                self._generation += 1
                self._teardown_locked(to_close)
                self._set_state_locked(SessionState.DISCONNECTED, notifications)
            elif self._state == SessionState.FAILED:
                self._teardown_locked(to_close)

            self.device_id = device_id
            self._generation += 1
            generation = self._generation
            self.connect_attempts += 1
            self.last_error = None

            self.log.info(f"Session {device_id}: connecting (attempt #{self.connect_attempts})")
            self._set_state_locked(SessionState.CONNECTING, notifications)
            self._arm_connect_timer_locked(generation)

            try:
                self._transport = self._transport_factory(device_id, generation, self.dispatch)
                self._transport.open()
            except TransportError as e:
                self._fail_locked(e, to_close, notifications)
            generation = self._generation

        self._finish(to_close, notifications, generation)

    def stop(self):
        """
        Tear the session down.

        On return the poll timer is cancelled, any listener call already in
        progress has completed and every callback issued for the old
        connection is ignored. Safe to call from any state.
        """
        to_close = []
        notifications = []
        with self._delivery_lock, self._lock:
            if self._state == SessionState.DISCONNECTED:
                return
            self._generation += 1
            self._teardown_locked(to_close)
            self._set_state_locked(SessionState.DISCONNECTED, notifications)
            self.log.info(f"Session {self.device_id}: stopped")
            generation = self._generation

        self._finish(to_close, notifications, generation)

    def dispatch(self, event: SessionEvent) -> Optional[DecodeResult]:
        """
        Feed one transport event into the state machine.

        Returns:
            The decode outcome for MessageReceived events, else None
        """
        to_close = []
        notifications = []
        result = None
        with self._lock:
            if event.generation != self._generation:
                self.stale_events += 1
                self.log.debug(f"Ignoring stale {type(event).__name__} "
                               f"(generation {event.generation}, current {self._generation})")
                return None

            if isinstance(event, Connected):
                self._on_connected(to_close, notifications)
            elif isinstance(event, Subscribed):
                self._on_subscribed(notifications)
            elif isinstance(event, MessageReceived):
                result = self._on_message(event, notifications)
            elif isinstance(event, TransportFailed):
                self._on_transport_lost(event.error, to_close, notifications)
            elif isinstance(event, TransportClosed):
                reason = f" ({event.reason})" if event.reason else ""
                self._on_transport_lost(
                    TransportError(f"MQTT connection closed{reason}"), to_close, notifications
                )
            else:
                raise TypeError(f"Unknown session event: {event!r}")
            current = self._generation

        self._finish(to_close, notifications, current)
        return result

    # ------------------------------------------------------------------
    # Transitions (lock held)
    # ------------------------------------------------------------------

    def _on_connected(self, to_close, notifications):
        if self._state != SessionState.CONNECTING:
            self.log.debug(f"Connected ignored in state {self._state.value}")
            return
        self._set_state_locked(SessionState.SUBSCRIBING, notifications)
        topic = self.broker_config.subscribe_topic(self.device_id)
        try:
            self._transport.subscribe(topic)
        except TransportError as e:
            self._fail_locked(e, to_close, notifications)

    def _on_subscribed(self, notifications):
        if self._state != SessionState.SUBSCRIBING:
            self.log.debug(f"Subscribed ignored in state {self._state.value}")
            return
        self._cancel_connect_timer_locked()
        self.log.info(f"Session {self.device_id}: subscribed to "
                      f"{self.broker_config.subscribe_topic(self.device_id)}")
        self._set_state_locked(SessionState.POLLING, notifications)
        generation = self._generation
        self._scheduler.start(lambda: self._poll_tick(generation))

    def _on_message(self, event: MessageReceived, notifications) -> Optional[DecodeResult]:
        if self._state != SessionState.POLLING:
            self.log.debug(f"Message ignored in state {self._state.value}")
            return None

        self.messages_received += 1
        result = try_decode_response(event.payload)
        if not result.ok:
            self.decode_errors += 1
            reason = result.error.reason
            self.decode_errors_by_reason[reason] = self.decode_errors_by_reason.get(reason, 0) + 1
            self.log.warning(f"Session {self.device_id}: dropped message: {result.error}")
            self.log.debug(f"Payload: {event.payload.hex()}")
            return result

        sample = derive_sample(result.table)
        self.samples_decoded += 1
        self.last_sample_time = time.time()
        notifications.append(('sample', sample, None, self.device_id))
        return result

    def _on_transport_lost(self, error: Exception, to_close, notifications):
        if self._state not in ACTIVE_STATES:
            self.log.debug(f"Transport error ignored in state {self._state.value}: {error}")
            return
        self._fail_locked(error, to_close, notifications)

    def _fail_locked(self, error: Exception, to_close, notifications):
        self.last_error = error
        self._generation += 1
        self._teardown_locked(to_close)
        self._set_state_locked(SessionState.FAILED, notifications)
        self.log.error(f"Session {self.device_id}: failed: {error}")

    def _teardown_locked(self, to_close):
        self._cancel_connect_timer_locked()
        self._scheduler.cancel()
        if self._transport is not None:
            to_close.append(self._transport)
            self._transport = None

    def _set_state_locked(self, state: SessionState, notifications):
        if state == self._state:
            return
        self.log.debug(f"Session {self.device_id}: {self._state.value} -> {state.value}")
        self._state = state
        self._state_changed.notify_all()
        notifications.append(('state', state, self.last_error, self.device_id))

    def _arm_connect_timer_locked(self, generation: int):
        self._cancel_connect_timer_locked()
        timer = self._timer_factory(
            self.broker_config.connect_timeout,
            self._on_connect_timeout,
            args=(generation,)
        )
        timer.daemon = True
        self._connect_timer = timer
        timer.start()

    def _cancel_connect_timer_locked(self):
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    # ------------------------------------------------------------------
    # Timer entry points
    # ------------------------------------------------------------------

    def _poll_tick(self, generation: int):
        """Publish one read request if `generation` is still polling."""
        to_close = []
        notifications = []
        with self._lock:
            if generation != self._generation or self._state != SessionState.POLLING:
                return
            frame = build_read_request(self.polling_config.start_register,
                                       self.polling_config.register_count)
            topic = self.broker_config.publish_topic(self.device_id)
            try:
                self._transport.publish(topic, frame)
                self.requests_published += 1
                self.log.debug(f"Request published to {topic}: {frame.hex()}")
            except TransportError as e:
                self._fail_locked(e, to_close, notifications)
            current = self._generation

        self._finish(to_close, notifications, current)

    def _on_connect_timeout(self, generation: int):
        to_close = []
        notifications = []
        with self._lock:
            if generation != self._generation or self._state not in PENDING_STATES:
                return
            self._connect_timer = None
            self._fail_locked(ConnectTimeoutError(self.broker_config.connect_timeout),
                              to_close, notifications)
            current = self._generation

        self._finish(to_close, notifications, current)

    # ------------------------------------------------------------------
    # Outside the lock
    # ------------------------------------------------------------------

    def _finish(self, to_close, notifications: List[Tuple], generation: int):
        """
        Close dropped transports, then notify listeners.

        `generation` is the one current when the notifications were queued.
        Delivery stops as soon as a start(), stop() or failure has moved past it.
        """
        for transport in to_close:
            try:
                transport.close()
            except Exception as e:
                self.log.warning(f"Error closing transport: {e}")

        if not notifications:
            return

        with self._delivery_lock:
            for kind, value, error, device_id in notifications:
                listeners = self._state_listeners if kind == 'state' else self._sample_listeners
                for listener in list(listeners):
                    with self._lock:
                        if generation != self._generation:
                            self.stale_notifications += 1
                            self.log.debug(f"Dropping {kind} notification for {device_id} "
                                           f"(generation {generation}, current {self._generation})")
                            return
                    try:
                        if kind == 'state':
                            listener(value, error, device_id)
                        else:
                            listener(value, device_id)
                    except Exception as e:
                        self.log.error(f"{kind.capitalize()} listener failed: {e}")

    def get_stats(self) -> Dict:
        """Return session statistics"""
        return {
            'device_id': self.device_id,
            'state': self._state.value,
            'generation': self._generation,
            'connect_attempts': self.connect_attempts,
            'last_error': str(self.last_error) if self.last_error else None,
            'messages_received': self.messages_received,
            'samples_decoded': self.samples_decoded,
            'decode_errors': self.decode_errors,
            'decode_errors_by_reason': dict(self.decode_errors_by_reason),
            'requests_published': self.requests_published,
            'stale_events': self.stale_events,
            'stale_notifications': self.stale_notifications,
            'last_sample_time': self.last_sample_time
        }
