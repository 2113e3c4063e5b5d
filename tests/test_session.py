"""
Unit tests for the session state machine.

The transport, connect timer and poll scheduler are in-memory fakes, so
every transition is driven synchronously through dispatch(), tick() and
fire().

Tests verify:
- The happy path DISCONNECTED -> CONNECTING -> SUBSCRIBING -> POLLING.
- stop() cancels polling and makes late callbacks no-ops.
- Connect timeout, open/subscribe/publish failures and transport loss.
- Device switching and restart after failure.
- Decode errors are counted without leaving POLLING.
- Listener delivery stops once stop() or a device switch has returned.
"""

import threading
import time

import pytest

from lumentree.errors import ConnectTimeoutError, TransportError
from lumentree.events import (
    Connected,
    MessageReceived,
    Subscribed,
    TransportClosed,
    TransportFailed,
)
from lumentree.frame_codec import build_read_request
from lumentree.poll_scheduler import PollScheduler
from lumentree.register_map import REG_BATTERY_POWER, REG_PV1_POWER
from lumentree.session import Session, SessionState

from helpers import make_response


def bring_to_polling(session, device_id="P1"):
    session.start(device_id)
    session.dispatch(Connected(session.generation))
    session.dispatch(Subscribed(session.generation))
    assert session.state == SessionState.POLLING


@pytest.fixture
def states(session):
    recorded = []
    session.add_state_listener(lambda state, error, device_id: recorded.append((state, error)))
    return recorded


@pytest.fixture
def samples(session):
    recorded = []
    session.add_sample_listener(lambda sample, device_id: recorded.append((sample, device_id)))
    return recorded


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestLifecycle:

    def test_initial_state(self, session) -> None:
        assert session.state == SessionState.DISCONNECTED
        assert session.generation == 0

    def test_start_connects(self, session, transports, timers) -> None:
        session.start("P1")

        assert session.state == SessionState.CONNECTING
        assert transports.last.opened
        assert transports.last.device_id == "P1"
        assert transports.last.generation == session.generation
        assert timers[0].started
        assert timers[0].interval == 10.0
        assert timers[0].daemon

    def test_connected_subscribes(self, session, transports) -> None:
        session.start("P1")
        session.dispatch(Connected(session.generation))

        assert session.state == SessionState.SUBSCRIBING
        assert transports.last.subscriptions == ["reportApp/P1"]

    def test_subscribed_starts_polling(self, session, scheduler, timers, states) -> None:
        bring_to_polling(session)

        assert scheduler.running
        assert timers[0].cancelled
        assert [state for state, _ in states] == [
            SessionState.CONNECTING,
            SessionState.SUBSCRIBING,
            SessionState.POLLING,
        ]

    def test_poll_tick_publishes_request(self, session, transports, scheduler) -> None:
        bring_to_polling(session)
        scheduler.tick()

        assert transports.last.published == [("listenApp/P1", build_read_request(0, 95))]
        assert session.requests_published == 1

    def test_message_produces_sample(self, session, samples) -> None:
        bring_to_polling(session)

        result = session.dispatch(MessageReceived(
            session.generation,
            make_response({REG_PV1_POWER: 500, REG_BATTERY_POWER: 0xFF9C})
        ))

        assert result.ok
        assert len(samples) == 1
        sample, device_id = samples[0]
        assert device_id == "P1"
        assert sample.pv1_power == 500
        assert sample.battery_magnitude == 100
        assert session.samples_decoded == 1
        assert session.last_sample_time > 0

    def test_wait_for_state(self, session) -> None:
        assert not session.wait_for_state(SessionState.POLLING, timeout=0)
        bring_to_polling(session)
        assert session.wait_for_state(SessionState.POLLING, timeout=0)

    def test_empty_device_rejected(self, session) -> None:
        with pytest.raises(ValueError):
            session.start("  ")
        assert session.state == SessionState.DISCONNECTED


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


class TestStop:

    def test_stop_from_polling(self, session, transports, scheduler, states) -> None:
        bring_to_polling(session)

        session.stop()

        assert session.state == SessionState.DISCONNECTED
        assert not scheduler.running
        assert transports.last.closed
        assert states[-1] == (SessionState.DISCONNECTED, None)

    def test_late_message_after_stop_is_ignored(self, session, samples) -> None:
        bring_to_polling(session)
        old_generation = session.generation
        session.stop()

        result = session.dispatch(MessageReceived(old_generation, make_response({})))

        assert result is None
        assert samples == []
        assert session.messages_received == 0
        assert session.stale_events == 1
        assert session.state == SessionState.DISCONNECTED

    def test_late_tick_after_stop_does_not_publish(self, session, transports, scheduler) -> None:
        bring_to_polling(session)
        session.stop()

        scheduler.tick()

        assert transports.last.published == []

    def test_late_transport_error_after_stop_is_ignored(self, session) -> None:
        bring_to_polling(session)
        old_generation = session.generation
        session.stop()

        session.dispatch(TransportFailed(old_generation, TransportError("late")))

        assert session.state == SessionState.DISCONNECTED
        assert session.last_error is None

    def test_stop_when_disconnected_is_noop(self, session, states) -> None:
        session.stop()

        assert session.state == SessionState.DISCONNECTED
        assert states == []
        assert session.generation == 0

    def test_stop_while_connecting_cancels_timer(self, session, timers, transports) -> None:
        session.start("P1")
        session.stop()

        assert timers[0].cancelled
        assert transports.last.closed

        timers[0].fire()
        assert session.state == SessionState.DISCONNECTED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:

    def test_connect_timeout(self, session, timers, transports, states) -> None:
        session.start("P1")

        timers[0].fire()

        assert session.state == SessionState.FAILED
        assert isinstance(session.last_error, ConnectTimeoutError)
        assert transports.last.closed
        state, error = states[-1]
        assert state == SessionState.FAILED
        assert isinstance(error, ConnectTimeoutError)

    def test_connect_timeout_covers_subscribe(self, session, timers) -> None:
        session.start("P1")
        session.dispatch(Connected(session.generation))

        timers[0].fire()

        assert session.state == SessionState.FAILED

    def test_timeout_after_polling_is_ignored(self, session, timers) -> None:
        bring_to_polling(session)

        timers[0].fire()

        assert session.state == SessionState.POLLING

    def test_open_failure(self, session, transports, timers) -> None:
        transports.configure = lambda transport: setattr(transport, "fail_open", True)

        session.start("P1")

        assert session.state == SessionState.FAILED
        assert str(session.last_error) == "open failed"
        assert timers[0].cancelled
        assert transports.last.closed

    def test_subscribe_failure(self, session, transports) -> None:
        transports.configure = lambda transport: setattr(transport, "fail_subscribe", True)

        session.start("P1")
        session.dispatch(Connected(session.generation))

        assert session.state == SessionState.FAILED

    def test_connection_refused(self, session) -> None:
        session.start("P1")
        session.dispatch(TransportFailed(session.generation, TransportError("refused")))

        assert session.state == SessionState.FAILED
        assert str(session.last_error) == "refused"

    def test_publish_failure(self, session, transports, scheduler) -> None:
        bring_to_polling(session)
        transports.last.fail_publish = True

        scheduler.tick()

        assert session.state == SessionState.FAILED
        assert not scheduler.running
        assert transports.last.closed

    def test_transport_closed_while_polling(self, session, scheduler) -> None:
        bring_to_polling(session)

        session.dispatch(TransportClosed(session.generation, "keepalive timeout"))

        assert session.state == SessionState.FAILED
        assert isinstance(session.last_error, TransportError)
        assert "keepalive timeout" in str(session.last_error)
        assert not scheduler.running

    def test_failure_invalidates_old_generation(self, session, samples) -> None:
        bring_to_polling(session)
        old_generation = session.generation
        session.dispatch(TransportClosed(old_generation))

        session.dispatch(MessageReceived(old_generation, make_response({})))

        assert samples == []
        assert session.state == SessionState.FAILED

    def test_restart_after_failure(self, session, transports) -> None:
        session.start("P1")
        session.dispatch(TransportFailed(session.generation, TransportError("refused")))

        session.start("P1")

        assert session.state == SessionState.CONNECTING
        assert len(transports.transports) == 2
        assert session.connect_attempts == 2
        assert session.last_error is None

    def test_unknown_event_rejected(self, session) -> None:
        session.start("P1")

        class Bogus:
            generation = session.generation

        with pytest.raises(TypeError):
            session.dispatch(Bogus())


# ---------------------------------------------------------------------------
# Decode errors
# ---------------------------------------------------------------------------


class TestDecodeErrors:

    def test_decode_error_keeps_polling(self, session, samples) -> None:
        bring_to_polling(session)

        result = session.dispatch(MessageReceived(session.generation, b"\x01"))

        assert not result.ok
        assert session.state == SessionState.POLLING
        assert samples == []
        assert session.decode_errors == 1
        assert session.decode_errors_by_reason == {"frame_too_short": 1}

    def test_errors_counted_by_reason(self, session) -> None:
        bring_to_polling(session)
        generation = session.generation

        session.dispatch(MessageReceived(generation, bytes.fromhex("0203020064")))
        session.dispatch(MessageReceived(generation, bytes([0x01, 0x03, 10]) + bytes(8)))
        session.dispatch(MessageReceived(generation, bytes.fromhex("0203020064")))

        stats = session.get_stats()
        assert stats["decode_errors"] == 3
        assert stats["decode_errors_by_reason"] == {
            "unexpected_function_code": 2,
            "truncated_registers": 1,
        }

    def test_message_before_polling_is_ignored(self, session) -> None:
        session.start("P1")
        session.dispatch(Connected(session.generation))

        result = session.dispatch(MessageReceived(session.generation, make_response({})))

        assert result is None
        assert session.messages_received == 0


# ---------------------------------------------------------------------------
# Device switching
# ---------------------------------------------------------------------------


class TestDeviceSwitch:

    def test_same_device_is_noop(self, session, transports) -> None:
        bring_to_polling(session)
        generation = session.generation

        session.start("P1")

        assert len(transports.transports) == 1
        assert session.generation == generation
        assert session.state == SessionState.POLLING

    def test_switch_tears_down_first(self, session, transports, scheduler, states) -> None:
        bring_to_polling(session, "P1")
        first = transports.last

        session.start("P2")

        assert first.closed
        assert not scheduler.running
        assert session.device_id == "P2"
        assert transports.last.device_id == "P2"
        assert [state for state, _ in states][-2:] == [
            SessionState.DISCONNECTED,
            SessionState.CONNECTING,
        ]

    def test_switch_ignores_old_device_messages(self, session, samples) -> None:
        bring_to_polling(session, "P1")
        old_generation = session.generation
        session.start("P2")
        session.dispatch(Connected(session.generation))
        session.dispatch(Subscribed(session.generation))

        session.dispatch(MessageReceived(old_generation, make_response({REG_PV1_POWER: 1})))
        session.dispatch(MessageReceived(session.generation, make_response({REG_PV1_POWER: 2})))

        assert [(sample.pv1_power, device) for sample, device in samples] == [(2, "P2")]

    def test_listener_errors_do_not_break_session(self, session) -> None:
        def broken(state, error, device_id):
            raise RuntimeError("listener bug")

        session.add_state_listener(broken)
        bring_to_polling(session)

        assert session.state == SessionState.POLLING


# ---------------------------------------------------------------------------
# Listener delivery
# ---------------------------------------------------------------------------


def wait_until(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


class TestListenerDelivery:

    def test_stop_in_listener_halts_delivery(self, session) -> None:
        delivered = []
        session.add_sample_listener(lambda sample, device_id: session.stop())
        session.add_sample_listener(
            lambda sample, device_id: delivered.append((session.state, device_id))
        )
        bring_to_polling(session)

        session.dispatch(MessageReceived(session.generation, make_response({REG_PV1_POWER: 111})))

        assert delivered == []
        assert session.state == SessionState.DISCONNECTED
        assert session.stale_notifications == 1

    def test_switch_in_listener_does_not_relabel_sample(self, session) -> None:
        delivered = []
        session.add_sample_listener(lambda sample, device_id: session.start("P2"))
        session.add_sample_listener(
            lambda sample, device_id: delivered.append((sample.pv1_power, device_id))
        )
        bring_to_polling(session, "P1")

        session.dispatch(MessageReceived(session.generation, make_response({REG_PV1_POWER: 111})))

        assert delivered == []
        assert session.device_id == "P2"

    def test_state_notifications_carry_device(self, session) -> None:
        recorded = []
        session.add_state_listener(
            lambda state, error, device_id: recorded.append((state, device_id))
        )
        bring_to_polling(session, "P1")

        session.start("P2")

        assert recorded[-2:] == [
            (SessionState.DISCONNECTED, "P1"),
            (SessionState.CONNECTING, "P2"),
        ]

    def test_stop_waits_for_delivery_in_progress(self, session) -> None:
        entered = threading.Event()
        release = threading.Event()
        order = []

        def slow_listener(sample, device_id):
            entered.set()
            release.wait(2.0)
            order.append("delivered")

        session.add_sample_listener(slow_listener)
        bring_to_polling(session)
        message = MessageReceived(session.generation, make_response({}))

        receiver = threading.Thread(target=session.dispatch, args=(message,))
        receiver.start()
        assert entered.wait(2.0)

        def stop():
            session.stop()
            order.append("stopped")

        stopper = threading.Thread(target=stop)
        stopper.start()
        stopper.join(0.05)
        assert stopper.is_alive()

        release.set()
        receiver.join(2.0)
        stopper.join(2.0)

        assert order == ["delivered", "stopped"]
        assert session.state == SessionState.DISCONNECTED


class TestThreadedPolling:
    """Real PollScheduler, messages dispatched from a separate thread."""

    @pytest.fixture
    def threaded_session(self, broker_config, polling_config, transports, timer_factory):
        scheduler = PollScheduler(0.01)
        session = Session(broker_config, polling_config, transports,
                          scheduler=scheduler, timer_factory=timer_factory)
        yield session
        session.stop()
        scheduler.join()

    def test_stop_silences_ticks_and_messages(self, threaded_session, transports) -> None:
        session = threaded_session
        samples = []
        session.add_sample_listener(lambda sample, device_id: samples.append(device_id))
        bring_to_polling(session)
        generation = session.generation
        transport = transports.last
        done = threading.Event()

        def receive():
            while not done.is_set():
                session.dispatch(MessageReceived(generation, make_response({REG_PV1_POWER: 5})))
                time.sleep(0.001)

        receiver = threading.Thread(target=receive, daemon=True)
        receiver.start()
        assert wait_until(lambda: len(transport.published) >= 3 and len(samples) >= 3)

        session.stop()
        published_at_stop = len(transport.published)
        samples_at_stop = len(samples)

        time.sleep(0.05)
        done.set()
        receiver.join(2.0)

        assert not session.scheduler.running
        assert len(transport.published) == published_at_stop
        assert len(samples) == samples_at_stop
        assert set(samples) == {"P1"}
        assert session.stale_events > 0
        assert session.dispatch(MessageReceived(generation, make_response({}))) is None
