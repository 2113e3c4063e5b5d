"""
Test helpers: response frame builders and in-memory fakes for the broker
transport, the connect timer and the poll scheduler.
"""

import struct
from datetime import datetime, timezone
from typing import Dict, List

from lumentree.errors import TransportError
from lumentree.frame_codec import RegisterTable
from lumentree.register_map import derive_sample


def make_response(registers: Dict[int, int], count: int = 95, trailer: bytes = b"\x00\x00") -> bytes:
    """Build a 01 03 response frame holding `count` registers."""
    data = bytearray(count * 2)
    for address, value in registers.items():
        struct.pack_into(">H", data, address * 2, value & 0xFFFF)
    return bytes([0x01, 0x03, len(data)]) + bytes(data) + trailer


def make_sample(registers: Dict[int, int] = None, timestamp: datetime = None):
    """Derive a sample from register values (all other registers 0)."""
    frame = make_response(registers or {})
    table = RegisterTable(frame[3:3 + frame[2]])
    return derive_sample(table, timestamp or datetime(2026, 1, 1, tzinfo=timezone.utc))


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


class FakeScheduler:
    """PollScheduler stand-in; tick() runs the current action once."""

    def __init__(self):
        self.action = None
        self.running = False
        self.starts = 0
        self.cancels = 0

    def start(self, action):
        self.action = action
        self.running = True
        self.starts += 1

    def cancel(self):
        self.running = False
        self.cancels += 1

    def tick(self):
        assert self.action is not None
        self.action()


class FakeTransport:
    """Transport stand-in recording every call made by the session."""

    def __init__(self, device_id: str, generation: int, sink):
        self.device_id = device_id
        self.generation = generation
        self.sink = sink
        self.opened = False
        self.closed = False
        self.subscriptions: List[str] = []
        self.published: List = []
        self.fail_open = False
        self.fail_subscribe = False
        self.fail_publish = False

    def open(self):
        if self.fail_open:
            raise TransportError("open failed")
        self.opened = True

    def subscribe(self, topic: str):
        if self.fail_subscribe:
            raise TransportError("subscribe failed")
        self.subscriptions.append(topic)

    def publish(self, topic: str, payload: bytes):
        if self.fail_publish:
            raise TransportError("publish failed")
        self.published.append((topic, payload))

    def close(self):
        self.closed = True


class TransportRecorder:
    """Transport factory that keeps every transport it created."""

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.configure = None

    def __call__(self, device_id, generation, sink):
        transport = FakeTransport(device_id, generation, sink)
        if self.configure:
            self.configure(transport)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


