"""
Shared test fixtures for the Lumentree MQTT tests.

Wires the fakes from helpers.py into a Session that can be driven
synchronously, and isolates every test from the config singleton.
"""

from typing import List

import pytest

from lumentree.config import BrokerConfig, ConfigLoader, PollingConfig
from lumentree.session import Session

from helpers import FakeScheduler, FakeTimer, TransportRecorder


@pytest.fixture(autouse=True)
def _reset_config(monkeypatch):
    """Isolate every test from the config singleton and LUMENTREE_CONFIG."""
    monkeypatch.delenv("LUMENTREE_CONFIG", raising=False)
    ConfigLoader.reset_instance()
    yield
    ConfigLoader.reset_instance()


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig()


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig()


@pytest.fixture
def timers() -> List[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers):
    def create(interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        timers.append(timer)
        return timer
    return create


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def session(broker_config, polling_config, transports, scheduler, timer_factory):
    return Session(broker_config, polling_config, transports,
                   scheduler=scheduler, timer_factory=timer_factory)
