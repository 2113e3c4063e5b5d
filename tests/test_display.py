"""
Unit tests for console formatting of samples and session status.
"""

from lumentree.display import ConsoleDisplay, battery_current, battery_level, format_sample
from lumentree.errors import ConnectTimeoutError
from lumentree.register_map import (
    REG_BATTERY_PERCENT,
    REG_BATTERY_POWER,
    REG_BATTERY_VOLTAGE,
    REG_DEVICE_TEMPERATURE,
    REG_PV1_POWER,
)
from lumentree.session import SessionState

from helpers import make_sample


class TestBatteryHelpers:

    def test_current(self) -> None:
        sample = make_sample({REG_BATTERY_POWER: 0xFC18, REG_BATTERY_VOLTAGE: 500})
        assert battery_current(sample) == 20.0

    def test_current_without_voltage(self) -> None:
        assert battery_current(make_sample({REG_BATTERY_POWER: 100})) is None

    def test_levels(self) -> None:
        assert battery_level(0) == "low"
        assert battery_level(19) == "low"
        assert battery_level(20) == "medium"
        assert battery_level(79) == "medium"
        assert battery_level(80) == "high"
        assert battery_level(100) == "high"


class TestFormatSample:

    def test_charging_line(self) -> None:
        sample = make_sample({
            REG_PV1_POWER: 1200,
            REG_BATTERY_POWER: 0xFC18,
            REG_BATTERY_VOLTAGE: 500,
            REG_BATTERY_PERCENT: 85,
            REG_DEVICE_TEMPERATURE: 1352,
        })

        line = format_sample(sample, "P1")

        assert line.startswith("[P1] PV 1200W")
        assert "Battery +1000W 50.0V 20.0A 85% [high] Charging" in line
        assert "Temp 35.2°C" in line

    def test_discharging_without_voltage(self) -> None:
        line = format_sample(make_sample({REG_BATTERY_POWER: 300, REG_BATTERY_PERCENT: 10}))

        assert "Battery -300W 0.0V N/A 10% [low] Discharging" in line
        assert not line.startswith("[")


class TestConsoleDisplay:

    def test_tracks_status(self) -> None:
        display = ConsoleDisplay()

        display.on_state(SessionState.CONNECTING, None)
        assert display.status == "connecting"
        assert display.describe_device("P1").endswith("Offline")

        display.on_state(SessionState.POLLING, None)
        assert display.describe_device("P1") == "P1 - Lumentree Hybrid Inverter - Online"

        display.on_state(SessionState.FAILED, ConnectTimeoutError(10.0), "P1")
        assert display.status == "error"

    def test_counts_samples(self) -> None:
        display = ConsoleDisplay()
        display.on_sample(make_sample(), "P1")

        assert display.samples_shown == 1
