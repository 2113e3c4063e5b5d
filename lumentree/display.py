"""Console rendering of live telemetry"""

from typing import Optional

from .logging_setup import get_logger
from .register_map import BatteryDirection, TelemetrySample
from .session import SessionState

DEVICE_TYPE = "Lumentree Hybrid Inverter"

BATTERY_LOW_PERCENT = 20
BATTERY_HIGH_PERCENT = 80

STATUS_LABELS = {
    SessionState.DISCONNECTED: "disconnected",
    SessionState.CONNECTING: "connecting",
    SessionState.SUBSCRIBING: "connecting",
    SessionState.POLLING: "connected",
    SessionState.FAILED: "error",
}


def battery_current(sample: TelemetrySample) -> Optional[float]:
    """Battery current in A (P / V), None when the voltage reads 0."""
    if sample.battery_voltage <= 0:
        return None
    return sample.battery_magnitude / sample.battery_voltage


def battery_level(percent: int) -> str:
    """Bucket the state of charge as low / medium / high."""
    if percent < BATTERY_LOW_PERCENT:
        return "low"
    if percent < BATTERY_HIGH_PERCENT:
        return "medium"
    return "high"


def format_sample(sample: TelemetrySample, device_id: str = "") -> str:
    """
    Format one sample as a single status line.

    Battery power is shown with '+' while charging and '-' while
    discharging, followed by the magnitude.
    """
    sign = '+' if sample.battery_direction == BatteryDirection.CHARGING else '-'
    amps = battery_current(sample)
    amps_text = f"{amps:.1f}A" if amps is not None else "N/A"

    parts = [
        f"PV {sample.pv_total_power}W ({sample.pv1_voltage}V)",
        f"Grid {sample.grid_power}W {sample.grid_voltage}V",
        f"Battery {sign}{sample.battery_magnitude}W {sample.battery_voltage:.1f}V "
        f"{amps_text} {sample.battery_percent}% [{battery_level(sample.battery_percent)}] "
        f"{sample.battery_direction.value}",
        f"Load {sample.load_power}W",
        f"Temp {sample.device_temperature:.1f}°C",
    ]
    line = " | ".join(parts)
    if device_id:
        line = f"[{device_id}] {line}"
    return line


class ConsoleDisplay:
    """Sample and state listener that writes to the application log"""

    def __init__(self):
        self.log = get_logger()
        self.samples_shown = 0
        self.status = STATUS_LABELS[SessionState.DISCONNECTED]

    def on_sample(self, sample: TelemetrySample, device_id: str):
        self.samples_shown += 1
        self.log.info(format_sample(sample, device_id))

    def on_state(self, state: SessionState, error: Optional[Exception], device_id: str = ""):
        self.status = STATUS_LABELS.get(state, state.value)
        prefix = f"[{device_id}] " if device_id else ""
        if error is not None and state == SessionState.FAILED:
            self.log.warning(f"{prefix}Real-time: {self.status} ({error})")
        else:
            self.log.info(f"{prefix}Real-time: {self.status}")

    def describe_device(self, device_id: str) -> str:
        online = "Online" if self.status == "connected" else "Offline"
        return f"{device_id} - {DEVICE_TYPE} - {online}"
