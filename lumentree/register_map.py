"""Register map and metric derivation for Lumentree hybrid inverters"""

import enum
import struct
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from .frame_codec import RegisterTable


# Register addresses (0-based offsets into the 0..94 read window)
REG_GRID_VOLTAGE = 15       # x0.1 V
REG_PV1_VOLTAGE = 20        # V
REG_PV1_POWER = 22          # W
REG_DEVICE_TEMPERATURE = 24  # (raw - 1000) x0.1 degC
REG_BATTERY_PERCENT = 50    # %
REG_BATTERY_VOLTAGE = 51    # x0.1 V
REG_GRID_POWER = 59         # W, signed
REG_BATTERY_POWER = 61      # W, signed, negative while charging
REG_LOAD_POWER = 67         # W
REG_PV2_VOLTAGE = 72        # V
REG_PV2_POWER = 74          # W

TEMPERATURE_OFFSET = 1000


def read_uint16(table: RegisterTable, address: int) -> int:
    """
    Read an unsigned big-endian register.

    Args:
        table: Decoded register table
        address: Register address

    Returns:
        Register value, 0 if the address is outside the table
    """
    raw = table.raw(address)
    if raw is None:
        return 0
    return struct.unpack(">H", raw)[0]


def read_int16(table: RegisterTable, address: int) -> int:
    """
    Read a signed (two's complement) big-endian register.

    Args:
        table: Decoded register table
        address: Register address

    Returns:
        Register value, 0 if the address is outside the table
    """
    raw = table.raw(address)
    if raw is None:
        return 0
    return struct.unpack(">h", raw)[0]


class BatteryDirection(str, enum.Enum):
    """Battery power flow derived from the sign of the battery register."""

    CHARGING = "Charging"
    DISCHARGING = "Discharging"


@dataclass(frozen=True)
class TelemetrySample:
    """One decoded reading of the inverter."""

    pv1_power: int
    pv1_voltage: int
    pv2_power: int
    pv2_voltage: int
    pv_total_power: int
    grid_power: int
    grid_voltage: float
    battery_power: int
    battery_direction: BatteryDirection
    battery_magnitude: int
    battery_percent: int
    battery_voltage: float
    device_temperature: float
    load_power: int
    timestamp: datetime

    def to_dict(self) -> Dict:
        """Flatten to plain values (enum as its label, timestamp as ISO 8601)."""
        data = asdict(self)
        data['battery_direction'] = self.battery_direction.value
        data['timestamp'] = self.timestamp.isoformat()
        return data


def derive_sample(table: RegisterTable,
                  timestamp: Optional[datetime] = None) -> TelemetrySample:
    """
    Build a telemetry sample from a register table.

    PV2 only counts towards the total when its string shows a voltage. A
    battery reading of exactly 0 is classified as discharging.

    Args:
        table: Decoded register table
        timestamp: Sample time, defaults to now (UTC)

    Returns:
        TelemetrySample
    """
    pv1_power = read_uint16(table, REG_PV1_POWER)
    pv1_voltage = read_uint16(table, REG_PV1_VOLTAGE)
    pv2_power = read_uint16(table, REG_PV2_POWER)
    pv2_voltage = read_uint16(table, REG_PV2_VOLTAGE)
    grid_power = read_int16(table, REG_GRID_POWER)
    grid_voltage = read_uint16(table, REG_GRID_VOLTAGE) / 10.0
    battery_power = read_int16(table, REG_BATTERY_POWER)
    battery_percent = read_uint16(table, REG_BATTERY_PERCENT)
    battery_voltage = read_uint16(table, REG_BATTERY_VOLTAGE) / 10.0
    device_temperature = (read_uint16(table, REG_DEVICE_TEMPERATURE) - TEMPERATURE_OFFSET) / 10.0
    load_power = read_uint16(table, REG_LOAD_POWER)

    pv_total_power = pv1_power + (pv2_power if pv2_voltage > 0 else 0)

    if battery_power < 0:
        battery_direction = BatteryDirection.CHARGING
    else:
        battery_direction = BatteryDirection.DISCHARGING

    return TelemetrySample(
        pv1_power=pv1_power,
        pv1_voltage=pv1_voltage,
        pv2_power=pv2_power,
        pv2_voltage=pv2_voltage,
        pv_total_power=pv_total_power,
        grid_power=grid_power,
        grid_voltage=grid_voltage,
        battery_power=battery_power,
        battery_direction=battery_direction,
        battery_magnitude=abs(battery_power),
        battery_percent=battery_percent,
        battery_voltage=battery_voltage,
        device_temperature=device_temperature,
        load_power=load_power,
        timestamp=timestamp or datetime.now(timezone.utc),
    )
