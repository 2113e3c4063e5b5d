"""
Lumentree MQTT - Live telemetry client for Lumentree hybrid inverters

Polls an inverter through the vendor's cloud MQTT broker with Modbus-RTU
style read requests, decodes the register replies into telemetry samples
and optionally republishes them to a local MQTT broker.
"""

__version__ = "1.0.0"

from .config import ConfigLoader, get_config
from .logging_setup import setup_logging, get_logger
from .errors import (
    LumentreeError,
    TransportError,
    ConnectTimeoutError,
    DecodeError,
    HistoryError,
    TokenError,
)
from .frame_codec import build_read_request, decode_response, try_decode_response, RegisterTable
from .register_map import TelemetrySample, BatteryDirection, derive_sample
from .session import Session, SessionState
from .transport import MQTTTransport, transport_factory
from .reconnect import ReconnectSupervisor
from .telemetry_window import TelemetryWindow
from .display import ConsoleDisplay, format_sample
from .republisher import SampleRepublisher
from .history import HistoryClient, DailyHistory

__all__ = [
    "__version__",
    "ConfigLoader",
    "get_config",
    "setup_logging",
    "get_logger",
    "LumentreeError",
    "TransportError",
    "ConnectTimeoutError",
    "DecodeError",
    "HistoryError",
    "TokenError",
    "build_read_request",
    "decode_response",
    "try_decode_response",
    "RegisterTable",
    "TelemetrySample",
    "BatteryDirection",
    "derive_sample",
    "Session",
    "SessionState",
    "MQTTTransport",
    "transport_factory",
    "ReconnectSupervisor",
    "TelemetryWindow",
    "ConsoleDisplay",
    "format_sample",
    "SampleRepublisher",
    "HistoryClient",
    "DailyHistory",
]
