"""Exception hierarchy for the Lumentree MQTT client"""

from typing import Optional


class LumentreeError(Exception):
    """Base exception for Lumentree errors."""


# =============================================================================
# Transport
# =============================================================================

class TransportError(ConnectionError, LumentreeError):
    """Connect, subscribe or publish on the broker failed."""


class ConnectTimeoutError(TransportError):
    """Connect/subscribe did not complete within the connect timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Connection not established within {timeout}s")


# =============================================================================
# Frame decoding
# =============================================================================

class DecodeError(ValueError, LumentreeError):
    """Inbound message is not a usable response frame."""

    reason = "decode_error"


class FrameTooShortError(DecodeError):
    """Fewer than 3 bytes left after marker stripping."""

    reason = "frame_too_short"

    def __init__(self, length: int) -> None:
        self.length = length
        super().__init__(f"Frame too short: {length} byte(s), need at least 3")


class UnexpectedFunctionCodeError(DecodeError):
    """Frame does not start with 01 03."""

    reason = "unexpected_function_code"

    def __init__(self, header: bytes) -> None:
        self.header = bytes(header)
        super().__init__(f"Unexpected frame header: {self.header.hex()} (expected 0103)")


class TruncatedRegistersError(DecodeError):
    """Fewer register bytes present than the byte count declares."""

    reason = "truncated_registers"

    def __init__(self, declared: int, available: int) -> None:
        self.declared = declared
        self.available = available
        super().__init__(
            f"Truncated registers: declared {declared} byte(s), got {available}"
        )


# =============================================================================
# History API
# =============================================================================

class HistoryError(LumentreeError):
    """Daily history request failed."""

    def __init__(self, endpoint: str, message: str, status: Optional[int] = None) -> None:
        self.endpoint = endpoint
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"{endpoint}: {message}{detail}")


class TokenError(HistoryError):
    """No API token could be obtained for a device."""
