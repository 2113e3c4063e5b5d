"""Request/response frame codec for the Lumentree MQTT protocol

Requests are Modbus RTU style "read holding registers" frames:

    [0x01][0x03][startHi][startLo][countHi][countLo][crcLo][crcHi]

Responses arrive on the report topic, optionally prefixed by one or more
"++++" markers (2B 2B 2B 2B):

    [marker...][0x01][0x03][byteCount][register bytes x byteCount][trailer]

The response trailer is never checked.
"""

import struct
from dataclasses import dataclass
from typing import Optional

from .errors import (
    DecodeError,
    FrameTooShortError,
    TruncatedRegistersError,
    UnexpectedFunctionCodeError,
)

DEVICE_ADDRESS = 0x01
FUNCTION_READ_HOLDING = 0x03
FRAME_MARKER = b"++++"

REQUEST_BODY_LENGTH = 6
REQUEST_LENGTH = REQUEST_BODY_LENGTH + 2
RESPONSE_HEADER_LENGTH = 3

CRC_SEED = 0xFFFF
CRC_POLYNOMIAL = 0xA001


def crc16_modbus(data: bytes) -> int:
    """
    Compute CRC-16/MODBUS over a byte sequence.

    Args:
        data: Bytes to checksum

    Returns:
        16-bit CRC value
    """
    crc = CRC_SEED
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ CRC_POLYNOMIAL
            else:
                crc >>= 1
    return crc


def build_read_request(start_register: int, count: int) -> bytes:
    """
    Build an 8-byte read request frame.

    Both 16-bit fields of the body are big-endian, the checksum is appended
    low byte first.

    Args:
        start_register: First register to read
        count: Number of registers to read

    Returns:
        Request frame bytes
    """
    body = struct.pack(">BBHH", DEVICE_ADDRESS, FUNCTION_READ_HOLDING,
                       start_register, count)
    return body + struct.pack("<H", crc16_modbus(body))


def strip_markers(payload: bytes) -> bytes:
    """Return what follows the last "++++" marker, or the payload unchanged."""
    index = payload.rfind(FRAME_MARKER)
    if index < 0:
        return payload
    return payload[index + len(FRAME_MARKER):]


class RegisterTable:
    """
    Read-only view over the register bytes of one response frame.

    Register N is the big-endian byte pair at offset 2*N. Only the bytes the
    frame declared are addressable.
    """

    __slots__ = ("_data",)

    def __init__(self, data: bytes):
        self._data = bytes(data)

    @property
    def data(self) -> bytes:
        return self._data

    @property
    def declared_length(self) -> int:
        """Register byte count declared by the frame."""
        return len(self._data)

    @property
    def register_count(self) -> int:
        return len(self._data) // 2

    def raw(self, address: int) -> Optional[bytes]:
        """Return the 2 raw bytes of a register, or None when out of range."""
        offset = address * 2
        if address < 0 or offset + 1 >= len(self._data):
            return None
        return self._data[offset:offset + 2]

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RegisterTable):
            return NotImplemented
        return self._data == other._data

    def __hash__(self) -> int:
        return hash(self._data)

    def __repr__(self) -> str:
        return f"RegisterTable({self.declared_length} bytes)"


def decode_response(payload: bytes) -> RegisterTable:
    """
    Decode a response frame into a register table.

    Args:
        payload: Raw message bytes from the report topic

    Returns:
        RegisterTable over the declared register bytes

    Raises:
        FrameTooShortError: fewer than 3 bytes after marker stripping
        UnexpectedFunctionCodeError: frame does not start with 01 03
        TruncatedRegistersError: fewer register bytes than declared
    """
    frame = strip_markers(bytes(payload))

    if len(frame) < RESPONSE_HEADER_LENGTH:
        raise FrameTooShortError(len(frame))

    if frame[0] != DEVICE_ADDRESS or frame[1] != FUNCTION_READ_HOLDING:
        raise UnexpectedFunctionCodeError(frame[:2])

    declared_length = frame[2]
    registers = frame[RESPONSE_HEADER_LENGTH:RESPONSE_HEADER_LENGTH + declared_length]
    if len(registers) < declared_length:
        raise TruncatedRegistersError(declared_length, len(registers))

    return RegisterTable(registers)


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one inbound message. Exactly one field is set."""

    table: Optional[RegisterTable] = None
    error: Optional[DecodeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def try_decode_response(payload: bytes) -> DecodeResult:
    """Decode a response frame without raising on malformed input."""
    try:
        return DecodeResult(table=decode_response(payload))
    except DecodeError as e:
        return DecodeResult(error=e)
