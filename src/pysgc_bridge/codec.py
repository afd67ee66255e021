"""
Modbus RTU frame codec: build read/write request frames and parse hex-encoded
requests and responses as carried inside the gateway's JSON envelopes.

Frame layout: [unit id][function][payload...][crc lo][crc hi]. Register fields
are big-endian, the CRC is little-endian.
"""

import logging

from .crc import crc_bytes, verify_crc
from .errors import InconsistentByteCountError, MalformedRequestError, MalformedResponseError
from .types import FunctionCode, ParsedRequest, ParsedResponse

logger = logging.getLogger(__name__)

REQUEST_LENGTH = 8
MIN_RESPONSE_LENGTH = 5
MAX_WRITE_REGISTERS = 123


def hex_to_bytes(hex_str: str) -> bytes:
    """Decode a hex frame string; surrounding whitespace and a 0x prefix are tolerated."""
    if not isinstance(hex_str, str):
        raise ValueError(f"Hex frame must be a string, got {type(hex_str).__name__}")
    clean = hex_str.strip()
    if clean[:2].lower() == "0x":
        clean = clean[2:]
    if len(clean) % 2 != 0:
        raise ValueError(f"Invalid hex (odd length): {hex_str!r}")
    return bytes.fromhex(clean)


def to_hex(frame: bytes) -> str:
    """Uppercase hex, the form the gateway expects."""
    return frame.hex().upper()


def _check_unit(unit_id: int) -> None:
    if not 0 <= unit_id <= 0xFF:
        raise ValueError(f"unit_id out of range 0-255: {unit_id}")


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} out of range 0-65535: {value}")


def _seal(body: bytes) -> bytes:
    return body + crc_bytes(body)


def _encode_header(unit_id: int, function: int, first: int, second: int) -> bytes:
    return bytes([unit_id, function]) + first.to_bytes(2, "big") + second.to_bytes(2, "big")


def encode_read_request(unit_id: int, start_address: int, quantity: int) -> bytes:
    """Build an 8-byte read-holding-registers (fc 3) request."""
    _check_unit(unit_id)
    _check_u16("start_address", start_address)
    _check_u16("quantity", quantity)
    return _seal(_encode_header(unit_id, FunctionCode.READ_HOLDING_REGISTERS, start_address, quantity))


def encode_write_single_request(unit_id: int, address: int, value: int) -> bytes:
    """Build an 8-byte write-single-register (fc 6) request."""
    _check_unit(unit_id)
    _check_u16("address", address)
    _check_u16("value", value)
    return _seal(_encode_header(unit_id, FunctionCode.WRITE_SINGLE_REGISTER, address, value))


def encode_write_multiple_request(unit_id: int, start_address: int, values: list[int]) -> bytes:
    """Build a write-multiple-registers (fc 16) request: 9 + 2*len(values) bytes."""
    _check_unit(unit_id)
    _check_u16("start_address", start_address)
    if not 1 <= len(values) <= MAX_WRITE_REGISTERS:
        raise ValueError(f"values must hold 1-{MAX_WRITE_REGISTERS} registers, got {len(values)}")
    for v in values:
        _check_u16("value", v)
    header = _encode_header(unit_id, FunctionCode.WRITE_MULTIPLE_REGISTERS, start_address, len(values))
    body = header + bytes([2 * len(values)]) + b"".join(v.to_bytes(2, "big") for v in values)
    return _seal(body)


def parse_request(hex_str: str) -> ParsedRequest:
    """
    Recover unit id, function, start address and quantity from a request frame.

    Raises MalformedRequestError for invalid hex or frames shorter than 8 bytes.
    """
    try:
        b = hex_to_bytes(hex_str)
    except ValueError as e:
        raise MalformedRequestError(hex_str, str(e)) from e
    if len(b) < REQUEST_LENGTH:
        raise MalformedRequestError(hex_str, f"Request too short ({len(b)} bytes): {hex_str!r}")
    return ParsedRequest(
        unit_id=b[0],
        function_code=b[1],
        start_address=int.from_bytes(b[2:4], "big"),
        quantity=int.from_bytes(b[4:6], "big"),
        crc_ok=verify_crc(b),
    )


def parse_response(hex_str: str) -> ParsedResponse:
    """
    Parse a response frame into registers, a write echo, or an exception.

    Exception frames (function | 0x80) return is_exception=True and are never
    register-decoded. CRC is reported in crc_ok but does not block parsing.
    Raises MalformedResponseError / InconsistentByteCountError.
    """
    try:
        b = hex_to_bytes(hex_str)
    except ValueError as e:
        raise MalformedResponseError(hex_str, str(e)) from e
    if len(b) < MIN_RESPONSE_LENGTH:
        raise MalformedResponseError(hex_str, f"Response too short ({len(b)} bytes): {hex_str!r}")

    unit_id, function = b[0], b[1]
    crc_ok = verify_crc(b)

    if function & 0x80:
        return ParsedResponse(
            unit_id=unit_id,
            function_code=function,
            is_exception=True,
            exception_code=b[2],
            crc_ok=crc_ok,
        )

    # fc 6 / fc 16 echo the address and the value / quantity instead of a byte count
    if function in (FunctionCode.WRITE_SINGLE_REGISTER, FunctionCode.WRITE_MULTIPLE_REGISTERS):
        if len(b) < REQUEST_LENGTH:
            raise MalformedResponseError(hex_str, f"Write echo too short ({len(b)} bytes): {hex_str!r}")
        return ParsedResponse(
            unit_id=unit_id,
            function_code=function,
            address=int.from_bytes(b[2:4], "big"),
            value=int.from_bytes(b[4:6], "big"),
            crc_ok=crc_ok,
        )

    byte_count = b[2]
    data_end = 3 + byte_count
    if data_end + 2 > len(b):
        raise InconsistentByteCountError(hex_str, byte_count, max(len(b) - 5, 0))
    if byte_count % 2 != 0:
        raise MalformedResponseError(hex_str, f"Odd byte count {byte_count} in {hex_str!r}")

    data = b[3:data_end]
    registers = tuple(int.from_bytes(data[i : i + 2], "big") for i in range(0, byte_count, 2))
    if not crc_ok:
        logger.debug("CRC mismatch on response %s", hex_str)
    return ParsedResponse(
        unit_id=unit_id,
        function_code=function,
        registers=registers,
        byte_count=byte_count,
        crc_ok=crc_ok,
    )
