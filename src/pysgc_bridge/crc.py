"""CRC16/MODBUS checksum (poly 0xA001 reflected, init 0xFFFF)."""

_POLY = 0xA001


def crc16(data: bytes) -> int:
    """Return the 16-bit Modbus CRC of data. Empty input yields 0xFFFF."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ _POLY
            else:
                crc >>= 1
    return crc


def crc_bytes(data: bytes) -> bytes:
    """CRC of data in wire order (little-endian)."""
    return crc16(data).to_bytes(2, "little")


def verify_crc(frame: bytes) -> bool:
    """True if the last two bytes of frame are the CRC of the preceding bytes."""
    if len(frame) < 5:
        return False
    return crc_bytes(frame[:-2]) == frame[-2:]
