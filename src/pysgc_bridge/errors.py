"""Clear exceptions for pysgc-bridge: frame codec, decode, device and transport errors."""

# Standard Modbus exception codes (byte 2 of an exception response)
MODBUS_EXCEPTION_NAMES: dict[int, str] = {
    0x01: "ILLEGAL_FUNCTION",
    0x02: "ILLEGAL_DATA_ADDRESS",
    0x03: "ILLEGAL_DATA_VALUE",
    0x04: "SERVER_DEVICE_FAILURE",
    0x05: "ACKNOWLEDGE",
    0x06: "SERVER_DEVICE_BUSY",
    0x08: "MEMORY_PARITY_ERROR",
    0x0A: "GATEWAY_PATH_UNAVAILABLE",
    0x0B: "GATEWAY_TARGET_FAILED_TO_RESPOND",
}


class PySGCBridgeError(Exception):
    """Base exception for pysgc-bridge."""

    pass


class MalformedRequestError(PySGCBridgeError):
    """Raised when a request frame is too short or not valid hex."""

    def __init__(self, raw: str | None, message: str | None = None) -> None:
        self.raw = raw
        super().__init__(message or f"Malformed request: {raw!r}")


class MalformedResponseError(PySGCBridgeError):
    """Raised when a response frame is too short, not valid hex, or inconsistent."""

    def __init__(self, raw: str | None, message: str | None = None) -> None:
        self.raw = raw
        super().__init__(message or f"Malformed response: {raw!r}")


class InconsistentByteCountError(MalformedResponseError):
    """Raised when the declared byte count does not fit the frame."""

    def __init__(self, raw: str, byte_count: int, available: int) -> None:
        self.byte_count = byte_count
        self.available = available
        super().__init__(
            raw,
            f"Inconsistent byte count: declared {byte_count}, {available} data bytes present in {raw!r}",
        )


class ModbusExceptionError(PySGCBridgeError):
    """Raised for a Modbus exception response (function code with the 0x80 bit set)."""

    def __init__(self, code: int, function_code: int | None = None) -> None:
        self.code = code
        self.function_code = function_code
        self.name = MODBUS_EXCEPTION_NAMES.get(code, "UNKNOWN_EXCEPTION")
        super().__init__(f"Modbus exception {code} ({self.name})")


class NoResponseError(PySGCBridgeError):
    """Raised when a polled sub-request timed out (empty response string)."""

    def __init__(self, message: str = "No response") -> None:
        super().__init__(message)


class CrcMismatchError(PySGCBridgeError):
    """Raised when a frame's trailing CRC does not match its contents (strict policy only)."""

    def __init__(self, raw: str) -> None:
        self.raw = raw
        super().__init__(f"CRC mismatch: {raw!r}")


class DeviceNotFoundError(PySGCBridgeError):
    """Raised when a device identifier is not in the device registry."""

    def __init__(self, device_id: str, message: str | None = None) -> None:
        self.device_id = device_id
        super().__init__(message or f"Unknown device: {device_id!r}")


class TransportDisconnectedError(PySGCBridgeError):
    """Raised when a publish is attempted while the MQTT transport is not connected."""

    def __init__(self, message: str = "Transport not connected", *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class UnknownActionError(PySGCBridgeError):
    """Raised when a control action is not in the action table."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action!r}")
