"""Core data model: function codes, parsed frames, decoded blocks, batch and command results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Mapping

FieldValue = float | int | bool

# Block identifier of a response no decode rule matched
UNKNOWN_BLOCK = "UNKNOWN"


class FunctionCode(IntEnum):
    """Modbus function codes handled by the bridge."""

    READ_HOLDING_REGISTERS = 3
    READ_INPUT_REGISTERS = 4
    WRITE_SINGLE_REGISTER = 6
    WRITE_MULTIPLE_REGISTERS = 16


class WordOrder(str, Enum):
    """Which register of a 32-bit pair carries the high word."""

    HIGH_FIRST = "high_first"
    LOW_FIRST = "low_first"


class DeviceState(str, Enum):
    """Orchestrator polling state of a device."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class OutcomeStatus(str, Enum):
    """Result of processing one request/response pair of an envelope."""

    DECODED = "DECODED"
    WRITE_ACK = "WRITE_ACK"
    NO_RESPONSE = "NO_RESPONSE"
    MODBUS_EXCEPTION = "MODBUS_EXCEPTION"
    MALFORMED_REQUEST = "MALFORMED_REQUEST"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    INCONSISTENT_BYTE_COUNT = "INCONSISTENT_BYTE_COUNT"
    CRC_MISMATCH = "CRC_MISMATCH"


@dataclass(frozen=True)
class ParsedRequest:
    """Request header recovered from a hex frame. For fc 6 `quantity` holds the written value."""

    unit_id: int
    function_code: int
    start_address: int
    quantity: int
    crc_ok: bool = True


@dataclass(frozen=True)
class ParsedResponse:
    """Parsed response frame: register data, write echo, or exception."""

    unit_id: int
    function_code: int
    is_exception: bool = False
    registers: tuple[int, ...] = ()
    byte_count: int | None = None
    exception_code: int | None = None
    address: int | None = None
    value: int | None = None
    crc_ok: bool = True

    @property
    def base_function(self) -> int:
        return self.function_code & 0x7F

    @property
    def is_write_echo(self) -> bool:
        return not self.is_exception and self.function_code in (
            FunctionCode.WRITE_SINGLE_REGISTER,
            FunctionCode.WRITE_MULTIPLE_REGISTERS,
        )


@dataclass(frozen=True)
class DecodedBlock:
    """
    Semantic reading set produced by one decode rule. Fields are read-only;
    UNKNOWN blocks carry the raw registers instead of fields.
    """

    block: str
    start_address: int
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    registers: tuple[int, ...] = ()
    provisional: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "registers", tuple(self.registers))

    @property
    def is_unknown(self) -> bool:
        return self.block == UNKNOWN_BLOCK

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"block": self.block, "startAddress": self.start_address}
        out.update(self.fields)
        if self.is_unknown:
            out["registers"] = list(self.registers)
        if self.provisional:
            out["provisional"] = True
        return out


@dataclass(frozen=True)
class DeviceInfo:
    """Registry entry: transport device id mapped to its Modbus unit id."""

    device_id: str
    unit_id: int
    word_order: WordOrder | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ValueError("device_id cannot be empty")
        if not 0 <= self.unit_id <= 255:
            raise ValueError(f"unit_id must be 0-255, got {self.unit_id}")


@dataclass(frozen=True)
class PollSuspension:
    device_id: str
    suspended_at: datetime


@dataclass(frozen=True)
class PairOutcome:
    """Outcome of one aligned request/response pair."""

    index: int
    status: OutcomeStatus
    request: ParsedRequest | None = None
    response: ParsedResponse | None = None
    block: DecodedBlock | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.DECODED, OutcomeStatus.WRITE_ACK)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"index": self.index, "status": self.status.value, "ok": self.ok}
        if self.request is not None:
            out["startAddress"] = self.request.start_address
            out["functionCode"] = self.request.function_code
        if self.block is not None:
            out["decoded"] = self.block.to_dict()
        if self.response is not None and not self.response.crc_ok:
            out["crcOk"] = False
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class DeviceUpdate:
    """Atomic per-envelope update delivered to the state sink."""

    device_id: str
    timestamp: datetime
    fields: Mapping[str, FieldValue]

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "timestamp": self.timestamp.isoformat(),
            "fields": dict(self.fields),
        }


@dataclass(frozen=True)
class BatchResult:
    """All pair outcomes of one envelope plus the folded update (None when nothing decoded)."""

    device_id: str
    timestamp: datetime
    outcomes: tuple[PairOutcome, ...]
    update: DeviceUpdate | None = None

    @property
    def failures(self) -> tuple[PairOutcome, ...]:
        return tuple(o for o in self.outcomes if not o.ok)

    @property
    def decoded_fields(self) -> dict[str, FieldValue]:
        return dict(self.update.fields) if self.update is not None else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "timestamp": self.timestamp.isoformat(),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "fields": self.decoded_fields,
        }


@dataclass(frozen=True)
class CommandResult:
    """Result of CommandOrchestrator.issue_command; to_dict() is the external API shape."""

    success: bool
    device_id: str
    action: str
    frame_hex: str | None = None
    error: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        if self.warning is not None:
            out["warning"] = self.warning
        return out
