"""pysgc-bridge: Modbus RTU over MQTT bridge for SGC-120 generator controllers."""

__version__ = "0.1.0"

from .blocks import BlockDecoder, BlockRule, get_default_decoder
from .bridge import Bridge
from .codec import (
    encode_read_request,
    encode_write_multiple_request,
    encode_write_single_request,
    parse_request,
    parse_response,
)
from .config import BridgeConfig
from .crc import crc16, verify_crc
from .errors import (
    DeviceNotFoundError,
    MalformedRequestError,
    MalformedResponseError,
    ModbusExceptionError,
    PySGCBridgeError,
    TransportDisconnectedError,
    UnknownActionError,
)
from .ingest import TelemetryIngest
from .orchestrator import CommandOrchestrator
from .registry import DeviceRegistry
from .state import UnifiedStateStore
from .suspension import SuspensionStore
from .transport import MqttTransport
from .types import (
    BatchResult,
    CommandResult,
    DecodedBlock,
    DeviceInfo,
    DeviceState,
    DeviceUpdate,
    OutcomeStatus,
    WordOrder,
)

__all__ = [
    "__version__",
    "BlockDecoder",
    "BlockRule",
    "get_default_decoder",
    "Bridge",
    "encode_read_request",
    "encode_write_multiple_request",
    "encode_write_single_request",
    "parse_request",
    "parse_response",
    "BridgeConfig",
    "crc16",
    "verify_crc",
    "DeviceNotFoundError",
    "MalformedRequestError",
    "MalformedResponseError",
    "ModbusExceptionError",
    "PySGCBridgeError",
    "TransportDisconnectedError",
    "UnknownActionError",
    "TelemetryIngest",
    "CommandOrchestrator",
    "DeviceRegistry",
    "UnifiedStateStore",
    "SuspensionStore",
    "MqttTransport",
    "BatchResult",
    "CommandResult",
    "DecodedBlock",
    "DeviceInfo",
    "DeviceState",
    "DeviceUpdate",
    "OutcomeStatus",
    "WordOrder",
]
