"""BridgeConfig: settings for the bridge service, validated on construction."""

from dataclasses import dataclass
from pathlib import Path

from .orchestrator import RESTORE_DELAY_S, RESTORE_PERIODICITY_S
from .transport import COMMAND_TOPIC, DATA_TOPIC


@dataclass(frozen=True)
class BridgeConfig:
    """Broker connection, topics, file locations and timing of the bridge."""

    broker_host: str
    broker_port: int = 8883
    username: str | None = None
    password: str | None = None
    client_id: str = "pysgc-bridge"
    tls: bool = True
    tls_insecure: bool = False
    data_topic: str = DATA_TOPIC
    command_topic: str = COMMAND_TOPIC
    devices_file: Path | None = None
    suspension_file: Path = Path("state/suspended.json")
    state_file: Path | None = Path("state/generators_state.json")
    history_file: Path | None = None
    poll_interval_s: float = 10.0
    restore_delay_s: float = RESTORE_DELAY_S
    restore_periodicity_s: int = RESTORE_PERIODICITY_S
    strict_crc: bool = False
    publish_timeout_s: float | None = 5.0

    def __post_init__(self) -> None:
        if not self.broker_host:
            raise ValueError("broker_host is required")
        if not 0 < self.broker_port <= 65535:
            raise ValueError(f"broker_port must be 1-65535, got {self.broker_port}")
        if self.poll_interval_s <= 0:
            raise ValueError(f"poll_interval_s must be positive, got {self.poll_interval_s}")
        if self.restore_delay_s <= 0:
            raise ValueError(f"restore_delay_s must be positive, got {self.restore_delay_s}")
        if "{device_id}" not in self.command_topic:
            raise ValueError(f"command_topic must contain {{device_id}}: {self.command_topic!r}")
