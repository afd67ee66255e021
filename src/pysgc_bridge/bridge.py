"""Bridge: wires registry, suspension store, ingest, orchestrator and MQTT transport into one service."""

import json
import logging
import threading
from typing import Any

from .config import BridgeConfig
from .ingest import TelemetryIngest
from .orchestrator import CommandOrchestrator
from .registry import DeviceRegistry
from .state import HistoryLogSink, StateFileSink, StateSink, UnifiedStateStore
from .suspension import SuspensionStore
from .transport import MqttTransport, Transport, device_id_from_topic
from .types import BatchResult, CommandResult

logger = logging.getLogger(__name__)


class Bridge:
    """
    Inbound envelopes on the data topic go through TelemetryIngest; commands
    and periodic polls go out through CommandOrchestrator. The suspension
    store is loaded before any command can be accepted.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        registry: DeviceRegistry | None = None,
        transport: Transport | None = None,
        sinks: list[StateSink] | None = None,
    ) -> None:
        self._config = config
        if registry is None:
            registry = DeviceRegistry(path=config.devices_file) if config.devices_file else DeviceRegistry()
        self.registry = registry
        self.suspensions = SuspensionStore(config.suspension_file)

        if sinks is None:
            sinks = []
            if config.state_file is not None:
                sinks.append(StateFileSink(config.state_file))
            if config.history_file is not None:
                sinks.append(HistoryLogSink(config.history_file))
        self.ingest = TelemetryIngest(
            UnifiedStateStore(),
            registry=registry,
            sinks=sinks,
            strict_crc=config.strict_crc,
        )

        if transport is None:
            transport = MqttTransport(
                config.broker_host,
                config.broker_port,
                username=config.username,
                password=config.password,
                client_id=config.client_id,
                tls=config.tls,
                tls_insecure=config.tls_insecure,
                data_topic=config.data_topic,
                command_topic=config.command_topic,
                publish_timeout=config.publish_timeout_s,
            )
        self.transport = transport
        if isinstance(transport, MqttTransport):
            transport.set_message_handler(self.handle_message)

        self.orchestrator = CommandOrchestrator(
            transport,
            registry,
            self.suspensions,
            restore_delay=config.restore_delay_s,
            restore_periodicity=config.restore_periodicity_s,
        )
        self._stop = threading.Event()

    def handle_message(self, topic: str, payload: bytes) -> BatchResult | None:
        """Decode one inbound MQTT message; bad JSON is logged and dropped, never raised."""
        device_id = device_id_from_topic(topic)
        logger.debug("Message received on %s", topic)
        try:
            envelope: Any = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Parse error on %s: %s", topic, e)
            return None
        if not isinstance(envelope, dict):
            logger.error("Unexpected envelope on %s: %r", topic, type(envelope).__name__)
            return None
        result = self.ingest.process(device_id, envelope)
        if result.update is not None:
            logger.info("Decoded %d fields for %s", len(result.update.fields), device_id)
        return result

    def issue_command(self, device_id: str, action: str) -> CommandResult:
        return self.orchestrator.issue_command(device_id, action)

    def resume_polling(self, device_id: str) -> bool:
        return self.orchestrator.resume_polling(device_id)

    def run(self, connect_timeout: float = 10.0) -> None:
        """Connect and poll active devices every poll_interval_s until stop() is called."""
        if isinstance(self.transport, MqttTransport):
            if not self.transport.connect(wait=connect_timeout):
                logger.warning("Not connected after %.0fs; continuing, paho will keep retrying", connect_timeout)
        logger.info(
            "Bridge running: %d devices, %d suspended",
            len(self.registry),
            len(self.suspensions.all()),
        )
        while not self._stop.wait(self._config.poll_interval_s):
            self.orchestrator.poll_active_devices()

    def stop(self) -> None:
        self._stop.set()
        self.orchestrator.cancel_timers()
        if isinstance(self.transport, MqttTransport):
            self.transport.close()
        logger.info("Bridge stopped")
