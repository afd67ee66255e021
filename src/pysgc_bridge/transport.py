"""MqttTransport: paho-mqtt wrapper publishing JSON envelopes to the gateways' command topics."""

import json
import logging
import threading
from typing import Any, Callable, Protocol

import paho.mqtt.client as mqtt

from .errors import TransportDisconnectedError

logger = logging.getLogger(__name__)

DATA_TOPIC = "devices/data/#"
COMMAND_TOPIC = "devices/command/{device_id}"

MessageHandler = Callable[[str, bytes], None]


class Transport(Protocol):
    """What the orchestrator needs from a pub/sub transport."""

    @property
    def is_connected(self) -> bool: ...

    def publish(self, device_id: str, payload: dict[str, Any]) -> None: ...


def device_id_from_topic(topic: str) -> str:
    """devices/data/Ciklo0 -> Ciklo0"""
    return topic.rstrip("/").rsplit("/", 1)[-1]


class MqttTransport:
    """
    Threaded paho client (loop_start). Re-subscribes to the data topic on every
    (re)connect; publish fails fast with TransportDisconnectedError while the
    broker connection is down.
    """

    def __init__(
        self,
        host: str,
        port: int = 8883,
        *,
        username: str | None = None,
        password: str | None = None,
        client_id: str = "",
        tls: bool = True,
        tls_insecure: bool = False,
        data_topic: str = DATA_TOPIC,
        command_topic: str = COMMAND_TOPIC,
        qos: int = 1,
        keepalive: int = 60,
        publish_timeout: float | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._data_topic = data_topic
        self._command_topic = command_topic
        self._qos = qos
        self._keepalive = keepalive
        self._publish_timeout = publish_timeout
        self._handler: MessageHandler | None = None
        self._connected = threading.Event()

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username:
            self._client.username_pw_set(username, password)
        if tls:
            self._client.tls_set()
            if tls_insecure:
                self._client.tls_insecure_set(True)
        self._client.reconnect_delay_set(min_delay=1, max_delay=60)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    # ------------------------------------------------------------------ paho callbacks

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.error("MQTT connection to %s:%d refused: %s", self._host, self._port, reason_code)
            return
        self._connected.set()
        logger.info("Connected to MQTT broker %s:%d", self._host, self._port)
        client.subscribe(self._data_topic, qos=self._qos)
        logger.info("Subscribed to %s", self._data_topic)

    def _on_disconnect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        self._connected.clear()
        logger.warning("MQTT disconnected (rc=%s)", reason_code)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        if self._handler is None:
            return
        try:
            self._handler(msg.topic, msg.payload)
        except Exception:
            # keep the network loop alive; one bad message must not stop ingest
            logger.exception("Message handler failed for topic %s", msg.topic)

    # ------------------------------------------------------------------ public API

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._handler = handler

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def connect(self, wait: float | None = None) -> bool:
        """Start the network loop; optionally block up to wait seconds for CONNACK."""
        logger.info("Connecting to %s:%d...", self._host, self._port)
        self._client.connect_async(self._host, self._port, self._keepalive)
        self._client.loop_start()
        if wait is not None:
            return self._connected.wait(wait)
        return self.is_connected

    def close(self) -> None:
        try:
            self._client.disconnect()
            self._client.loop_stop()
        except Exception as e:
            logger.warning("Error closing MQTT client: %s", e)
        self._connected.clear()

    def __enter__(self) -> "MqttTransport":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def topic_for(self, device_id: str) -> str:
        return self._command_topic.format(device_id=device_id)

    def publish(self, device_id: str, payload: dict[str, Any]) -> None:
        """Publish a JSON envelope to the device's command topic."""
        if not self.is_connected:
            raise TransportDisconnectedError(f"Cannot publish to {device_id}: transport not connected")
        topic = self.topic_for(device_id)
        info = self._client.publish(topic, json.dumps(payload), qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportDisconnectedError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
        if self._publish_timeout is not None:
            try:
                info.wait_for_publish(self._publish_timeout)
            except (ValueError, RuntimeError) as e:
                raise TransportDisconnectedError(f"Publish to {topic} not delivered: {e}", cause=e) from e
            if not info.is_published():
                raise TransportDisconnectedError(f"Publish to {topic} not acknowledged within {self._publish_timeout}s")
        logger.debug("Published to %s: %s", topic, payload)
