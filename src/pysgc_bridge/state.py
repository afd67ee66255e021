"""Unified per-device state (last-write-wins merge) and the state sink boundary."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

from .types import DeviceUpdate, FieldValue

logger = logging.getLogger(__name__)


class StateSink(Protocol):
    """Downstream consumer of decoded updates (persistence, broadcast)."""

    def deliver(self, update: DeviceUpdate, state: dict[str, FieldValue]) -> None: ...


class UnifiedStateStore:
    """
    Latest known fields per device. Merges are atomic per device; different
    devices never contend on the same lock.
    """

    def __init__(self, initial: dict[str, dict[str, FieldValue]] | None = None) -> None:
        self._state: dict[str, dict[str, FieldValue]] = {k: dict(v) for k, v in (initial or {}).items()}
        self._locks: dict[str, threading.Lock] = {}

    def _lock(self, device_id: str) -> threading.Lock:
        # dict.setdefault is atomic, so two threads always get the same lock
        return self._locks.setdefault(device_id, threading.Lock())

    def merge(self, device_id: str, fields: dict[str, FieldValue]) -> dict[str, FieldValue]:
        """Overlay fields onto the device's state; returns a copy of the merged state."""
        with self._lock(device_id):
            current = self._state.setdefault(device_id, {})
            current.update(fields)
            return dict(current)

    def get(self, device_id: str) -> dict[str, FieldValue]:
        with self._lock(device_id):
            return dict(self._state.get(device_id, {}))

    def snapshot(self) -> dict[str, dict[str, FieldValue]]:
        return {device_id: self.get(device_id) for device_id in list(self._state)}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._state


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


class StateFileSink:
    """Keeps a JSON file of every device's merged state, rewritten on each update."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._doc: dict[str, Any] = {}
        if self._path.is_file():
            try:
                with open(self._path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    self._doc = loaded
            except (OSError, json.JSONDecodeError) as e:
                logger.error("State file %s unreadable, starting empty: %s", self._path, e)

    def deliver(self, update: DeviceUpdate, state: dict[str, FieldValue]) -> None:
        with self._lock:
            self._doc[update.device_id] = {
                "deviceId": update.device_id,
                "timestamp": update.timestamp.isoformat(),
                "fields": dict(state),
            }
            atomic_write_json(self._path, self._doc)


class HistoryLogSink:
    """Appends each update as one JSON line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def deliver(self, update: DeviceUpdate, state: dict[str, FieldValue]) -> None:
        line = json.dumps(update.to_dict())
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
