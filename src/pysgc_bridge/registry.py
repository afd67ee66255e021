"""DeviceRegistry: load known devices from packaged JSON, a file, or an override list; O(1) lookup."""

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any, Iterator

from .errors import DeviceNotFoundError
from .types import DeviceInfo, WordOrder

logger = logging.getLogger(__name__)

_DEFAULT_RESOURCE = "pysgc_bridge.data.devices"


def _parse_entry(raw: dict[str, Any]) -> DeviceInfo:
    """Build DeviceInfo from a JSON entry (device_id, unit_id, word_order, name)."""
    device_id = str(raw["device_id"])
    word_order_str = raw.get("word_order")
    word_order: WordOrder | None = None
    if word_order_str is not None:
        try:
            word_order = WordOrder(word_order_str)
        except ValueError:
            raise ValueError(f"Unknown word_order {word_order_str!r} for device {device_id!r}")
    name = raw.get("name")
    return DeviceInfo(
        device_id=device_id,
        unit_id=int(raw.get("unit_id", 1)),
        word_order=word_order,
        name=str(name) if name is not None else None,
    )


def _entries_from(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [e for e in data if isinstance(e, dict)]
    if isinstance(data, dict) and "devices" in data:
        return [e for e in data["devices"] if isinstance(e, dict)]
    if isinstance(data, dict):
        # {"Ciklo1": {"unit_id": 1}, ...}
        return [{"device_id": k, **v} for k, v in data.items() if isinstance(v, dict)]
    return []


class DeviceRegistry:
    """
    In-memory map of transport device ids to DeviceInfo. Injected into the
    ingest and orchestrator components; process-wide lifetime.
    """

    def __init__(
        self,
        devices: list[dict[str, Any]] | None = None,
        *,
        path: Path | str | None = None,
    ) -> None:
        """
        Load devices from an override list, from a JSON file at path, or from
        the packaged default resource when neither is given.
        """
        self._by_id: dict[str, DeviceInfo] = {}

        if devices is not None:
            entries = devices
            source = "override"
        elif path is not None:
            with open(path, "r", encoding="utf-8") as f:
                entries = _entries_from(json.load(f))
            source = str(path)
        else:
            pkg, name = _DEFAULT_RESOURCE.rsplit(".", 1)
            try:
                with resources.files(pkg).joinpath(f"{name}.json").open("r", encoding="utf-8") as f:
                    entries = _entries_from(json.load(f))
            except FileNotFoundError:
                raise FileNotFoundError(f"Device registry resource not found: {pkg}/{name}.json") from None
            source = "default"

        for entry in entries:
            info = _parse_entry(entry)
            if info.device_id in self._by_id:
                raise ValueError(f"Duplicate device in registry: {info.device_id}")
            self._by_id[info.device_id] = info

        logger.debug("DeviceRegistry loaded from %s: %d devices", source, len(self._by_id))

    def lookup(self, device_id: str) -> DeviceInfo:
        """Return DeviceInfo; raise DeviceNotFoundError if not registered."""
        try:
            return self._by_id[device_id]
        except KeyError:
            raise DeviceNotFoundError(device_id) from None

    def get(self, device_id: str) -> DeviceInfo | None:
        return self._by_id.get(device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._by_id

    def __iter__(self) -> Iterator[DeviceInfo]:
        return iter(list(self._by_id.values()))

    def __len__(self) -> int:
        return len(self._by_id)

    @property
    def device_ids(self) -> list[str]:
        return list(self._by_id)
