"""Tests for the unified state store and file sinks."""

import json
from datetime import datetime, timezone
from pathlib import Path

from pysgc_bridge.state import HistoryLogSink, StateFileSink, UnifiedStateStore
from pysgc_bridge.types import DeviceUpdate

TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_merge_last_write_wins() -> None:
    store = UnifiedStateStore()
    store.merge("Gen1", {"rpm": 1500, "running": True})
    merged = store.merge("Gen1", {"rpm": 0})
    assert merged == {"rpm": 0, "running": True}
    assert store.get("Gen1") == merged


def test_merge_returns_copy() -> None:
    store = UnifiedStateStore()
    merged = store.merge("Gen1", {"rpm": 1500})
    merged["rpm"] = 1
    assert store.get("Gen1") == {"rpm": 1500}


def test_devices_are_independent() -> None:
    store = UnifiedStateStore({"Gen1": {"alarmCode": 0}})
    store.merge("Gen2", {"alarmCode": 5})
    assert store.snapshot() == {"Gen1": {"alarmCode": 0}, "Gen2": {"alarmCode": 5}}
    assert "Gen2" in store
    assert store.get("Gen3") == {}


def test_state_file_sink(tmp_path: Path) -> None:
    path = tmp_path / "state" / "generators_state.json"
    sink = StateFileSink(path)
    sink.deliver(DeviceUpdate("Gen1", TS, {"rpm": 1500}), {"rpm": 1500, "alarmCode": 0})
    sink.deliver(DeviceUpdate("Gen2", TS, {"rpm": 0}), {"rpm": 0})

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert doc["Gen1"]["fields"] == {"rpm": 1500, "alarmCode": 0}
    assert doc["Gen2"]["timestamp"] == TS.isoformat()

    # existing document is kept on restart
    StateFileSink(path).deliver(DeviceUpdate("Gen3", TS, {"rpm": 1}), {"rpm": 1})
    assert set(json.loads(path.read_text(encoding="utf-8"))) == {"Gen1", "Gen2", "Gen3"}


def test_history_log_sink(tmp_path: Path) -> None:
    path = tmp_path / "history.jsonl"
    sink = HistoryLogSink(path)
    sink.deliver(DeviceUpdate("Gen1", TS, {"rpm": 1500}), {"rpm": 1500})
    sink.deliver(DeviceUpdate("Gen1", TS, {"rpm": 0}), {"rpm": 0})
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1]) == {"deviceId": "Gen1", "timestamp": TS.isoformat(), "fields": {"rpm": 0}}
