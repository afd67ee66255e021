"""Tests for the durable suspension store."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pysgc_bridge.suspension import SuspensionStore


def test_in_memory_suspend_and_clear() -> None:
    store = SuspensionStore()
    assert store.is_suspended("Gen1") is False
    s = store.suspend("Gen1")
    assert s.device_id == "Gen1"
    assert "Gen1" in store
    assert store.clear("Gen1") is True
    assert store.clear("Gen1") is False
    assert store.get("Gen1") is None


def test_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "state" / "suspended.json"
    at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    SuspensionStore(path).suspend("Ciklo1", at=at)

    reloaded = SuspensionStore(path)
    assert reloaded.is_suspended("Ciklo1")
    assert reloaded.get("Ciklo1").suspended_at == at  # type: ignore[union-attr]

    reloaded.clear("Ciklo1")
    assert SuspensionStore(path).all() == []


def test_file_format(tmp_path: Path) -> None:
    path = tmp_path / "suspended.json"
    store = SuspensionStore(path)
    store.suspend("B", at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    store.suspend("A", at=datetime(2024, 1, 2, tzinfo=timezone.utc))
    doc = json.loads(path.read_text(encoding="utf-8"))
    assert set(doc["suspended"]) == {"A", "B"}
    assert [s.device_id for s in store.all()] == ["A", "B"]
    assert not (tmp_path / "suspended.json.tmp").exists()


def test_corrupt_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "suspended.json"
    path.write_text("{not json", encoding="utf-8")
    store = SuspensionStore(path)
    assert store.all() == []
    store.suspend("Gen1")
    assert SuspensionStore(path).is_suspended("Gen1")


def test_two_stores_on_one_path_see_each_other(tmp_path: Path) -> None:
    path = tmp_path / "suspended.json"
    bridge = SuspensionStore(path)
    cli = SuspensionStore(path)

    cli.suspend("Ciklo1")
    assert bridge.is_suspended("Ciklo1")
    assert "Ciklo1" in bridge

    bridge.suspend("Ciklo0")
    assert [s.device_id for s in cli.all()] == ["Ciklo0", "Ciklo1"]
    assert [s.device_id for s in SuspensionStore(path).all()] == ["Ciklo0", "Ciklo1"]

    assert cli.clear("Ciklo1") is True
    assert bridge.is_suspended("Ciklo1") is False
    assert bridge.clear("Ciklo1") is False
    assert [s.device_id for s in bridge.all()] == ["Ciklo0"]


def test_file_removed_by_other_process(tmp_path: Path) -> None:
    path = tmp_path / "suspended.json"
    store = SuspensionStore(path)
    store.suspend("Gen1")
    path.unlink()
    assert store.all() == []


def test_failed_write_leaves_set_unchanged(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = SuspensionStore(blocker / "suspended.json")
    with pytest.raises(OSError):
        store.suspend("Gen1")
    assert store.is_suspended("Gen1") is False
    assert store.all() == []


def test_lock_file_beside_state_file(tmp_path: Path) -> None:
    path = tmp_path / "state" / "suspended.json"
    SuspensionStore(path).suspend("Gen1")
    assert (tmp_path / "state" / "suspended.json.lock").exists()
