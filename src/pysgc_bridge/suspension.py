"""
Durable set of devices whose orchestrator polling is suspended.

The file is shared between processes: the long-running bridge and one-shot
CLI invocations (`pysgc command`, `pysgc resume`) use the same path. Reads
pick up changes made by other processes, and every change is a
read-modify-write under an exclusive lock on a sidecar `.lock` file.
"""

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .state import atomic_write_json
from .types import PollSuspension

logger = logging.getLogger(__name__)

# (inode, mtime_ns, size): os.replace gives every rewrite a new inode
_FileSignature = tuple[int, int, int]


def _signature(path: Path) -> _FileSignature | None:
    try:
        st = os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


def _read_suspensions(path: Path) -> dict[str, datetime]:
    """Parse the suspension file. Raises OSError / ValueError on unreadable content."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    entries = data.get("suspended") if isinstance(data, dict) else None
    if entries is None:
        entries = {}
    if not isinstance(entries, dict):
        raise ValueError(f"'suspended' must be an object, got {type(entries).__name__}")
    return {str(device_id): datetime.fromisoformat(ts) for device_id, ts in entries.items()}


class SuspensionStore:
    """
    Suspended device ids with the time they were suspended. With a path the set
    is loaded at construction, refreshed whenever another process rewrites the
    file, and rewritten atomically on every change; without one it lives in
    memory only. The in-memory set is only updated after the file write
    succeeded, so memory and disk never disagree.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._suspended: dict[str, datetime] = {}
        self._signature: _FileSignature | None = None
        if self._path is not None:
            with self._lock:
                self._refresh(self._path, force=True)
            if self._suspended:
                logger.info("Loaded %d suspended devices from %s", len(self._suspended), self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------------------------------------------ file access

    def _refresh(self, path: Path, force: bool = False) -> None:
        """Reload from disk if the file changed since it was last seen. Caller holds self._lock."""
        signature = _signature(path)
        if signature == self._signature and not force:
            return
        if signature is None:
            self._suspended = {}
            self._signature = None
            return
        try:
            self._suspended = _read_suspensions(path)
        except (OSError, ValueError, TypeError) as e:
            logger.error("Suspension file %s unreadable, treating as empty: %s", path, e)
            self._suspended = {}
        self._signature = signature

    @contextmanager
    def _file_lock(self, path: Path) -> Iterator[None]:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path.with_name(path.name + ".lock"), "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _write(self, path: Path, suspended: dict[str, datetime]) -> None:
        """Persist suspended, then adopt it in memory. Caller holds both locks."""
        atomic_write_json(path, {"suspended": {k: v.isoformat() for k, v in suspended.items()}})
        self._suspended = suspended
        self._signature = _signature(path)

    def _current(self) -> dict[str, datetime]:
        if self._path is not None:
            self._refresh(self._path)
        return self._suspended

    # ------------------------------------------------------------------ public API

    def suspend(self, device_id: str, at: datetime | None = None) -> PollSuspension:
        """
        Record (or refresh) a suspension and persist it before returning.
        Raises OSError if the file cannot be written; the set is then unchanged.
        """
        when = at or datetime.now(timezone.utc)
        with self._lock:
            if self._path is None:
                self._suspended[device_id] = when
            else:
                with self._file_lock(self._path):
                    self._refresh(self._path, force=True)
                    self._write(self._path, {**self._suspended, device_id: when})
        return PollSuspension(device_id=device_id, suspended_at=when)

    def clear(self, device_id: str) -> bool:
        """Remove a suspension; returns False if the device was not suspended."""
        with self._lock:
            if self._path is None:
                return self._suspended.pop(device_id, None) is not None
            with self._file_lock(self._path):
                self._refresh(self._path, force=True)
                if device_id not in self._suspended:
                    return False
                remaining = {k: v for k, v in self._suspended.items() if k != device_id}
                self._write(self._path, remaining)
        return True

    def get(self, device_id: str) -> PollSuspension | None:
        with self._lock:
            when = self._current().get(device_id)
        return PollSuspension(device_id, when) if when is not None else None

    def is_suspended(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._current()

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._current()

    def all(self) -> list[PollSuspension]:
        with self._lock:
            return [PollSuspension(k, v) for k, v in sorted(self._current().items())]
