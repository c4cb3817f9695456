"""File-based resumable snapshot of a task graph.

The snapshot is a single YAML file (``graph_snapshot.yaml``) inside the
project's ``.pdca/`` directory.  Reads and writes acquire an exclusive file
lock, and writes go through write-tmp-then-rename so a crash never leaves a
half-written snapshot behind.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import SNAPSHOT_FILE, SNAPSHOT_FORMAT_VERSION, SNAPSHOT_LOCK_FILE
from ..errors import InvariantViolationError
from ..io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from ..utils import _now_iso
from .graph import TaskGraph


class SnapshotStore:
    """Persist and restore one :class:`TaskGraph` snapshot.

    Parameters
    ----------
    state_dir:
        Path to the ``.pdca/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._path = state_dir / SNAPSHOT_FILE
        self._lock = FileLock(state_dir / SNAPSHOT_LOCK_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, graph: TaskGraph, **extra: Any) -> None:
        """Write *graph* (plus optional run metadata) atomically."""
        payload: dict[str, Any] = {
            "format": SNAPSHOT_FORMAT_VERSION,
            "saved_at": _now_iso(),
            "graph": graph.to_dict(),
        }
        if extra:
            payload["run"] = extra
        with self._lock:
            _atomic_write_yaml(self._path, payload)
        logger.debug("Saved graph snapshot v{} to {}", graph.version, self._path)

    def load_raw(self) -> dict[str, Any]:
        with self._lock:
            data, err = _load_data_with_error(self._path, {})
        if err:
            raise InvariantViolationError(f"Unreadable snapshot: {err}")
        return data

    def load(self) -> Optional[TaskGraph]:
        """Return the saved graph, or None when no snapshot exists."""
        if not self.exists():
            return None
        data = self.load_raw()
        fmt = data.get("format")
        if fmt != SNAPSHOT_FORMAT_VERSION:
            raise InvariantViolationError(f"Unsupported snapshot format: {fmt!r}")
        graph = TaskGraph.from_dict(dict(data.get("graph") or {}))
        logger.info("Loaded graph snapshot v{} ({} tasks) from {}", graph.version, len(graph), self._path)
        return graph

    def clear(self) -> bool:
        if not self.exists():
            return False
        with self._lock:
            self._path.unlink(missing_ok=True)
        return True
