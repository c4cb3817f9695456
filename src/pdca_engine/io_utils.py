"""File helpers for snapshots, plans and configuration.

Everything persisted by the engine is a mapping stored as YAML (or JSON for
plan files).  Writers go through a temp file in the same directory followed
by ``os.replace``; readers report problems instead of raising so callers can
decide whether a broken file is fatal.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

_YAML_SUFFIXES = {".yaml", ".yml"}


if os.name == "nt":
    import msvcrt

    def _acquire(handle: IO[str]) -> None:
        handle.seek(0)
        handle.truncate(WINDOWS_LOCK_BYTES)
        handle.flush()
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)

    def _release(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)

else:
    import fcntl

    def _acquire(handle: IO[str]) -> None:
        fcntl.flock(handle, fcntl.LOCK_EX)

    def _release(handle: IO[str]) -> None:
        fcntl.flock(handle, fcntl.LOCK_UN)


class FileLock:
    """Exclusive advisory lock held on a sidecar file.

    Usage::

        with FileLock(state_dir / "graph_snapshot.lock"):
            ...
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._handle: Optional[IO[str]] = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            _acquire(handle)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _release(handle)
        finally:
            handle.close()


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to *path* via write-tmp-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _parse(path: Path, text: str) -> Any:
    if path.suffix in _YAML_SUFFIXES:
        return yaml.safe_load(text)
    return json.loads(text)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """Load a YAML or JSON mapping and return ``(data, error_message)``.

    A missing or empty file yields *default* with no error.
    """
    if not path.exists():
        return default, None
    try:
        data = _parse(path, path.read_text(encoding="utf-8"))
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"

    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None
