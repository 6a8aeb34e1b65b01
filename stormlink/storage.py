"""
Durable key/value storage for client-side state.

Values are plain msgpack-serializable structures. The file store keeps one
file per key inside a data directory.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import msgpack

from .logging_config import get_logger

logger = get_logger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """Minimal key/value store interface used by the registry."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKeyValueStore:
    """In-memory store, mainly for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore:
    """
    File-backed store.

    Writes go to a temporary file first and are moved into place, so a
    crash mid-write leaves the previous value intact.
    """

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.data_dir / f"{_SAFE_KEY.sub('_', key)}.msgpack"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            logger.warning(f"Could not read stored value for {key}: {e}")
            return None

    def set(self, key: str, value: bytes) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_bytes(value)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Could not persist value for {key}: {e}")

    def delete(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            pass


def pack(value: Any) -> bytes:
    return msgpack.packb(value, use_bin_type=True)


def unpack(data: bytes) -> Any:
    return msgpack.unpackb(data, raw=False)
