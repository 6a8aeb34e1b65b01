"""
Bounded, persistent connection history.

Entries are kept oldest first. The whole list is stored as one msgpack
document under a fixed key, loaded once when the history is created.
"""

from typing import List, Optional

from msgpack.exceptions import UnpackException
from pydantic import ValidationError

from ..logging_config import get_logger
from ..models import HISTORY_SCHEMA_VERSION, ConnectionHistoryEntry, HistoryDocument
from ..storage import KeyValueStore, MemoryKeyValueStore, pack, unpack

logger = get_logger(__name__)

DEFAULT_HISTORY_KEY = "connectionHistory"
DEFAULT_HISTORY_LIMIT = 100


class ConnectionHistory:
    """Append-only log of finished connections, capped at ``limit`` entries."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        key: str = DEFAULT_HISTORY_KEY,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._store = store if store is not None else MemoryKeyValueStore()
        self.key = key
        self.limit = limit
        self._entries: List[ConnectionHistoryEntry] = self._load()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[ConnectionHistoryEntry]:
        """Detached copies of the entries, oldest first."""
        return [entry.model_copy(deep=True) for entry in self._entries]

    def append(self, entry: ConnectionHistoryEntry) -> None:
        self._entries.append(entry)
        overflow = len(self._entries) - self.limit
        if overflow > 0:
            del self._entries[:overflow]
        self._save()

    def since(self, timestamp: float) -> List[ConnectionHistoryEntry]:
        return [entry for entry in self._entries if entry.connected_at >= timestamp]

    def clear(self) -> None:
        self._entries.clear()
        self._save()

    def _load(self) -> List[ConnectionHistoryEntry]:
        data = self._store.get(self.key)
        if data is None:
            return []

        try:
            document = HistoryDocument.model_validate(unpack(data))
        except (ValidationError, UnpackException, ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable connection history: {e}")
            return []

        if document.schema_version > HISTORY_SCHEMA_VERSION:
            logger.info(
                f"Connection history written by schema v{document.schema_version}, "
                f"reading as v{HISTORY_SCHEMA_VERSION}"
            )

        entries = document.entries[-self.limit:]
        logger.info(f"Loaded {len(entries)} connection history entries")
        return entries

    def _save(self) -> None:
        document = HistoryDocument(entries=self._entries)
        self._store.set(self.key, pack(document.model_dump(mode="json")))
