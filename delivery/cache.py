"""
Label cache for the delivery engine.

Handles map to the label list last served for them. Entries live in memory
and are mirrored to a per-tab session store so a reload paints cached labels
without a network round trip. Every entry carries its own timestamp and
expires after ``ttl_seconds``.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import json
import logging
import time

from settings import LABEL_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

STORAGE_KEY = "dhd_bundle_labels_cache"
STORAGE_FORMAT_VERSION = 2


class SessionStore(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...


class MemorySessionStore:
    """Dict-backed session store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class LabelCache:
    def __init__(
        self,
        store: Optional[SessionStore] = None,
        ttl_seconds: float = LABEL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        storage_key: str = STORAGE_KEY,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.storage_key = storage_key
        self._entries: Dict[str, Tuple[List[Dict[str, Any]], float]] = {}

    def _expired(self, stored_at: float) -> bool:
        return self.clock() - stored_at >= self.ttl_seconds

    def has(self, handle: str) -> bool:
        entry = self._entries.get(handle)
        if entry is None:
            return False
        if self._expired(entry[1]):
            del self._entries[handle]
            return False
        return True

    __contains__ = has

    def get(self, handle: str) -> Optional[List[Dict[str, Any]]]:
        if not self.has(handle):
            return None
        return self._entries[handle][0]

    def set(self, handle: str, labels: List[Dict[str, Any]]) -> None:
        self._entries[handle] = (list(labels or []), self.clock())

    def __len__(self) -> int:
        return sum(1 for handle in list(self._entries) if self.has(handle))

    def load(self) -> int:
        """Hydrate from the session store, dropping expired entries. Returns entries loaded."""
        if self.store is None:
            return 0
        try:
            raw = self.store.get_item(self.storage_key)
        except Exception as e:
            logger.debug(f"Label cache read failed: {e}")
            return 0
        if not raw:
            return 0

        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            self._remove_stored()
            return 0

        entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(entries, dict):
            self._remove_stored()
            return 0

        loaded = 0
        for handle, record in entries.items():
            if not isinstance(record, dict):
                continue
            labels = record.get("labels")
            stored_at = record.get("storedAt")
            if not isinstance(labels, list) or not isinstance(stored_at, (int, float)):
                continue
            if self._expired(stored_at):
                continue
            self._entries[handle] = (labels, float(stored_at))
            loaded += 1
        return loaded

    def persist(self) -> None:
        if self.store is None:
            return
        live = {
            handle: {"labels": labels, "storedAt": stored_at}
            for handle, (labels, stored_at) in self._entries.items()
            if not self._expired(stored_at)
        }
        payload = {"version": STORAGE_FORMAT_VERSION, "entries": live}
        try:
            self.store.set_item(self.storage_key, json.dumps(payload))
        except Exception as e:
            # quota exceeded or storage disabled
            logger.debug(f"Label cache write failed: {e}")

    def _remove_stored(self) -> None:
        try:
            self.store.remove_item(self.storage_key)
        except Exception as e:
            logger.debug(f"Label cache cleanup failed: {e}")
