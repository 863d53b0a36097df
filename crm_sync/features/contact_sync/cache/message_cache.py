"""
Process-local message cache.

Keeps the normalized messages of recently fetched conversations so a
second pass over the same conversation (retry, re-sync shortly after) can
skip the platform round trip. Entries expire after `ttl_seconds`; when the
cache is full the least recently used entry is evicted. A miss is always
safe: callers fall back to a full fetch.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from crm_sync.features.contact_sync.domain import CachedMessage

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_MAX_ENTRIES = 10_000


@dataclass(slots=True)
class CacheEntry:
    conversation_id: str
    messages: list[CachedMessage]
    cached_at: float
    last_message_at: datetime | None


class MessageCache:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, conversation_id: str) -> CacheEntry | None:
        entry = self._entries.get(conversation_id)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() - entry.cached_at > self.ttl_seconds:
            del self._entries[conversation_id]
            self._misses += 1
            return None

        self._entries.move_to_end(conversation_id)
        self._hits += 1
        return entry

    def get(self, conversation_id: str) -> list[CachedMessage] | None:
        """Cached messages (oldest first) or None on miss/expiry."""
        entry = self.get_entry(conversation_id)
        return list(entry.messages) if entry else None

    def put(
        self,
        conversation_id: str,
        messages: list[CachedMessage],
        last_message_at: datetime | None = None,
    ) -> None:
        if conversation_id in self._entries:
            del self._entries[conversation_id]
        elif len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)

        self._entries[conversation_id] = CacheEntry(
            conversation_id=conversation_id,
            messages=list(messages),
            cached_at=self._clock(),
            last_message_at=last_message_at,
        )

    def invalidate(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else None,
        }
