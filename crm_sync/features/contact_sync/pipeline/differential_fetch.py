"""
Differential fetch engine.

Decides per conversation whether the message history has to come from the
messaging platform or can be served from the message cache, then trims the
result to messages newer than the contact's last sync. Messages without a
timestamp are always kept; their recency is unknown.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from crm_sync.features.contact_sync.cache import MessageCache
from crm_sync.features.contact_sync.clients.messaging_client import parse_graph_timestamp
from crm_sync.features.contact_sync.domain import CachedMessage, DifferentialFetchResult, Platform
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LastSyncLookup = Callable[[str, str, Platform], Awaitable[datetime | None]]


class MessageSource(Protocol):
    async def get_all_messages(self, conversation_id: str) -> list[dict[str, Any]]: ...


def normalize_messages(raw_messages: list[dict[str, Any]]) -> list[CachedMessage]:
    """
    Convert raw platform messages (newest first) into oldest-first tuples.

    Entries with empty text are dropped. The sender resolves to name, then
    username, then id, then "Unknown".
    """
    normalized: list[CachedMessage] = []
    for raw in raw_messages:
        text = (raw.get("message") or "").strip()
        if not text:
            continue

        sender_info = raw.get("from") or {}
        sender = (
            sender_info.get("name")
            or sender_info.get("username")
            or sender_info.get("id")
            or "Unknown"
        )
        normalized.append(
            CachedMessage(
                sender=str(sender),
                text=text,
                timestamp=parse_graph_timestamp(raw.get("created_time")),
            )
        )

    normalized.reverse()
    return normalized


def newest_timestamp(messages: list[CachedMessage]) -> datetime | None:
    stamps = [m.timestamp for m in messages if m.timestamp is not None]
    return max(stamps) if stamps else None


def filter_since(messages: list[CachedMessage], last_sync_at: datetime | None) -> list[CachedMessage]:
    if last_sync_at is None:
        return list(messages)
    if last_sync_at.tzinfo is None:
        last_sync_at = last_sync_at.replace(tzinfo=UTC)
    return [m for m in messages if m.timestamp is None or m.timestamp > last_sync_at]


class DifferentialFetchEngine:
    def __init__(self, cache: MessageCache, last_sync_lookup: LastSyncLookup):
        self.cache = cache
        self._last_sync_lookup = last_sync_lookup

    async def fetch(
        self,
        client: MessageSource,
        conversation_id: str,
        participant_id: str,
        facebook_page_id: str,
        platform: Platform,
    ) -> DifferentialFetchResult:
        """
        Return the messages not yet ingested for one conversation.

        Raises whatever the client raises on a platform fetch; token expiry
        in particular must reach the streaming processor untouched.
        """
        cached_messages = self.cache.get(conversation_id)
        if cached_messages is not None:
            last_sync_at = await self._last_sync_lookup(participant_id, facebook_page_id, platform)
            messages = filter_since(cached_messages, last_sync_at)
            logger.debug(
                "Messages served from cache",
                conversation_id=conversation_id,
                cached_count=len(cached_messages),
                new_count=len(messages),
            )
            return DifferentialFetchResult(
                messages=messages,
                is_full_sync=False,
                cached=True,
                last_sync_at=last_sync_at,
                history=cached_messages,
            )

        raw_messages = await client.get_all_messages(conversation_id)
        if not raw_messages:
            return DifferentialFetchResult(messages=[], is_full_sync=True, cached=False)

        normalized = normalize_messages(raw_messages)
        self.cache.put(conversation_id, normalized, last_message_at=newest_timestamp(normalized))

        last_sync_at = await self._last_sync_lookup(participant_id, facebook_page_id, platform)
        messages = filter_since(normalized, last_sync_at)

        logger.debug(
            "Messages fetched from platform",
            conversation_id=conversation_id,
            fetched_count=len(normalized),
            new_count=len(messages),
            incremental=last_sync_at is not None,
        )
        return DifferentialFetchResult(
            messages=messages,
            is_full_sync=last_sync_at is None,
            cached=False,
            last_sync_at=last_sync_at,
            history=normalized,
        )
