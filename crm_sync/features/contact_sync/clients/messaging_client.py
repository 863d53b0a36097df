"""
Facebook Graph API client for Messenger and Instagram conversations.

Pure API client: pagination, retry/backoff and error mapping live here,
everything the pipeline needs is returned as domain models. One instance is
created per sync job from the page's access token and closed when the job
finishes.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import httpx

from crm_sync.config import settings
from crm_sync.features.contact_sync.domain import ConversationDescriptor, Participant
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

CONVERSATION_PAGE_SIZE = 100
MESSAGE_PAGE_SIZE = 100
CONVERSATION_FIELDS = "participants,updated_time"
MESSAGE_FIELDS = "message,from,created_time"

# Graph error codes: 190 invalid/expired OAuth token, 102 session expired.
TOKEN_EXPIRED_CODES = {190, 102}
# Application/user/page level throttling.
RATE_LIMIT_CODES = {4, 17, 32, 613}


class MessagingApiError(Exception):
    """Raised for Graph API failures; `is_token_expired` is fatal for a sync."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        status_code: int | None = None,
        is_token_expired: bool = False,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.is_token_expired = is_token_expired
        self.response_data = response_data or {}


def parse_graph_timestamp(value: str | None) -> datetime | None:
    """Parse Graph timestamps such as 2024-05-01T10:15:00+0000."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable Graph timestamp", value=value)
            return None


class MessagingPlatformClient:
    """
    Client for the Graph API conversation endpoints.

    Usage:
        async with MessagingPlatformClient(token) as client:
            async for conversation in client.iter_messenger_conversations(page_id):
                messages = await client.get_all_messages(conversation.id)
    """

    def __init__(
        self,
        access_token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
    ):
        if not access_token:
            raise MessagingApiError("Page access token is missing", is_token_expired=True)

        self._access_token = access_token
        self._base_url = (base_url or settings.graph_api_url()).rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.GRAPH_REQUEST_TIMEOUT_SECONDS
        )
        self._backoff_factor = backoff_factor

    async def __aenter__(self) -> "MessagingPlatformClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def iter_messenger_conversations(self, page_id: str) -> AsyncIterator[ConversationDescriptor]:
        """Lazily page through Messenger conversations of a page."""
        return self._iter_conversations(page_id, platform=None)

    def iter_instagram_conversations(
        self, instagram_account_id: str
    ) -> AsyncIterator[ConversationDescriptor]:
        """Lazily page through Instagram Direct conversations of an account."""
        return self._iter_conversations(instagram_account_id, platform="instagram")

    async def get_all_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        """
        Fetch every message of a conversation, newest first (Graph order).

        Returns raw message dicts: {"message", "from": {...}, "created_time"}.
        """
        messages: list[dict[str, Any]] = []
        url = f"{self._base_url}/{conversation_id}/messages"
        params: dict[str, Any] | None = {"fields": MESSAGE_FIELDS, "limit": MESSAGE_PAGE_SIZE}

        while url:
            data = await self._get(url, params, operation="get_messages")
            messages.extend(data.get("data", []))
            url = data.get("paging", {}).get("next")
            params = None  # `next` already carries the cursor and fields

        logger.debug(
            "Conversation messages fetched",
            conversation_id=conversation_id,
            message_count=len(messages),
        )
        return messages

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _iter_conversations(
        self, account_id: str, platform: str | None
    ) -> AsyncIterator[ConversationDescriptor]:
        url = f"{self._base_url}/{account_id}/conversations"
        params: dict[str, Any] | None = {
            "fields": CONVERSATION_FIELDS,
            "limit": CONVERSATION_PAGE_SIZE,
        }
        if platform:
            params["platform"] = platform

        page_number = 0
        while url:
            data = await self._get(url, params, operation="list_conversations")
            page_number += 1
            logger.debug(
                "Conversation page fetched",
                account_id=account_id,
                platform=platform or "messenger",
                page=page_number,
                count=len(data.get("data", [])),
            )
            for raw in data.get("data", []):
                yield self._to_descriptor(raw)
            url = data.get("paging", {}).get("next")
            params = None

    @staticmethod
    def _to_descriptor(raw: dict[str, Any]) -> ConversationDescriptor:
        participants = [
            Participant(id=str(p["id"]), name=p.get("name"), username=p.get("username"))
            for p in raw.get("participants", {}).get("data", [])
            if p.get("id")
        ]
        return ConversationDescriptor(
            id=str(raw["id"]),
            participants=participants,
            updated_time=parse_graph_timestamp(raw.get("updated_time")),
        )

    async def _get(self, url: str, params: dict | None, operation: str) -> dict[str, Any]:
        query = dict(params or {})
        if "access_token=" not in url:
            query["access_token"] = self._access_token

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, params=query)
            except httpx.RequestError as exc:
                if attempt == MAX_RETRIES:
                    raise MessagingApiError(
                        f"Graph API {operation} request failed: {exc}"
                    ) from exc
                await self._backoff(operation, attempt, error=str(exc))
                continue

            if response.is_success:
                try:
                    return response.json()
                except ValueError as e:
                    raise MessagingApiError(f"Invalid Graph API response: {e}") from e

            error = self._to_error(response, operation)
            retryable = (
                response.status_code in RETRY_STATUS_CODES or error.code in RATE_LIMIT_CODES
            ) and not error.is_token_expired
            if retryable and attempt < MAX_RETRIES:
                await self._backoff(operation, attempt, status_code=response.status_code)
                continue
            raise error

        raise MessagingApiError(f"Graph API {operation} failed: retries exhausted")

    async def _backoff(self, operation: str, attempt: int, **context) -> None:
        wait_time = self._backoff_factor**attempt
        logger.warning(
            "Graph API transient failure, retrying",
            operation=operation,
            attempt=attempt,
            wait_time=wait_time,
            **context,
        )
        await asyncio.sleep(wait_time)

    @staticmethod
    def _to_error(response: httpx.Response, operation: str) -> MessagingApiError:
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        error_info = payload.get("error", {}) if isinstance(payload, dict) else {}
        code = error_info.get("code")
        message = error_info.get("message") or f"Graph API error (HTTP {response.status_code})"
        token_expired = code in TOKEN_EXPIRED_CODES or response.status_code == 401

        logger.error(
            f"Graph API {operation} failed",
            status_code=response.status_code,
            error_code=code,
            error_subcode=error_info.get("error_subcode"),
            token_expired=token_expired,
        )

        return MessagingApiError(
            message,
            code=code,
            status_code=response.status_code,
            is_token_expired=token_expired,
            response_data=payload if isinstance(payload, dict) else {},
        )
