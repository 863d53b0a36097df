"""
Streaming processor.

Pulls conversations lazily from the messaging client and runs each one
through differential fetch, scoring and stage assignment under a bounded
number of concurrent tasks. Finished contacts go through a single
lock-guarded aggregator and are persisted in batches.

Failure policy:
    - a conversation that fails is recorded with its participant id and the
      stream continues
    - token expiry (from the stream or any fetch) stops the stream for this
      platform and cancels in-flight conversations; a task already writing
      a flushed batch is left to finish, and whatever was aggregated is
      flushed
    - other platform errors while listing conversations end the stream and
      are reported as `fatal_error`
    - once the job is cancelled nothing further is persisted
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from crm_sync.features.contact_sync.clients import MessagingApiError, ScoringServiceError
from crm_sync.features.contact_sync.clients.scoring_client import LeadScorer
from crm_sync.features.contact_sync.domain import (
    CachedMessage,
    ContactBatch,
    ConversationDescriptor,
    Participant,
    Platform,
    ProcessedContact,
    StreamResult,
)
from crm_sync.features.contact_sync.pipeline.aggregator import DEFAULT_BATCH_SIZE, ContactAggregator
from crm_sync.features.contact_sync.pipeline.batch_operations import (
    DEFAULT_CHUNK_SIZE,
    BatchUpsertEngine,
)
from crm_sync.features.contact_sync.pipeline.differential_fetch import (
    DifferentialFetchEngine,
    MessageSource,
    newest_timestamp,
)
from crm_sync.features.contact_sync.pipeline.stage_assigner import PipelineStageAssigner
from crm_sync.features.contact_sync.repository import ContactStore
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENT = 30

ProgressCallback = Callable[[int, int], Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]

FALLBACK_NAME_PREFIX: dict[str, str] = {"messenger": "User", "instagram": "IG User"}


@dataclass(slots=True)
class StreamingProcessorOptions:
    facebook_page_id: str
    organization_id: str
    # Platform ids of the business side of every conversation
    own_account_ids: frozenset[str] = field(default_factory=frozenset)
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    batch_size: int = DEFAULT_BATCH_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE


def split_name(full_name: str) -> tuple[str, str | None]:
    parts = full_name.strip().split(" ", 1)
    first = parts[0]
    last = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None
    return first, last


class StreamingProcessor:
    def __init__(
        self,
        options: StreamingProcessorOptions,
        fetch_engine: DifferentialFetchEngine,
        upsert_engine: BatchUpsertEngine,
        contact_store: ContactStore,
        scorer: LeadScorer,
        stage_assigner: PipelineStageAssigner | None = None,
    ):
        if options.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.options = options
        self.fetch_engine = fetch_engine
        self.upsert_engine = upsert_engine
        self.contact_store = contact_store
        self.scorer = scorer
        self.stage_assigner = stage_assigner

    async def process_stream(
        self,
        client: MessageSource,
        conversations: AsyncIterator[ConversationDescriptor],
        platform: Platform,
        on_progress: ProgressCallback | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> StreamResult:
        run = _StreamRun(self, client, platform, on_progress, is_cancelled)
        return await run.execute(conversations)

    async def process_conversation(
        self,
        client: MessageSource,
        conversation: ConversationDescriptor,
        platform: Platform,
    ) -> ProcessedContact | None:
        """
        Turn one conversation into a contact record.

        Returns None when there is nothing to write (no counterpart, or an
        existing contact without new messages).
        """
        participant = self.pick_participant(conversation)
        if participant is None:
            logger.debug("Conversation without counterpart skipped", conversation_id=conversation.id)
            return None

        page_id = self.options.facebook_page_id
        existing = await self.contact_store.find_existing(participant.id, page_id)
        fetched = await self.fetch_engine.fetch(client, conversation.id, participant.id, page_id, platform)

        if not fetched.messages and existing is not None:
            return None

        history = fetched.history or fetched.messages
        classification = None
        if fetched.messages:
            stages = self.stage_assigner.pipeline.stages if self.stage_assigner else None
            try:
                classification = await self.scorer.classify(history, stages)
            except ScoringServiceError as e:
                logger.warning("Lead scoring failed", participant_id=participant.id, error=str(e))

        stage = None
        if self.stage_assigner and classification:
            stage = self.stage_assigner.assign(classification.lead_score, existing)

        first_name, last_name = split_name(
            self._display_name(participant, conversation, history, platform)
        )
        last_interaction = (
            newest_timestamp(history) or conversation.updated_time or datetime.now(UTC)
        )

        return ProcessedContact(
            participant_id=participant.id,
            conversation_id=conversation.id,
            platform=platform,
            first_name=first_name,
            last_name=last_name,
            last_interaction=last_interaction,
            classification=classification,
            stage=stage,
            existing_contact_id=existing.id if existing else None,
            existing_stage_id=existing.stage_id if existing else None,
        )

    def pick_participant(self, conversation: ConversationDescriptor) -> Participant | None:
        for participant in conversation.participants:
            if participant.id not in self.options.own_account_ids:
                return participant
        return None

    def _display_name(
        self,
        participant: Participant,
        conversation: ConversationDescriptor,
        history: list[CachedMessage],
        platform: Platform,
    ) -> str:
        if participant.name:
            return participant.name
        if participant.username:
            return participant.username

        # Senders that belong to the business side of the conversation
        own_senders = {"Unknown", participant.id, *self.options.own_account_ids}
        own_senders.update(
            p.name or p.username or p.id
            for p in conversation.participants
            if p.id in self.options.own_account_ids
        )
        for message in history:
            if message.sender not in own_senders:
                return message.sender

        prefix = FALLBACK_NAME_PREFIX.get(platform, "User")
        return f"{prefix} {participant.id[-6:]}"


class _StreamRun:
    """State of one process_stream call."""

    def __init__(
        self,
        processor: StreamingProcessor,
        client: MessageSource,
        platform: Platform,
        on_progress: ProgressCallback | None,
        is_cancelled: CancelCheck | None,
    ):
        options = processor.options
        self.processor = processor
        self.client = client
        self.platform = platform
        self.on_progress = on_progress
        self.is_cancelled = is_cancelled
        self.result = StreamResult()
        self.aggregator = ContactAggregator(
            options.facebook_page_id, options.organization_id, options.batch_size
        )
        self.lock = asyncio.Lock()
        self.stop = asyncio.Event()
        self.semaphore = asyncio.Semaphore(options.max_concurrent)
        self.in_flight: set[asyncio.Task] = set()
        # Tasks writing a flushed batch; token expiry never cancels these
        self.persisting: set[asyncio.Task] = set()
        self.seen = 0

    async def execute(self, conversations: AsyncIterator[ConversationDescriptor]) -> StreamResult:
        iterator = aiter(conversations)
        try:
            await self._drain_stream(iterator)
        except BaseException:
            for task in self.in_flight:
                task.cancel()
            raise
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.result.token_expired:
            for task in self.in_flight - self.persisting:
                task.cancel()
        if self.in_flight:
            await asyncio.gather(*self.in_flight, return_exceptions=True)

        async with self.lock:
            remaining = None if self.result.cancelled else self.aggregator.flush_all()
        if remaining is not None:
            await self._persist(remaining)

        logger.info(
            "Conversation stream processed",
            platform=self.platform,
            processed=self.result.processed_count,
            synced=self.result.success_count,
            failed=self.result.failed_count,
            skipped=self.result.skipped_count,
            token_expired=self.result.token_expired,
            cancelled=self.result.cancelled,
        )
        return self.result

    async def _drain_stream(self, iterator: AsyncIterator[ConversationDescriptor]) -> None:
        while not self.stop.is_set():
            await self.semaphore.acquire()
            if self.stop.is_set():
                self.semaphore.release()
                return

            try:
                conversation = await anext(iterator)
            except StopAsyncIteration:
                self.semaphore.release()
                return
            except MessagingApiError as e:
                self.semaphore.release()
                self._record_stream_error(e)
                return

            if self.stop.is_set():
                self.semaphore.release()
                return

            self.seen += 1
            task = asyncio.create_task(self._run_conversation(conversation))
            self.in_flight.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self.in_flight.discard(task)
        self.persisting.discard(task)
        self.semaphore.release()

    def _record_stream_error(self, error: MessagingApiError) -> None:
        if error.is_token_expired:
            self._mark_token_expired(error)
            return
        logger.error(
            "Conversation stream failed",
            platform=self.platform,
            error=str(error),
            error_code=error.code,
        )
        self.result.fatal_error = str(error)
        self.result.fatal_error_code = error.code
        self.stop.set()

    def _mark_token_expired(self, error: MessagingApiError) -> None:
        if not self.result.token_expired:
            logger.warning(
                "Page access token expired, aborting platform stream",
                platform=self.platform,
                error_code=error.code,
            )
        self.result.token_expired = True
        self.result.fatal_error_code = error.code
        self.stop.set()

    async def _run_conversation(self, conversation: ConversationDescriptor) -> None:
        try:
            contact = await self.processor.process_conversation(
                self.client, conversation, self.platform
            )
        except MessagingApiError as e:
            if e.is_token_expired:
                self._mark_token_expired(e)
                return
            await self._record_item_failure(conversation, e)
        except Exception as e:
            await self._record_item_failure(conversation, e)
        else:
            await self._submit(contact)

        await self._report_progress()

    async def _submit(self, contact: ProcessedContact | None) -> None:
        batches: list[ContactBatch] = []
        async with self.lock:
            self.result.processed_count += 1
            if contact is None:
                self.result.skipped_count += 1
                return
            self.aggregator.add(contact)
            while self.aggregator.is_ready():
                batches.append(self.aggregator.flush())
            if batches:
                self.persisting.add(asyncio.current_task())

        for batch in batches:
            await self._persist(batch)

    async def _record_item_failure(self, conversation: ConversationDescriptor, error: Exception) -> None:
        participant = self.processor.pick_participant(conversation)
        participant_id = participant.id if participant else conversation.id
        logger.warning(
            "Conversation processing failed",
            platform=self.platform,
            conversation_id=conversation.id,
            participant_id=participant_id,
            error=str(error),
        )
        async with self.lock:
            self.result.processed_count += 1
            self.result.failed_count += 1
            self.result.errors.append({"participant_id": participant_id, "error": str(error)})

    async def _report_progress(self) -> None:
        if self.on_progress is None or self.stop.is_set():
            return
        await self.on_progress(self.result.processed_count, self.seen)

    async def _persist(self, batch: ContactBatch) -> None:
        if self.is_cancelled is not None and await self.is_cancelled():
            async with self.lock:
                if not self.result.cancelled:
                    logger.info("Job cancelled, discarding pending contacts", platform=self.platform)
                self.result.cancelled = True
                self.aggregator.clear()
            self.stop.set()
            return

        try:
            outcome = await self.processor.upsert_engine.batch_upsert(
                batch.contacts, self.processor.options.chunk_size
            )
        except Exception as e:
            logger.error("Contact batch write failed", batch_size=len(batch.contacts), error=str(e))
            async with self.lock:
                self.result.failed_count += len(batch.contacts)
                self.result.errors.extend(
                    {"participant_id": c.participant_id, "error": str(e)} for c in batch.contacts
                )
            return

        participant_by_contact = {
            c.existing_contact_id: c.participant_id for c in batch.contacts if c.existing_contact_id
        }
        async with self.lock:
            self.result.success_count += outcome.success_count
            self.result.failed_count += outcome.failure_count
            for error in outcome.errors:
                participant_id = participant_by_contact.get(error["contact_id"], error["contact_id"])
                self.result.errors.append({"participant_id": participant_id, "error": error["error"]})
