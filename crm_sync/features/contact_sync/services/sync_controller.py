"""
Sync job controller.

Top-level entry point of the contact sync. Owns the job state machine
(PENDING -> IN_PROGRESS -> COMPLETED | FAILED | CANCELLED), builds the
per-job collaborators (messaging client, processor, progress tracker) and
writes the terminal record exactly once.
"""

from collections.abc import Callable
from typing import Any

from crm_sync.config import settings
from crm_sync.features.contact_sync.cache import MessageCache
from crm_sync.features.contact_sync.clients import (
    LeadScorer,
    LeadScoringService,
    MessagingApiError,
    MessagingPlatformClient,
)
from crm_sync.features.contact_sync.domain import (
    PLATFORM_LABELS,
    PageConfig,
    Platform,
    StartSyncResult,
    StreamResult,
    SyncError,
    SyncJob,
    SyncOutcome,
)
from crm_sync.features.contact_sync.pipeline import (
    BatchUpsertEngine,
    DifferentialFetchEngine,
    PipelineStageAssigner,
    ProgressTracker,
    StreamingProcessor,
    StreamingProcessorOptions,
    ensure_stage_score_ranges,
)
from crm_sync.features.contact_sync.repository import (
    ContactRepository,
    PageRepository,
    SyncJobRepository,
)
from crm_sync.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
)

logger = get_logger(__name__)

ClientFactory = Callable[[str], MessagingPlatformClient]


class SyncJobNotFoundError(LookupError):
    """Raised when a queued job id has no record."""


class SyncControllerError(Exception):
    """Raised for job-level failures the controller detects itself."""


class _ProgressReporter:
    """
    Progress callback for one platform stream.

    Live `synced_contacts` is the number of conversations handled so far and
    is corrected with real write counts when the platform finishes.
    `total_contacts` is only sent every `total_step` conversations because
    it forces an immediate write.
    """

    def __init__(self, tracker: ProgressTracker, base_processed: int, total_step: int):
        self.tracker = tracker
        self.base_processed = base_processed
        self.total_step = max(1, total_step)

    async def __call__(self, processed: int, total: int) -> None:
        fields: dict[str, Any] = {"synced_contacts": self.base_processed + processed}
        if processed % self.total_step == 0:
            fields["total_contacts"] = self.base_processed + total
        await self.tracker.update_progress(**fields)


class SyncJobController:
    def __init__(
        self,
        *,
        message_cache: MessageCache | None = None,
        scorer: LeadScorer | None = None,
        client_factory: ClientFactory = MessagingPlatformClient,
        job_repository=SyncJobRepository,
        page_repository=PageRepository,
        contact_store=ContactRepository,
    ):
        self.message_cache = message_cache or MessageCache(
            ttl_seconds=settings.MESSAGE_CACHE_TTL_SECONDS,
            max_entries=settings.MESSAGE_CACHE_MAX_ENTRIES,
        )
        self._scorer = scorer
        self._client_factory = client_factory
        self.jobs = job_repository
        self.pages = page_repository
        self.contacts = contact_store

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def start_sync(self, facebook_page_id: str) -> StartSyncResult:
        """
        Create a PENDING job for the page, or return the one already active.

        Best-effort: two callers racing past the lookup can still both create
        a job.
        """
        active = await self.jobs.find_active_job(facebook_page_id)
        if active is not None:
            logger.info(
                "Sync already in progress, reusing job",
                job_id=active.id,
                facebook_page_id=facebook_page_id,
                status=active.status,
            )
            return StartSyncResult(
                job_id=active.id, already_running=True, message="Sync already in progress"
            )

        job = await self.jobs.create_job(facebook_page_id)
        return StartSyncResult(job_id=job.id, already_running=False, message="Sync started")

    async def get_job(self, job_id: str) -> SyncJob | None:
        return await self.jobs.load_job(job_id)

    async def latest_job(self, facebook_page_id: str) -> SyncJob | None:
        return await self.jobs.latest_job_for_page(facebook_page_id)

    async def cancel_job(self, job_id: str) -> bool:
        """Mark an active job CANCELLED; running work stops persisting at its next batch."""
        return await self.jobs.mark_cancelled(job_id)

    async def abandon_job(self, job_id: str, reason: str) -> bool:
        """Fail a job that will never run (e.g. it could not be queued)."""
        return await self.jobs.finalize(job_id, "FAILED", {"errors": [{"error": reason}]})

    async def run_job(self, job_id: str) -> SyncOutcome:
        """
        Execute a queued job to its terminal state.

        Per-item and per-platform failures end up in the job record; any
        unexpected exception finalizes the job as FAILED instead of leaving
        it IN_PROGRESS.
        """
        job = await self.jobs.load_job(job_id)
        if job is None:
            raise SyncJobNotFoundError(f"Sync job {job_id} not found")

        if job.is_terminal:
            logger.info("Sync job already terminal, skipping", job_id=job_id, status=job.status)
            return SyncOutcome(
                job_id=job.id,
                status=job.status,
                synced_count=job.synced_contacts,
                failed_count=job.failed_contacts,
                token_expired=job.token_expired,
                finalized=False,
            )

        bind_job_context(job.id, job.facebook_page_id)
        tracker = ProgressTracker(
            job.id,
            update_interval=settings.SYNC_PROGRESS_UPDATE_INTERVAL_SECONDS,
            repository=self.jobs,
        )
        scan = _JobScan()
        try:
            return await self._execute(job, tracker, scan)
        except Exception as e:
            logger.error(
                "Sync job failed",
                error=str(e),
                error_type=type(e).__name__,
                synced=scan.synced,
                failed=scan.failed,
            )
            # Keep what finished platforms already reported
            finalized = await tracker.finalize(
                "FAILED",
                synced_contacts=scan.synced,
                failed_contacts=scan.failed,
                total_contacts=scan.processed,
                token_expired=scan.token_expired,
                errors=[*(error.to_dict() for error in scan.errors), {"error": str(e)}],
            )
            outcome = scan.outcome(job.id, "FAILED", finalized=finalized)
            outcome.error_message = str(e)
            return outcome
        finally:
            clear_job_context()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self, job: SyncJob, tracker: ProgressTracker, scan: "_JobScan"
    ) -> SyncOutcome:
        if not await self.jobs.mark_in_progress(job.id):
            logger.info("Sync job no longer pending, skipping", job_id=job.id)
            return SyncOutcome(
                job_id=job.id,
                status="CANCELLED",
                synced_count=0,
                failed_count=0,
                token_expired=False,
                finalized=False,
            )

        page = await self.pages.load_page_config(job.facebook_page_id)
        if page is None:
            raise SyncControllerError(f"Facebook page {job.facebook_page_id} not found")

        processor = await self._build_processor(page)

        try:
            client = self._client_factory(page.access_token)
        except MessagingApiError as e:
            if not e.is_token_expired:
                raise
            scan.record_token_expired("messenger", e.code)
        else:
            async with client:
                for platform, stream in self._platform_streams(client, page):
                    if scan.token_expired or scan.cancelled:
                        break
                    logger.info("Syncing platform", platform=platform)
                    result = await processor.process_stream(
                        client,
                        stream(),
                        platform,
                        on_progress=_ProgressReporter(
                            tracker, scan.processed, settings.SYNC_PROGRESS_TOTAL_STEP
                        ),
                        is_cancelled=lambda: self.jobs.is_cancelled(job.id),
                    )
                    scan.add(platform, result)
                    await tracker.force_update(
                        synced_contacts=scan.synced,
                        failed_contacts=scan.failed,
                        total_contacts=scan.processed,
                    )

        if scan.cancelled:
            logger.info("Sync job cancelled during run", synced=scan.synced)
            return scan.outcome(job.id, "CANCELLED", finalized=False)

        if scan.synced > 0 and not scan.token_expired:
            await self.pages.touch_last_synced(page.id)

        status = "FAILED" if scan.token_expired else "COMPLETED"
        finalized = await tracker.finalize(
            status,
            synced_contacts=scan.synced,
            failed_contacts=scan.failed,
            total_contacts=scan.processed,
            token_expired=scan.token_expired,
            errors=[error.to_dict() for error in scan.errors],
        )
        if not finalized:
            stored = await self.jobs.load_job(job.id)
            status = stored.status if stored else status

        logger.info(
            "Sync job finished",
            status=status,
            synced=scan.synced,
            failed=scan.failed,
            total=scan.processed,
            token_expired=scan.token_expired,
            cache=self.message_cache.stats(),
        )
        return scan.outcome(job.id, status, finalized=finalized)

    async def _build_processor(self, page: PageConfig) -> StreamingProcessor:
        assigner = None
        pipeline = page.auto_pipeline
        if pipeline is not None and pipeline.stages:
            pipeline = await ensure_stage_score_ranges(pipeline, self.pages)
            assigner = PipelineStageAssigner(pipeline, page.auto_pipeline_mode)

        options = StreamingProcessorOptions(
            facebook_page_id=page.id,
            organization_id=page.organization_id,
            own_account_ids=frozenset(filter(None, [page.page_id, page.instagram_account_id])),
            max_concurrent=settings.SYNC_MAX_CONCURRENT,
            batch_size=settings.SYNC_AGGREGATOR_BATCH_SIZE,
            chunk_size=settings.SYNC_UPSERT_CHUNK_SIZE,
        )
        return StreamingProcessor(
            options,
            fetch_engine=DifferentialFetchEngine(
                self.message_cache, self.contacts.get_last_sync_timestamp
            ),
            upsert_engine=BatchUpsertEngine(self.contacts, settings.SYNC_UPSERT_CHUNK_SIZE),
            contact_store=self.contacts,
            scorer=self._get_scorer(),
            stage_assigner=assigner,
        )

    def _get_scorer(self) -> LeadScorer:
        if self._scorer is None:
            self._scorer = LeadScoringService()
        return self._scorer

    @staticmethod
    def _platform_streams(client: MessagingPlatformClient, page: PageConfig):
        yield "messenger", lambda: client.iter_messenger_conversations(page.page_id)
        if page.instagram_account_id:
            yield "instagram", lambda: client.iter_instagram_conversations(
                page.instagram_account_id
            )


class _JobScan:
    """Counters and errors accumulated across platforms."""

    def __init__(self):
        self.synced = 0
        self.failed = 0
        self.processed = 0
        self.token_expired = False
        self.cancelled = False
        self.errors: list[SyncError] = []

    def add(self, platform: Platform, result: StreamResult) -> None:
        label = PLATFORM_LABELS[platform]
        self.synced += result.success_count
        self.failed += result.failed_count
        self.processed += result.processed_count
        self.cancelled = self.cancelled or result.cancelled
        self.errors.extend(
            SyncError(platform=label, id=e["participant_id"], error=e["error"]) for e in result.errors
        )
        if result.token_expired:
            self.record_token_expired(platform, result.fatal_error_code)
        elif result.fatal_error:
            self.errors.append(
                SyncError(
                    platform=label,
                    id="conversations",
                    error=result.fatal_error,
                    code=result.fatal_error_code,
                )
            )

    def record_token_expired(self, platform: Platform, code: int | None) -> None:
        self.token_expired = True
        self.errors.append(
            SyncError(
                platform=PLATFORM_LABELS[platform],
                id="conversations",
                error="Page access token expired",
                code=code,
            )
        )

    def outcome(self, job_id: str, status, finalized: bool) -> SyncOutcome:
        return SyncOutcome(
            job_id=job_id,
            status=status,
            synced_count=self.synced,
            failed_count=self.failed,
            token_expired=self.token_expired,
            errors=list(self.errors),
            finalized=finalized,
        )
