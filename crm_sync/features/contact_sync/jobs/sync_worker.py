"""
Contact sync worker.

Runs inside the worker process: pops job messages from the Redis sync
queue and executes them through SyncJobController, at most
SYNC_WORKER_CONCURRENCY jobs at a time. The message cache lives for the
whole process and is shared by every job it runs.
"""

import asyncio

from crm_sync.config import settings
from crm_sync.db.pool import db_pool
from crm_sync.features.contact_sync.cache import MessageCache
from crm_sync.features.contact_sync.services.scheduler import decode_job_message
from crm_sync.features.contact_sync.services.sync_controller import (
    SyncJobController,
    SyncJobNotFoundError,
)
from crm_sync.infrastructure.observability.logging import get_logger, setup_logging
from crm_sync.services.redis_client import FastRedisClient, RedisQueueError, fast_redis

logger = get_logger(__name__)

QUEUE_ERROR_BACKOFF_SECONDS = 5


class ContactSyncWorker:
    """
    Consumes the sync queue until stopped.

    Each job runs in its own task so job-scoped log context never leaks
    between concurrent jobs.
    """

    def __init__(
        self,
        controller: SyncJobController,
        redis_client: FastRedisClient = fast_redis,
        concurrency: int | None = None,
        queue_key: str | None = None,
        poll_seconds: int | None = None,
    ):
        self.controller = controller
        self.redis = redis_client
        self.concurrency = concurrency or settings.SYNC_WORKER_CONCURRENCY
        self.queue_key = queue_key or settings.SYNC_QUEUE_KEY
        self.poll_seconds = poll_seconds or settings.SYNC_QUEUE_POLL_SECONDS
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.jobs_completed = 0
        self.jobs_failed = 0

    def stop(self) -> None:
        self._stopping.set()

    async def run_forever(self) -> None:
        logger.info(
            "Contact sync worker started",
            queue=self.queue_key,
            concurrency=self.concurrency,
        )
        try:
            while not self._stopping.is_set():
                await self._slots.acquire()
                try:
                    raw = await self.redis.dequeue(self.queue_key, timeout=self.poll_seconds)
                except RedisQueueError as e:
                    self._slots.release()
                    logger.error("Sync queue unavailable, backing off", error=str(e))
                    await asyncio.sleep(QUEUE_ERROR_BACKOFF_SECONDS)
                    continue

                if raw is None:
                    self._slots.release()
                    continue

                self._spawn(raw)
        finally:
            if self._tasks:
                logger.info("Waiting for running sync jobs", running=len(self._tasks))
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info(
                "Contact sync worker stopped",
                jobs_completed=self.jobs_completed,
                jobs_failed=self.jobs_failed,
            )

    def _spawn(self, raw: str) -> asyncio.Task:
        task = asyncio.create_task(self.handle_message(raw))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def handle_message(self, raw: str) -> None:
        try:
            message = decode_job_message(raw)
        except ValueError as e:
            logger.error("Dropping malformed sync job message", error=str(e))
            return

        job_id = message["job_id"]
        try:
            outcome = await self.controller.run_job(job_id)
        except SyncJobNotFoundError:
            logger.warning("Queued sync job no longer exists", job_id=job_id)
            return
        except Exception as e:
            # Finalize itself failed; the job row may still say IN_PROGRESS
            self.jobs_failed += 1
            logger.error(
                "Sync job crashed", job_id=job_id, error=str(e), error_type=type(e).__name__
            )
            return

        if outcome.status == "COMPLETED":
            self.jobs_completed += 1
        else:
            self.jobs_failed += 1
        logger.info(
            "Sync job handled",
            job_id=job_id,
            status=outcome.status,
            synced=outcome.synced_count,
            failed=outcome.failed_count,
            token_expired=outcome.token_expired,
        )


async def start_contact_sync_worker() -> None:
    """Worker entry point: open the pool and Redis, then consume the queue."""
    setup_logging(settings.log_level)
    await db_pool.initialize()
    await fast_redis.initialize()

    controller = SyncJobController(
        message_cache=MessageCache(
            ttl_seconds=settings.MESSAGE_CACHE_TTL_SECONDS,
            max_entries=settings.MESSAGE_CACHE_MAX_ENTRIES,
        )
    )
    worker = ContactSyncWorker(controller)
    try:
        await worker.run_forever()
    finally:
        await fast_redis.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_contact_sync_worker())
