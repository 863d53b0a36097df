"""
Sync job queue handoff.

The trigger path only creates (or reuses) the job record and pushes its id
onto the Redis queue; the worker process picks it up and runs it.
"""

import json

from crm_sync.config import settings
from crm_sync.features.contact_sync.domain import StartSyncResult
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.redis_client import FastRedisClient, RedisQueueError, fast_redis

logger = get_logger(__name__)


class SyncSchedulerError(Exception):
    """Raised when a sync job could not be handed to the worker."""


def encode_job_message(job_id: str, facebook_page_id: str) -> str:
    return json.dumps({"job_id": job_id, "facebook_page_id": facebook_page_id})


def decode_job_message(raw: str) -> dict[str, str]:
    """
    Parse a queue payload.

    Raises:
        ValueError: If the payload is not a job message
    """
    data = json.loads(raw)
    if not isinstance(data, dict) or not data.get("job_id"):
        raise ValueError(f"Malformed sync job message: {raw[:100]}")
    return {"job_id": str(data["job_id"]), "facebook_page_id": str(data.get("facebook_page_id", ""))}


async def enqueue_sync_job(
    job_id: str, facebook_page_id: str, redis_client: FastRedisClient = fast_redis
) -> None:
    try:
        depth = await redis_client.enqueue(
            settings.SYNC_QUEUE_KEY, encode_job_message(job_id, facebook_page_id)
        )
    except RedisQueueError as e:
        raise SyncSchedulerError(f"Failed to enqueue sync job {job_id}: {e}") from e

    logger.info(
        "Sync job enqueued", job_id=job_id, facebook_page_id=facebook_page_id, queue_depth=depth
    )


async def request_sync(
    controller, facebook_page_id: str, redis_client: FastRedisClient = fast_redis
) -> StartSyncResult:
    """
    Create-or-reuse the page's job and enqueue it when newly created.

    A reused job is already queued or running, so it is not pushed again.
    """
    start = await controller.start_sync(facebook_page_id)
    if start.already_running:
        return start

    try:
        await enqueue_sync_job(start.job_id, facebook_page_id, redis_client)
    except SyncSchedulerError as e:
        # A PENDING job nobody will run would block the page forever
        await controller.abandon_job(start.job_id, str(e))
        raise
    return start
