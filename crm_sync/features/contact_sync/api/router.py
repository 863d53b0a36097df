"""
Contact sync routes.

Trigger a sync for a page, poll a job, cancel it. The trigger only creates
(or reuses) the job record and queues it; the worker does the work.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from crm_sync.auth.verify import auth_dependency
from crm_sync.features.contact_sync.domain import SyncJob
from crm_sync.features.contact_sync.repository import PageRepository
from crm_sync.features.contact_sync.services import (
    SyncJobController,
    SyncSchedulerError,
    request_sync,
)
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["contact-sync"])

_controller: SyncJobController | None = None


def get_sync_controller() -> SyncJobController:
    """API-side controller; it only touches job records, never runs jobs."""
    global _controller
    if _controller is None:
        _controller = SyncJobController()
    return _controller


def get_queue_client() -> FastRedisClient:
    return fast_redis


class SyncStartResponse(BaseModel):
    job_id: str
    already_running: bool
    message: str


class SyncJobResponse(BaseModel):
    id: str
    facebook_page_id: str
    status: str
    synced_contacts: int
    failed_contacts: int
    total_contacts: int
    token_expired: bool
    errors: list[dict[str, Any]]
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(
            id=job.id,
            facebook_page_id=job.facebook_page_id,
            status=job.status,
            synced_contacts=job.synced_contacts,
            failed_contacts=job.failed_contacts,
            total_contacts=job.total_contacts,
            token_expired=job.token_expired,
            errors=job.errors,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class SyncCancelResponse(BaseModel):
    job_id: str
    cancelled: bool


async def _require_page_access(facebook_page_id: str, claims: dict) -> None:
    if not await PageRepository.page_belongs_to_org(facebook_page_id, claims["org_id"]):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Page not found")


async def _load_owned_job(job_id: str, claims: dict, controller: SyncJobController) -> SyncJob:
    job = await controller.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync job not found")
    await _require_page_access(job.facebook_page_id, claims)
    return job


@router.post(
    "/pages/{facebook_page_id}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SyncStartResponse,
)
async def trigger_sync(
    facebook_page_id: str,
    claims: dict = Depends(auth_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
    queue: FastRedisClient = Depends(get_queue_client),
) -> SyncStartResponse:
    """Start a contact sync for the page, or return the job already running."""
    await _require_page_access(facebook_page_id, claims)

    try:
        start = await request_sync(controller, facebook_page_id, queue)
    except SyncSchedulerError as e:
        logger.error("Sync trigger failed", facebook_page_id=facebook_page_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync queue unavailable, try again later",
        ) from e

    logger.info(
        "Sync requested",
        facebook_page_id=facebook_page_id,
        job_id=start.job_id,
        already_running=start.already_running,
        user_id=claims.get("sub"),
    )
    return SyncStartResponse(
        job_id=start.job_id, already_running=start.already_running, message=start.message
    )


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    claims: dict = Depends(auth_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobResponse:
    job = await _load_owned_job(job_id, claims, controller)
    return SyncJobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=SyncCancelResponse)
async def cancel_sync_job(
    job_id: str,
    claims: dict = Depends(auth_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncCancelResponse:
    job = await _load_owned_job(job_id, claims, controller)
    if job.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync job already {job.status}",
        )

    cancelled = await controller.cancel_job(job_id)
    return SyncCancelResponse(job_id=job_id, cancelled=cancelled)


@router.get("/pages/{facebook_page_id}/latest", response_model=SyncJobResponse)
async def get_latest_sync_job(
    facebook_page_id: str,
    claims: dict = Depends(auth_dependency),
    controller: SyncJobController = Depends(get_sync_controller),
) -> SyncJobResponse:
    await _require_page_access(facebook_page_id, claims)
    job = await controller.latest_job(facebook_page_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync jobs for page")
    return SyncJobResponse.from_job(job)
