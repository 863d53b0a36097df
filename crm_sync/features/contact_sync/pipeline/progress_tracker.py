"""
Progress tracker.

Coalesces frequent progress updates into throttled writes on the job
record. Progress is observability: a failed write is logged and dropped,
never raised into the sync.
"""

import time
from collections.abc import Callable
from typing import Any, Protocol

from crm_sync.db.helpers import DatabaseError
from crm_sync.features.contact_sync.domain import SyncJobStatus
from crm_sync.features.contact_sync.repository import SyncJobRepository
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_UPDATE_INTERVAL_SECONDS = 5.0


class JobProgressStore(Protocol):
    async def update_progress(self, job_id: str, fields: dict[str, Any]) -> bool: ...

    async def finalize(self, job_id: str, status: SyncJobStatus, fields: dict[str, Any]) -> bool: ...


class ProgressTracker:
    def __init__(
        self,
        job_id: str,
        update_interval: float = DEFAULT_UPDATE_INTERVAL_SECONDS,
        repository: JobProgressStore = SyncJobRepository,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.update_interval = update_interval
        self._repository = repository
        self._clock = clock
        self._pending: dict[str, Any] = {}
        self._last_flush_at = clock()
        self.write_count = 0
        self.finalized = False

    async def update_progress(self, **fields: Any) -> None:
        """
        Buffer fields; write when the interval elapsed or total_contacts is present.
        """
        self._pending.update(fields)
        elapsed = self._clock() - self._last_flush_at
        if "total_contacts" in fields or elapsed >= self.update_interval:
            await self.flush()

    async def force_update(self, **fields: Any) -> None:
        self._pending.update(fields)
        await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return

        fields, self._pending = self._pending, {}
        self._last_flush_at = self._clock()
        try:
            await self._repository.update_progress(self.job_id, fields)
            self.write_count += 1
        except DatabaseError as e:
            logger.warning("Progress update failed", job_id=self.job_id, error=str(e))

    async def finalize(self, status: SyncJobStatus, **fields: Any) -> bool:
        """
        Merge buffered fields and write the terminal status.

        Returns False when the job was already terminal (e.g. cancelled).
        """
        merged = {**self._pending, **fields}
        self._pending = {}
        written = await self._repository.finalize(self.job_id, status, merged)
        self.write_count += 1
        self.finalized = written
        return written
