"""
Persistence for sync jobs.

Every write after creation is guarded with `status NOT IN (terminal)` so a
job that already finished (or was cancelled by an operator) is never
modified again. Guarded writes report whether a row was touched.
"""

from typing import Any

from psycopg import sql
from psycopg.types.json import Jsonb

from crm_sync.db.helpers import DatabaseError, execute_query, fetch_one, with_db_retry
from crm_sync.features.contact_sync.domain import TERMINAL_STATUSES, SyncJob, SyncJobStatus
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PROGRESS_COLUMNS = frozenset(
    {"synced_contacts", "failed_contacts", "total_contacts", "token_expired", "errors"}
)


class SyncJobRepositoryError(DatabaseError):
    """More specific exception for sync job persistence failures."""


class SyncJobRepository:
    """SQL access for the sync_jobs table."""

    JOB_SELECT_COLUMNS = """
        id, facebook_page_id, status, synced_contacts, failed_contacts,
        total_contacts, token_expired, errors, created_at, started_at, completed_at
    """

    @classmethod
    def _row_to_job(cls, row: dict | None) -> SyncJob | None:
        if not row:
            return None

        return SyncJob(
            id=str(row["id"]),
            facebook_page_id=str(row["facebook_page_id"]),
            status=row["status"],
            synced_contacts=row.get("synced_contacts") or 0,
            failed_contacts=row.get("failed_contacts") or 0,
            total_contacts=row.get("total_contacts") or 0,
            token_expired=bool(row.get("token_expired")),
            errors=list(row.get("errors") or []),
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
        )

    @classmethod
    async def create_job(cls, facebook_page_id: str) -> SyncJob:
        """Insert a new PENDING job."""
        query = f"""
            INSERT INTO sync_jobs (facebook_page_id, status, errors)
            VALUES (%s, 'PENDING', '[]'::jsonb)
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (facebook_page_id,))
        if not row:
            raise SyncJobRepositoryError("Failed to create sync job", operation="create_job")

        job = cls._row_to_job(row)
        logger.info("Sync job created", job_id=job.id, facebook_page_id=facebook_page_id)
        return job

    @classmethod
    @with_db_retry()
    async def find_active_job(cls, facebook_page_id: str) -> SyncJob | None:
        """Newest PENDING/IN_PROGRESS job for the page, if any."""
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM sync_jobs
            WHERE facebook_page_id = %s
              AND status IN ('PENDING', 'IN_PROGRESS')
            ORDER BY created_at DESC
            LIMIT 1
        """
        return cls._row_to_job(await fetch_one(query, (facebook_page_id,)))

    @classmethod
    @with_db_retry()
    async def load_job(cls, job_id: str) -> SyncJob | None:
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM sync_jobs WHERE id = %s"
        return cls._row_to_job(await fetch_one(query, (job_id,)))

    @classmethod
    @with_db_retry()
    async def latest_job_for_page(cls, facebook_page_id: str) -> SyncJob | None:
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM sync_jobs
            WHERE facebook_page_id = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        return cls._row_to_job(await fetch_one(query, (facebook_page_id,)))

    @classmethod
    async def mark_in_progress(cls, job_id: str) -> bool:
        """PENDING -> IN_PROGRESS and stamp started_at. False if the job is not pending."""
        query = """
            UPDATE sync_jobs
            SET status = 'IN_PROGRESS',
                started_at = COALESCE(started_at, NOW())
            WHERE id = %s
              AND status IN ('PENDING', 'IN_PROGRESS')
        """
        updated = await execute_query(query, (job_id,))
        if updated:
            logger.info("Sync job in progress", job_id=job_id)
        return bool(updated)

    @classmethod
    async def update_progress(cls, job_id: str, fields: dict[str, Any]) -> bool:
        """Write progress counters to a non-terminal job."""
        assignments, params = cls._assignments(fields)
        if not assignments:
            return False

        query = sql.SQL(
            "UPDATE sync_jobs SET {assignments} WHERE id = %s AND status NOT IN ({terminal})"
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            terminal=cls._terminal_literals(),
        )
        return bool(await execute_query(query, (*params, job_id)))

    @classmethod
    async def finalize(cls, job_id: str, status: SyncJobStatus, fields: dict[str, Any]) -> bool:
        """
        Move the job to a terminal status and stamp completed_at.

        Returns False when the job was already terminal; the stored record is
        left untouched in that case.
        """
        if status not in TERMINAL_STATUSES:
            raise SyncJobRepositoryError(
                f"finalize requires a terminal status, got {status}",
                operation="finalize",
                recoverable=False,
            )

        assignments, params = cls._assignments(fields)
        assignments += [
            sql.SQL("status = {}").format(sql.Placeholder()),
            sql.SQL("completed_at = NOW()"),
        ]
        params.append(status)

        query = sql.SQL(
            "UPDATE sync_jobs SET {assignments} WHERE id = %s AND status NOT IN ({terminal})"
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            terminal=cls._terminal_literals(),
        )
        updated = bool(await execute_query(query, (*params, job_id)))
        if updated:
            logger.info("Sync job finalized", job_id=job_id, status=status)
        else:
            logger.warning("Sync job already terminal, finalize skipped", job_id=job_id, status=status)
        return updated

    @classmethod
    async def mark_cancelled(cls, job_id: str) -> bool:
        query = """
            UPDATE sync_jobs
            SET status = 'CANCELLED',
                completed_at = NOW()
            WHERE id = %s
              AND status IN ('PENDING', 'IN_PROGRESS')
        """
        updated = bool(await execute_query(query, (job_id,)))
        if updated:
            logger.info("Sync job cancelled", job_id=job_id)
        return updated

    @classmethod
    async def is_cancelled(cls, job_id: str) -> bool:
        row = await fetch_one("SELECT status FROM sync_jobs WHERE id = %s", (job_id,))
        return bool(row) and row["status"] == "CANCELLED"

    @staticmethod
    def _assignments(fields: dict[str, Any]) -> tuple[list[sql.Composable], list[Any]]:
        unknown = set(fields) - PROGRESS_COLUMNS
        if unknown:
            raise SyncJobRepositoryError(
                f"Unknown sync job fields: {sorted(unknown)}",
                operation="update_progress",
                recoverable=False,
            )

        assignments: list[sql.Composable] = []
        params: list[Any] = []
        for name, value in fields.items():
            assignments.append(sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder()))
            params.append(Jsonb(value) if name == "errors" else value)
        return assignments, params

    @staticmethod
    def _terminal_literals() -> sql.Composable:
        return sql.SQL(", ").join(sql.Literal(s) for s in sorted(TERMINAL_STATUSES))
