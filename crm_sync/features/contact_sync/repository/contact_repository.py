"""
Persistence for contacts.

Everything the sync pipeline reads or writes about a contact goes through
here: the last-sync anchor, existence checks, bulk inserts that skip
duplicate keys, per-record upserts, patch updates and the activity rows
that record automatic stage changes. Contact identity is the unique pair
(participant_id, facebook_page_id).
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from psycopg import sql
from psycopg.types.json import Jsonb

from crm_sync.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from crm_sync.features.contact_sync.domain import (
    ContactCreate,
    ExistingContact,
    Platform,
    StageActivity,
)
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ContactRepositoryError(DatabaseError):
    """More specific exception for contact persistence failures."""


class ContactStore(Protocol):
    """Storage operations the batch engine and streaming processor rely on."""

    async def get_last_sync_timestamp(
        self, participant_id: str, facebook_page_id: str, platform: Platform
    ) -> datetime | None: ...

    async def find_existing(
        self, participant_id: str, facebook_page_id: str
    ) -> ExistingContact | None: ...

    async def insert_many_skip_duplicates(
        self, records: Sequence[ContactCreate]
    ) -> list[dict[str, Any]]: ...

    async def upsert_one(self, record: ContactCreate) -> str: ...

    async def update_contact(self, contact_id: str, columns: dict[str, Any]) -> None: ...

    async def insert_stage_activities(self, activities: Sequence[StageActivity]) -> int: ...


INSERT_COLUMNS = (
    "participant_id",
    "facebook_page_id",
    "organization_id",
    "first_name",
    "last_name",
    "last_interaction",
    "has_messenger",
    "has_instagram",
    "ai_context",
    "ai_context_updated_at",
    "lead_score",
    "lead_status",
    "pipeline_id",
    "stage_id",
    "stage_entered_at",
)

ACTIVITY_COLUMNS = (
    "contact_id",
    "type",
    "title",
    "description",
    "from_stage_id",
    "to_stage_id",
    "metadata",
)

UPDATABLE_COLUMNS = frozenset(INSERT_COLUMNS) - {
    "participant_id",
    "facebook_page_id",
    "organization_id",
}


def _insert_values(record: ContactCreate) -> tuple:
    return (
        record.participant_id,
        record.facebook_page_id,
        record.organization_id,
        record.first_name,
        record.last_name,
        record.last_interaction,
        record.has_messenger,
        record.has_instagram,
        record.ai_context,
        record.ai_context_updated_at,
        record.lead_score,
        record.lead_status,
        record.pipeline_id,
        record.stage_id,
        record.stage_entered_at,
    )


class ContactRepository:
    """SQL access for the contacts table."""

    @classmethod
    @with_db_retry()
    async def get_last_sync_timestamp(
        cls, participant_id: str, facebook_page_id: str, platform: Platform
    ) -> datetime | None:
        """
        Most recent point this contact was persisted for a platform.

        GREATEST ignores NULLs, so whichever of the two stamps exists wins.
        """
        query = """
            SELECT GREATEST(ai_context_updated_at, last_interaction) AS last_sync_at
            FROM contacts
            WHERE participant_id = %s
              AND facebook_page_id = %s
        """
        if platform == "messenger":
            query += " AND has_messenger = TRUE"
        elif platform == "instagram":
            query += " AND has_instagram = TRUE"

        return await fetch_val(query, (participant_id, facebook_page_id))

    @classmethod
    @with_db_retry()
    async def find_existing(
        cls, participant_id: str, facebook_page_id: str
    ) -> ExistingContact | None:
        row = await fetch_one(
            """
            SELECT id, pipeline_id, stage_id
            FROM contacts
            WHERE participant_id = %s AND facebook_page_id = %s
            """,
            (participant_id, facebook_page_id),
        )
        if not row:
            return None
        return ExistingContact(
            id=str(row["id"]),
            pipeline_id=str(row["pipeline_id"]) if row.get("pipeline_id") else None,
            stage_id=str(row["stage_id"]) if row.get("stage_id") else None,
        )

    @classmethod
    async def insert_many_skip_duplicates(
        cls, records: Sequence[ContactCreate]
    ) -> list[dict[str, Any]]:
        """
        Bulk insert; rows whose key already exists are skipped.

        Returns {id, participant_id} for exactly the rows that were inserted.
        """
        if not records:
            return []

        row_placeholder = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() * len(INSERT_COLUMNS))
        )
        query = sql.SQL(
            """
            INSERT INTO contacts ({columns})
            VALUES {rows}
            ON CONFLICT (participant_id, facebook_page_id) DO NOTHING
            RETURNING id, participant_id
            """
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, INSERT_COLUMNS)),
            rows=sql.SQL(", ").join([row_placeholder] * len(records)),
        )

        params: list[Any] = []
        for record in records:
            params.extend(_insert_values(record))

        rows = await fetch_all(query, tuple(params))
        return [{"id": str(r["id"]), "participant_id": r["participant_id"]} for r in rows]

    @classmethod
    async def upsert_one(cls, record: ContactCreate) -> str:
        """
        Create-or-update keyed on (participant_id, facebook_page_id).

        Channel flags are OR-ed so a second platform never clears the first;
        nullable enrichment keeps the stored value when the new one is empty.
        """
        placeholders = ", ".join(["%s"] * len(INSERT_COLUMNS))
        query = f"""
            INSERT INTO contacts ({", ".join(INSERT_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT (participant_id, facebook_page_id) DO UPDATE SET
                first_name = EXCLUDED.first_name,
                last_name = COALESCE(EXCLUDED.last_name, contacts.last_name),
                last_interaction = GREATEST(EXCLUDED.last_interaction, contacts.last_interaction),
                has_messenger = contacts.has_messenger OR EXCLUDED.has_messenger,
                has_instagram = contacts.has_instagram OR EXCLUDED.has_instagram,
                ai_context = COALESCE(EXCLUDED.ai_context, contacts.ai_context),
                ai_context_updated_at = COALESCE(
                    EXCLUDED.ai_context_updated_at, contacts.ai_context_updated_at
                ),
                lead_score = COALESCE(EXCLUDED.lead_score, contacts.lead_score),
                lead_status = COALESCE(EXCLUDED.lead_status, contacts.lead_status),
                pipeline_id = COALESCE(EXCLUDED.pipeline_id, contacts.pipeline_id),
                stage_id = COALESCE(EXCLUDED.stage_id, contacts.stage_id),
                stage_entered_at = COALESCE(EXCLUDED.stage_entered_at, contacts.stage_entered_at),
                updated_at = NOW()
            RETURNING id
        """
        contact_id = await fetch_val(query, _insert_values(record))
        if contact_id is None:
            raise ContactRepositoryError(
                f"Upsert returned no row for participant {record.participant_id}",
                operation="upsert_one",
            )
        return str(contact_id)

    @classmethod
    async def update_contact(cls, contact_id: str, columns: dict[str, Any]) -> None:
        """Apply a column patch to one contact."""
        unknown = set(columns) - UPDATABLE_COLUMNS
        if unknown:
            raise ContactRepositoryError(
                f"Refusing to update unknown columns: {sorted(unknown)}",
                operation="update_contact",
                recoverable=False,
            )
        if not columns:
            return

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder())
            for name in columns
        )
        query = sql.SQL(
            "UPDATE contacts SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING id"
        ).format(assignments=assignments)

        row = await fetch_one(query, (*columns.values(), contact_id))
        if not row:
            raise ContactRepositoryError(
                f"Contact {contact_id} not found", operation="update_contact", recoverable=False
            )

    @classmethod
    async def insert_stage_activities(cls, activities: Sequence[StageActivity]) -> int:
        """Bulk insert contact_activities rows; returns the number written."""
        if not activities:
            return 0

        row_placeholder = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() * len(ACTIVITY_COLUMNS))
        )
        query = sql.SQL("INSERT INTO contact_activities ({columns}) VALUES {rows}").format(
            columns=sql.SQL(", ").join(map(sql.Identifier, ACTIVITY_COLUMNS)),
            rows=sql.SQL(", ").join([row_placeholder] * len(activities)),
        )

        params: list[Any] = []
        for activity in activities:
            params.extend(
                (
                    activity.contact_id,
                    activity.type,
                    activity.title,
                    activity.description,
                    activity.from_stage_id,
                    activity.to_stage_id,
                    Jsonb(activity.metadata),
                )
            )

        return await execute_query(query, tuple(params))
