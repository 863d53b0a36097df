"""
Batch upsert engine.

Bulk creates and updates of contacts with partial failure as the normal
outcome. Creates use a skip-duplicates bulk insert per chunk and fall back
to per-record upserts when the chunk fails; rows the bulk insert skipped as
duplicates are merged through the same upsert. Updates are grouped by patch
shape and applied concurrently within each chunk. Every persisted stage
assignment gets a STAGE_CHANGED activity row. Nothing here raises for a
per-record problem; failures come back in BatchOperationResult.errors.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence

from crm_sync.db.helpers import DatabaseError
from crm_sync.features.contact_sync.domain import (
    BatchOperationResult,
    ChannelPatch,
    ContactCreate,
    ContactUpdate,
    ContextPatch,
    ProfilePatch,
    ScorePatch,
    StageActivity,
    StagePatch,
    StatusPatch,
)
from crm_sync.features.contact_sync.repository import ContactRepository, ContactStore
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 100


def _chunks(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def stage_activity(contact_id: str, record: ContactCreate) -> StageActivity | None:
    """Activity entry for a record that carries an automatic stage assignment."""
    if record.stage_id is None:
        return None
    metadata = {}
    if record.classification is not None:
        metadata = {
            "lead_score": record.classification.lead_score,
            "lead_status": record.classification.lead_status,
            "confidence": record.classification.confidence,
            "ai_recommendation": record.classification.recommended_stage,
        }
    return StageActivity(
        contact_id=contact_id,
        to_stage_id=record.stage_id,
        from_stage_id=record.previous_stage_id,
        description=record.ai_context,
        metadata=metadata,
    )


def update_from_create(record: ContactCreate) -> ContactUpdate:
    """Build the patch set for a record that already has a stored contact."""
    patches: list = [
        ProfilePatch(
            first_name=record.first_name,
            last_name=record.last_name,
            last_interaction=record.last_interaction,
        ),
        ChannelPatch(platform=record.platform),
    ]
    if record.ai_context is not None:
        patches.append(
            ContextPatch(
                ai_context=record.ai_context,
                ai_context_updated_at=record.ai_context_updated_at,
            )
        )
    if record.lead_score is not None:
        patches.append(ScorePatch(lead_score=record.lead_score))
    if record.lead_status is not None:
        patches.append(StatusPatch(lead_status=record.lead_status))
    if record.stage_id is not None:
        patches.append(
            StagePatch(
                pipeline_id=record.pipeline_id,
                stage_id=record.stage_id,
                stage_entered_at=record.stage_entered_at,
            )
        )
    return ContactUpdate(
        contact_id=record.existing_contact_id,
        patches=tuple(patches),
        activity=stage_activity(record.existing_contact_id, record),
    )


class BatchUpsertEngine:
    def __init__(self, store: ContactStore = ContactRepository, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.store = store
        self.chunk_size = chunk_size

    async def batch_create(
        self, records: Sequence[ContactCreate], chunk_size: int | None = None
    ) -> BatchOperationResult:
        result = BatchOperationResult()
        for chunk in _chunks(list(records), chunk_size or self.chunk_size):
            try:
                inserted = await self.store.insert_many_skip_duplicates(chunk)
            except DatabaseError as e:
                logger.warning(
                    "Bulk contact insert failed, falling back to per-record upsert",
                    chunk_size=len(chunk),
                    error=str(e),
                )
                result.merge(await self._upsert_individually(chunk))
                continue

            inserted_ids = {row["participant_id"]: row["id"] for row in inserted}
            result.success_count += len(inserted)
            result.created_contact_ids.extend(inserted_ids.values())

            # The first record per key was inserted; the rest hit an existing row
            unclaimed = dict(inserted_ids)
            duplicates: list[ContactCreate] = []
            for record in chunk:
                contact_id = unclaimed.pop(record.participant_id, None)
                if contact_id is None:
                    duplicates.append(record)
                    continue
                activity = stage_activity(contact_id, record)
                if activity:
                    result.stage_activities.append(activity)
            if duplicates:
                logger.debug("Duplicate contacts merged individually", count=len(duplicates))
                result.merge(await self._upsert_individually(duplicates))

        return result

    async def _upsert_individually(self, chunk: Sequence[ContactCreate]) -> BatchOperationResult:
        result = BatchOperationResult()
        for record in chunk:
            try:
                contact_id = await self.store.upsert_one(record)
            except DatabaseError as e:
                logger.error(
                    "Contact upsert failed",
                    participant_id=record.participant_id,
                    error=str(e),
                )
                result.record_failure(record.participant_id, str(e))
                continue
            result.success_count += 1
            result.created_contact_ids.append(contact_id)
            activity = stage_activity(contact_id, record)
            if activity:
                result.stage_activities.append(activity)
        return result

    async def batch_update(
        self, updates: Sequence[ContactUpdate], chunk_size: int | None = None
    ) -> BatchOperationResult:
        result = BatchOperationResult()
        if not updates:
            return result

        # Updates of one shape touch the same column set
        groups: dict[tuple[str, ...], list[ContactUpdate]] = defaultdict(list)
        for update in updates:
            groups[update.shape].append(update)

        for shape, group in groups.items():
            for chunk in _chunks(group, chunk_size or self.chunk_size):
                outcomes = await asyncio.gather(
                    *(self.store.update_contact(u.contact_id, u.columns()) for u in chunk),
                    return_exceptions=True,
                )
                for update, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, DatabaseError):
                        result.record_failure(update.contact_id, str(outcome))
                    elif isinstance(outcome, BaseException):
                        raise outcome
                    else:
                        result.success_count += 1
                        result.updated_contact_ids.append(update.contact_id)
                        if update.activity:
                            result.stage_activities.append(update.activity)

            logger.debug("Contact update group applied", shape=",".join(shape), count=len(group))

        return result

    async def record_stage_activities(self, activities: Sequence[StageActivity]) -> int:
        """
        Write activity entries for stage assignments that were persisted.

        Activity rows are an audit trail; a failed write is logged and never
        turns a stored contact into a failure.
        """
        if not activities:
            return 0
        try:
            created = await self.store.insert_stage_activities(activities)
        except DatabaseError as e:
            logger.warning("Stage activity insert failed", count=len(activities), error=str(e))
            return 0
        logger.debug("Stage activities recorded", count=created)
        return created

    async def batch_upsert(
        self, records: Sequence[ContactCreate], chunk_size: int | None = None
    ) -> BatchOperationResult:
        """Route records with a known contact id to updates, the rest to creates."""
        creates = [r for r in records if not r.existing_contact_id]
        updates = [update_from_create(r) for r in records if r.existing_contact_id]

        created, updated = await asyncio.gather(
            self.batch_create(creates, chunk_size),
            self.batch_update(updates, chunk_size),
        )
        result = BatchOperationResult().merge(created).merge(updated)
        activities = await self.record_stage_activities(result.stage_activities)

        logger.info(
            "Contact batch persisted",
            created=len(created.created_contact_ids),
            updated=len(updated.updated_contact_ids),
            failed=result.failure_count,
            stage_activities=activities,
        )
        return result
