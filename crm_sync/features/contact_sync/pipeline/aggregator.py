"""
Contact aggregator.

FIFO accumulator that turns processed contacts into storage-sized batches.
Single consumer only; the streaming processor serializes access with a lock.
"""

from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime

from crm_sync.features.contact_sync.domain import (
    ContactBatch,
    ContactCreate,
    LeadClassification,
    ProcessedContact,
)

DEFAULT_BATCH_SIZE = 200
MIN_BATCH_SIZE = 100
MAX_BATCH_SIZE = 500


def to_create_payload(
    contact: ProcessedContact, facebook_page_id: str, organization_id: str
) -> ContactCreate:
    """Map a processed contact to its storage payload."""
    now = datetime.now(UTC)
    classification = contact.classification
    stage = contact.stage
    return ContactCreate(
        participant_id=contact.participant_id,
        facebook_page_id=facebook_page_id,
        organization_id=organization_id,
        platform=contact.platform,
        first_name=contact.first_name,
        last_name=contact.last_name,
        last_interaction=contact.last_interaction,
        has_messenger=contact.platform == "messenger",
        has_instagram=contact.platform == "instagram",
        ai_context=contact.ai_context,
        ai_context_updated_at=now if classification else None,
        lead_score=classification.lead_score if classification else None,
        lead_status=classification.lead_status if classification else None,
        pipeline_id=stage.pipeline_id if stage else None,
        stage_id=stage.stage_id if stage else None,
        stage_entered_at=now if stage else None,
        existing_contact_id=contact.existing_contact_id,
        previous_stage_id=contact.existing_stage_id,
        classification=classification,
    )


class ContactAggregator:
    def __init__(
        self,
        facebook_page_id: str,
        organization_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if not MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, got {batch_size}"
            )
        self.facebook_page_id = facebook_page_id
        self.organization_id = organization_id
        self.batch_size = batch_size
        self._pending: deque[ProcessedContact] = deque()

    @property
    def size(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, contact: ProcessedContact) -> None:
        self._pending.append(contact)

    def add_batch(self, contacts: Iterable[ProcessedContact]) -> None:
        self._pending.extend(contacts)

    def is_ready(self) -> bool:
        return len(self._pending) >= self.batch_size

    def peek(self) -> list[ProcessedContact]:
        return list(self._pending)

    def flush(self) -> ContactBatch | None:
        """Remove and return up to `batch_size` contacts, or None when empty."""
        if not self._pending:
            return None
        count = min(self.batch_size, len(self._pending))
        return self._build_batch([self._pending.popleft() for _ in range(count)])

    def flush_all(self) -> ContactBatch | None:
        """Drain everything regardless of batch size."""
        if not self._pending:
            return None
        contacts = list(self._pending)
        self._pending.clear()
        return self._build_batch(contacts)

    def clear(self) -> None:
        self._pending.clear()

    def _build_batch(self, contacts: list[ProcessedContact]) -> ContactBatch:
        classifications: dict[str, LeadClassification] = {}
        metadata: dict[str, dict[str, str]] = {}
        for contact in contacts:
            if contact.classification:
                classifications[contact.participant_id] = contact.classification
            metadata[contact.participant_id] = {
                "conversation_id": contact.conversation_id,
                "platform": contact.platform,
            }

        return ContactBatch(
            contacts=[
                to_create_payload(c, self.facebook_page_id, self.organization_id)
                for c in contacts
            ],
            classifications=classifications,
            metadata=metadata,
        )
