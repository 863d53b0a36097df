import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from crm_sync.auth.verify import auth_dependency
from crm_sync.features.contact_sync.clients import MessagingApiError
from crm_sync.features.contact_sync.domain import (
    TERMINAL_STATUSES,
    ContactCreate,
    ConversationDescriptor,
    ExistingContact,
    LeadClassification,
    PageConfig,
    Participant,
    SyncJob,
)
from crm_sync.features.contact_sync.repository import ContactRepositoryError

PAGE_ROW_ID = "page-row-1"
PAGE_PLATFORM_ID = "page-111"
IG_ACCOUNT_ID = "ig-222"
ORG_ID = "org-1"

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123", "org_id": ORG_ID}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeRedis:
    def __init__(self):
        self.queues: dict[str, list[str]] = {}
        self.fail = False

    async def ping(self) -> bool:
        return not self.fail

    async def enqueue(self, queue_key: str, payload: str) -> int:
        from crm_sync.services.redis_client import RedisQueueError

        if self.fail:
            raise RedisQueueError("connection refused")
        self.queues.setdefault(queue_key, []).insert(0, payload)
        return len(self.queues[queue_key])

    async def dequeue(self, queue_key: str, timeout: int) -> str | None:
        queue = self.queues.get(queue_key) or []
        return queue.pop() if queue else None

    async def queue_length(self, queue_key: str) -> int:
        return len(self.queues.get(queue_key, []))


@pytest.fixture
def fake_redis():
    return FakeRedis()


class FakeContactStore:
    """In-memory contacts table enforcing the (participant_id, page) unique key."""

    def __init__(self):
        self.rows: dict[tuple[str, str], dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.fail_bulk = False
        self.fail_upsert_for: set[str] = set()
        self.fail_update_for: set[str] = set()
        self.fail_activities = False
        self.insert_delay = 0.0
        self.bulk_calls = 0
        self.upsert_calls = 0
        self.activities: list = []

    def add_existing(self, participant_id: str, page_id: str = PAGE_ROW_ID, **values) -> str:
        contact_id = f"contact-{next(self._ids)}"
        row = {
            "id": contact_id,
            "participant_id": participant_id,
            "facebook_page_id": page_id,
            "has_messenger": True,
            "has_instagram": False,
            "last_interaction": None,
            "ai_context_updated_at": None,
            "pipeline_id": None,
            "stage_id": None,
        }
        row.update(values)
        self.rows[(participant_id, page_id)] = row
        return contact_id

    def by_id(self, contact_id: str) -> dict[str, Any] | None:
        return next((r for r in self.rows.values() if r["id"] == contact_id), None)

    async def get_last_sync_timestamp(self, participant_id, facebook_page_id, platform):
        row = self.rows.get((participant_id, facebook_page_id))
        if not row or not row.get(f"has_{platform}"):
            return None
        stamps = [s for s in (row.get("ai_context_updated_at"), row.get("last_interaction")) if s]
        return max(stamps) if stamps else None

    async def find_existing(self, participant_id, facebook_page_id):
        row = self.rows.get((participant_id, facebook_page_id))
        if not row:
            return None
        return ExistingContact(id=row["id"], pipeline_id=row.get("pipeline_id"), stage_id=row.get("stage_id"))

    def _row_from(self, record: ContactCreate) -> dict[str, Any]:
        return {
            "id": f"contact-{next(self._ids)}",
            "participant_id": record.participant_id,
            "facebook_page_id": record.facebook_page_id,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "last_interaction": record.last_interaction,
            "has_messenger": record.has_messenger,
            "has_instagram": record.has_instagram,
            "ai_context": record.ai_context,
            "ai_context_updated_at": record.ai_context_updated_at,
            "lead_score": record.lead_score,
            "lead_status": record.lead_status,
            "pipeline_id": record.pipeline_id,
            "stage_id": record.stage_id,
        }

    async def insert_many_skip_duplicates(self, records):
        self.bulk_calls += 1
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        if self.fail_bulk:
            raise ContactRepositoryError("bulk insert failed", operation="insert_many")
        inserted = []
        for record in records:
            if record.key in self.rows:
                continue
            row = self._row_from(record)
            self.rows[record.key] = row
            inserted.append({"id": row["id"], "participant_id": record.participant_id})
        return inserted

    async def upsert_one(self, record):
        self.upsert_calls += 1
        if record.participant_id in self.fail_upsert_for:
            raise ContactRepositoryError("upsert failed", operation="upsert_one")
        existing = self.rows.get(record.key)
        if existing is None:
            row = self._row_from(record)
            self.rows[record.key] = row
            return row["id"]
        existing["first_name"] = record.first_name
        for column in ("ai_context", "lead_score", "lead_status", "pipeline_id", "stage_id"):
            if getattr(record, column) is not None:
                existing[column] = getattr(record, column)
        existing["has_messenger"] = existing["has_messenger"] or record.has_messenger
        existing["has_instagram"] = existing["has_instagram"] or record.has_instagram
        return existing["id"]

    async def update_contact(self, contact_id, columns):
        if contact_id in self.fail_update_for:
            raise ContactRepositoryError("update failed", operation="update_contact")
        row = self.by_id(contact_id)
        if row is None:
            raise ContactRepositoryError(f"Contact {contact_id} not found", operation="update_contact")
        row.update(columns)

    async def insert_stage_activities(self, activities):
        if self.fail_activities:
            raise ContactRepositoryError("activity insert failed", operation="insert_stage_activities")
        self.activities.extend(activities)
        return len(activities)


@pytest.fixture
def contact_store():
    return FakeContactStore()


class FakeSyncJobRepository:
    def __init__(self):
        self.jobs: dict[str, SyncJob] = {}
        self.progress_writes: list[dict[str, Any]] = []
        self.finalize_calls: list[tuple[str, str, dict[str, Any]]] = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(0)

    async def create_job(self, facebook_page_id):
        job = SyncJob(
            id=f"job-{next(self._ids)}",
            facebook_page_id=facebook_page_id,
            status="PENDING",
            synced_contacts=0,
            failed_contacts=0,
            total_contacts=0,
            token_expired=False,
            errors=[],
            created_at=BASE_TIME + timedelta(seconds=next(self._clock)),
            started_at=None,
            completed_at=None,
        )
        self.jobs[job.id] = job
        return job

    async def find_active_job(self, facebook_page_id):
        active = [j for j in self.jobs.values() if j.facebook_page_id == facebook_page_id and j.is_active]
        return max(active, key=lambda j: j.created_at) if active else None

    async def load_job(self, job_id):
        return self.jobs.get(job_id)

    async def latest_job_for_page(self, facebook_page_id):
        jobs = [j for j in self.jobs.values() if j.facebook_page_id == facebook_page_id]
        return max(jobs, key=lambda j: j.created_at) if jobs else None

    async def mark_in_progress(self, job_id):
        job = self.jobs.get(job_id)
        if not job or not job.is_active:
            return False
        job.status = "IN_PROGRESS"
        job.started_at = job.started_at or BASE_TIME
        return True

    async def update_progress(self, job_id, fields):
        job = self.jobs.get(job_id)
        if not job or job.status in TERMINAL_STATUSES:
            return False
        self.progress_writes.append(dict(fields))
        for name, value in fields.items():
            setattr(job, name, value)
        return True

    async def finalize(self, job_id, status, fields):
        self.finalize_calls.append((job_id, status, dict(fields)))
        job = self.jobs.get(job_id)
        if not job or job.status in TERMINAL_STATUSES:
            return False
        for name, value in fields.items():
            setattr(job, name, value)
        job.status = status
        job.completed_at = BASE_TIME + timedelta(hours=1)
        return True

    async def mark_cancelled(self, job_id):
        job = self.jobs.get(job_id)
        if not job or not job.is_active:
            return False
        job.status = "CANCELLED"
        job.completed_at = BASE_TIME
        return True

    async def is_cancelled(self, job_id):
        job = self.jobs.get(job_id)
        return bool(job) and job.status == "CANCELLED"


@pytest.fixture
def job_repository():
    return FakeSyncJobRepository()


class FakePageRepository:
    def __init__(self, page: PageConfig | None = None):
        self.page = page or PageConfig(
            id=PAGE_ROW_ID,
            page_id=PAGE_PLATFORM_ID,
            organization_id=ORG_ID,
            access_token="page-token",
        )
        self.range_updates: list[list[tuple[str, int, int]]] = []
        self.touched: list[str] = []

    async def load_page_config(self, facebook_page_id):
        return self.page if facebook_page_id == self.page.id else None

    async def page_belongs_to_org(self, facebook_page_id, organization_id):
        return facebook_page_id == self.page.id and organization_id == self.page.organization_id

    async def update_stage_score_ranges(self, ranges):
        self.range_updates.append(list(ranges))

    async def touch_last_synced(self, facebook_page_id):
        self.touched.append(facebook_page_id)


@pytest.fixture
def page_repository():
    return FakePageRepository()


def make_conversation(index: int, platform: str = "messenger", name: str | None = None) -> ConversationDescriptor:
    own_id = PAGE_PLATFORM_ID if platform == "messenger" else IG_ACCOUNT_ID
    return ConversationDescriptor(
        id=f"{platform}-conv-{index}",
        participants=[
            Participant(id=own_id, name="Acme Store"),
            Participant(id=f"{platform}-user-{index}", name=name if name is not None else f"Person {index}"),
        ],
        updated_time=BASE_TIME + timedelta(minutes=index),
    )


def make_raw_messages(participant_name: str, count: int = 2, start: datetime = BASE_TIME) -> list[dict]:
    """Graph-shaped messages, newest first."""
    messages = []
    for i in range(count):
        stamp = start + timedelta(minutes=i)
        messages.append(
            {
                "message": f"message {i}",
                "from": {"name": participant_name, "id": "x"},
                "created_time": stamp.strftime("%Y-%m-%dT%H:%M:%S+0000"),
            }
        )
    return list(reversed(messages))


class FakeMessagingClient:
    """
    Scripted messaging client.

    `token_expires_on` maps a platform to the 1-based conversation index at
    which listing raises a token-expired error; `expired_fetches` holds
    conversation ids whose message fetch raises one.
    """

    def __init__(
        self,
        conversations: dict[str, list[ConversationDescriptor]] | None = None,
        messages: dict[str, list[dict]] | None = None,
        token_expires_on: dict[str, int] | None = None,
        expired_fetches: set[str] | None = None,
        failing_fetches: set[str] | None = None,
    ):
        self.conversations = conversations or {}
        self.messages = messages or {}
        self.token_expires_on = token_expires_on or {}
        self.expired_fetches = expired_fetches or set()
        self.failing_fetches = failing_fetches or set()
        self.fetch_delay = 0.0
        self.yielded: dict[str, int] = {}
        self.fetched: list[str] = []
        self.active_fetches = 0
        self.peak_fetches = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    async def _iterate(self, platform):
        for position, conversation in enumerate(self.conversations.get(platform, []), start=1):
            if self.token_expires_on.get(platform) == position:
                raise MessagingApiError("Session has expired", code=190, is_token_expired=True)
            self.yielded[platform] = self.yielded.get(platform, 0) + 1
            yield conversation

    def iter_messenger_conversations(self, page_id):
        return self._iterate("messenger")

    def iter_instagram_conversations(self, account_id):
        return self._iterate("instagram")

    async def get_all_messages(self, conversation_id):
        self.fetched.append(conversation_id)
        self.active_fetches += 1
        self.peak_fetches = max(self.peak_fetches, self.active_fetches)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
        finally:
            self.active_fetches -= 1
        if conversation_id in self.expired_fetches:
            raise MessagingApiError("Session has expired", code=190, is_token_expired=True)
        if conversation_id in self.failing_fetches:
            raise MessagingApiError("Temporary failure", code=2, status_code=500)
        return list(self.messages.get(conversation_id, []))


class FakeScorer:
    def __init__(
        self, score: int = 50, summary: str = "Interested in pricing", lead_status: str | None = None
    ):
        self.score = score
        self.summary = summary
        self.lead_status = lead_status
        self.calls: list[int] = []

    async def classify(self, messages, stages=None):
        self.calls.append(len(messages))
        return LeadClassification(
            lead_score=self.score, summary=self.summary, lead_status=self.lead_status, confidence=90
        )


@pytest.fixture
def scorer():
    return FakeScorer()
