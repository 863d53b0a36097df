"""
Domain models for the contact sync feature.

Plain dataclasses shared by the pipeline, repositories, services and API
layers. They carry no persistence logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Platform = Literal["messenger", "instagram"]
SyncJobStatus = Literal["PENDING", "IN_PROGRESS", "COMPLETED", "FAILED", "CANCELLED"]
AutoPipelineMode = Literal["SKIP_EXISTING", "UPDATE_EXISTING"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"PENDING", "IN_PROGRESS"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED", "CANCELLED"})

PLATFORM_LABELS: dict[str, str] = {"messenger": "Messenger", "instagram": "Instagram"}


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SyncError:
    """One entry in a job's error list."""

    platform: str
    id: str
    error: str
    code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"platform": self.platform, "id": self.id, "error": self.error}
        if self.code is not None:
            data["code"] = self.code
        return data


@dataclass(slots=True)
class SyncJob:
    """Represents a sync_jobs row."""

    id: str
    facebook_page_id: str
    status: SyncJobStatus
    synced_contacts: int
    failed_contacts: int
    total_contacts: int
    token_expired: bool
    errors: list[dict[str, Any]]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class StartSyncResult:
    job_id: str
    already_running: bool
    message: str


@dataclass(slots=True)
class SyncOutcome:
    """What a finished job run reports back to the worker."""

    job_id: str
    status: SyncJobStatus
    synced_count: int
    failed_count: int
    token_expired: bool
    errors: list[SyncError] = field(default_factory=list)
    finalized: bool = True
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Pages and pipelines
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PipelineStage:
    id: str
    name: str
    type: str
    order: int
    lead_score_min: int
    lead_score_max: int
    description: str | None = None

    def contains(self, score: float) -> bool:
        return self.lead_score_min <= score <= self.lead_score_max


@dataclass(slots=True)
class Pipeline:
    id: str
    name: str
    stages: list[PipelineStage]


@dataclass(slots=True)
class PageConfig:
    """A connected source page and its auto-pipeline configuration."""

    id: str
    page_id: str
    organization_id: str
    access_token: str
    instagram_account_id: str | None = None
    auto_pipeline: Pipeline | None = None
    auto_pipeline_mode: AutoPipelineMode = "SKIP_EXISTING"


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Participant:
    id: str
    name: str | None = None
    username: str | None = None


@dataclass(slots=True)
class ConversationDescriptor:
    id: str
    participants: list[Participant]
    updated_time: datetime | None


@dataclass(slots=True)
class CachedMessage:
    sender: str
    text: str
    timestamp: datetime | None = None


@dataclass(slots=True)
class DifferentialFetchResult:
    """`messages` are the not-yet-ingested ones; `history` is the whole conversation."""

    messages: list[CachedMessage]
    is_full_sync: bool
    cached: bool
    last_sync_at: datetime | None = None
    history: list[CachedMessage] = field(default_factory=list)


@dataclass(slots=True)
class LeadClassification:
    """Output of the scoring collaborator."""

    lead_score: int
    summary: str | None = None
    lead_status: str | None = None
    recommended_stage: str | None = None
    confidence: int | None = None


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ExistingContact:
    id: str
    pipeline_id: str | None = None
    stage_id: str | None = None


@dataclass(slots=True)
class StageAssignment:
    pipeline_id: str
    stage_id: str
    stage_name: str


@dataclass(slots=True)
class ProcessedContact:
    """A conversation turned into a contact record, waiting to be batched."""

    participant_id: str
    conversation_id: str
    platform: Platform
    first_name: str
    last_name: str | None
    last_interaction: datetime
    classification: LeadClassification | None = None
    stage: StageAssignment | None = None
    existing_contact_id: str | None = None
    existing_stage_id: str | None = None

    @property
    def ai_context(self) -> str | None:
        return self.classification.summary if self.classification else None


@dataclass(slots=True)
class ContactCreate:
    """Storage-ready create payload; `existing_contact_id` routes it to an update."""

    participant_id: str
    facebook_page_id: str
    organization_id: str
    platform: Platform
    first_name: str
    last_name: str | None
    last_interaction: datetime
    has_messenger: bool = False
    has_instagram: bool = False
    ai_context: str | None = None
    ai_context_updated_at: datetime | None = None
    lead_score: int | None = None
    lead_status: str | None = None
    pipeline_id: str | None = None
    stage_id: str | None = None
    stage_entered_at: datetime | None = None
    existing_contact_id: str | None = None
    # Not stored on the contact; feeds the stage activity record
    previous_stage_id: str | None = None
    classification: LeadClassification | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.participant_id, self.facebook_page_id)


@dataclass(slots=True)
class ContactBatch:
    contacts: list[ContactCreate]
    classifications: dict[str, LeadClassification]
    metadata: dict[str, dict[str, str]]


# Update payloads are a closed set of typed patches. A ContactUpdate's shape
# (the sorted patch kinds) is the grouping key used by batch updates.


@dataclass(frozen=True, slots=True)
class ProfilePatch:
    first_name: str
    last_name: str | None
    last_interaction: datetime

    kind = "profile"

    def columns(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "last_interaction": self.last_interaction,
        }


@dataclass(frozen=True, slots=True)
class ChannelPatch:
    platform: Platform

    kind = "channel"

    def columns(self) -> dict[str, Any]:
        column = "has_messenger" if self.platform == "messenger" else "has_instagram"
        return {column: True}


@dataclass(frozen=True, slots=True)
class ContextPatch:
    ai_context: str | None
    ai_context_updated_at: datetime | None

    kind = "context"

    def columns(self) -> dict[str, Any]:
        return {
            "ai_context": self.ai_context,
            "ai_context_updated_at": self.ai_context_updated_at,
        }


@dataclass(frozen=True, slots=True)
class ScorePatch:
    lead_score: int

    kind = "score"

    def columns(self) -> dict[str, Any]:
        return {"lead_score": self.lead_score}


@dataclass(frozen=True, slots=True)
class StatusPatch:
    lead_status: str

    kind = "status"

    def columns(self) -> dict[str, Any]:
        return {"lead_status": self.lead_status}


@dataclass(frozen=True, slots=True)
class StagePatch:
    pipeline_id: str | None
    stage_id: str | None
    stage_entered_at: datetime | None

    kind = "stage"

    def columns(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "stage_id": self.stage_id,
            "stage_entered_at": self.stage_entered_at,
        }


ContactPatch = ProfilePatch | ChannelPatch | ContextPatch | ScorePatch | StatusPatch | StagePatch


@dataclass(slots=True)
class StageActivity:
    """A contact_activities row for an automatic stage assignment."""

    contact_id: str
    to_stage_id: str
    from_stage_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    type: str = "STAGE_CHANGED"
    title: str = "AI auto-assigned to pipeline"


@dataclass(slots=True)
class ContactUpdate:
    contact_id: str
    patches: tuple[ContactPatch, ...]
    activity: StageActivity | None = None

    @property
    def shape(self) -> tuple[str, ...]:
        return tuple(sorted(patch.kind for patch in self.patches))

    def columns(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for patch in self.patches:
            merged.update(patch.columns())
        return merged


@dataclass(slots=True)
class BatchOperationResult:
    success_count: int = 0
    failure_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    created_contact_ids: list[str] = field(default_factory=list)
    updated_contact_ids: list[str] = field(default_factory=list)
    stage_activities: list[StageActivity] = field(default_factory=list)

    def record_failure(self, contact_id: str, error: str) -> None:
        self.failure_count += 1
        self.errors.append({"contact_id": contact_id, "error": error})

    def merge(self, other: "BatchOperationResult") -> "BatchOperationResult":
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.errors.extend(other.errors)
        self.created_contact_ids.extend(other.created_contact_ids)
        self.updated_contact_ids.extend(other.updated_contact_ids)
        self.stage_activities.extend(other.stage_activities)
        return self


@dataclass(slots=True)
class StreamResult:
    """Outcome of one platform's conversation stream."""

    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    token_expired: bool = False
    fatal_error: str | None = None
    fatal_error_code: int | None = None
    cancelled: bool = False
