"""
Domain layer for contact sync.
"""

from .models import (
    ACTIVE_STATUSES,
    PLATFORM_LABELS,
    TERMINAL_STATUSES,
    AutoPipelineMode,
    BatchOperationResult,
    CachedMessage,
    ChannelPatch,
    ContactBatch,
    ContactCreate,
    ContactPatch,
    ContactUpdate,
    ContextPatch,
    ConversationDescriptor,
    DifferentialFetchResult,
    ExistingContact,
    LeadClassification,
    PageConfig,
    Participant,
    Pipeline,
    PipelineStage,
    Platform,
    ProcessedContact,
    ProfilePatch,
    ScorePatch,
    StageActivity,
    StageAssignment,
    StagePatch,
    StartSyncResult,
    StatusPatch,
    StreamResult,
    SyncError,
    SyncJob,
    SyncJobStatus,
    SyncOutcome,
)

__all__ = [
    "ACTIVE_STATUSES",
    "PLATFORM_LABELS",
    "TERMINAL_STATUSES",
    "AutoPipelineMode",
    "BatchOperationResult",
    "CachedMessage",
    "ChannelPatch",
    "ContactBatch",
    "ContactCreate",
    "ContactPatch",
    "ContactUpdate",
    "ContextPatch",
    "ConversationDescriptor",
    "DifferentialFetchResult",
    "ExistingContact",
    "LeadClassification",
    "PageConfig",
    "Participant",
    "Pipeline",
    "PipelineStage",
    "Platform",
    "ProcessedContact",
    "ProfilePatch",
    "ScorePatch",
    "StageActivity",
    "StageAssignment",
    "StagePatch",
    "StartSyncResult",
    "StatusPatch",
    "StreamResult",
    "SyncError",
    "SyncJob",
    "SyncJobStatus",
    "SyncOutcome",
]
