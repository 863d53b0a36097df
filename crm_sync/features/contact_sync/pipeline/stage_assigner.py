"""
Pipeline stage assignment by lead score.

Each stage owns a closed score range [lead_score_min, lead_score_max]. The
first stage by ascending `order` containing the score wins; a score outside
every range leaves the contact unassigned. Stages created with the default
placeholder range (0-100) are re-partitioned evenly once, before the first
sync that auto-assigns into the pipeline.
"""

from typing import Protocol

from crm_sync.features.contact_sync.domain import (
    AutoPipelineMode,
    ExistingContact,
    Pipeline,
    PipelineStage,
    StageAssignment,
)
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCORE_MIN = 0
SCORE_MAX = 100


class StageRangeStore(Protocol):
    async def update_stage_score_ranges(self, ranges: list[tuple[str, int, int]]) -> None: ...


def find_matching_stage(score: float | None, stages: list[PipelineStage]) -> PipelineStage | None:
    if score is None:
        return None
    for stage in sorted(stages, key=lambda s: s.order):
        if stage.contains(score):
            return stage
    return None


def generate_score_ranges(count: int) -> list[tuple[int, int]]:
    """
    Evenly partition [0, 100] into `count` contiguous integer ranges.

    >>> generate_score_ranges(4)
    [(0, 24), (25, 49), (50, 74), (75, 100)]
    """
    if count <= 0:
        return []

    width = (SCORE_MAX - SCORE_MIN) / count
    ranges = []
    for i in range(count):
        low = SCORE_MIN + round(i * width)
        high = SCORE_MIN + round((i + 1) * width) - 1
        ranges.append((low, high))
    ranges[-1] = (ranges[-1][0], SCORE_MAX)
    return ranges


def has_placeholder_ranges(stages: list[PipelineStage]) -> bool:
    return any(
        s.lead_score_min == SCORE_MIN and s.lead_score_max == SCORE_MAX for s in stages
    ) and len(stages) > 1


async def ensure_stage_score_ranges(pipeline: Pipeline, repository: StageRangeStore) -> Pipeline:
    """
    Replace placeholder ranges with an even partition and persist it.

    Idempotent: once ranges are partitioned the pipeline is returned as is.
    """
    if not has_placeholder_ranges(pipeline.stages):
        return pipeline

    ordered = sorted(pipeline.stages, key=lambda s: s.order)
    ranges = generate_score_ranges(len(ordered))
    await repository.update_stage_score_ranges(
        [(stage.id, low, high) for stage, (low, high) in zip(ordered, ranges)]
    )
    for stage, (low, high) in zip(ordered, ranges):
        stage.lead_score_min = low
        stage.lead_score_max = high

    logger.info(
        "Auto-generated pipeline stage score ranges",
        pipeline_id=pipeline.id,
        stage_count=len(ordered),
    )
    return Pipeline(id=pipeline.id, name=pipeline.name, stages=ordered)


class PipelineStageAssigner:
    """Applies one auto-pipeline and update mode to every contact of a job."""

    def __init__(self, pipeline: Pipeline, mode: AutoPipelineMode = "SKIP_EXISTING"):
        self.pipeline = pipeline
        self.mode = mode

    def assign(
        self, score: float | None, existing: ExistingContact | None = None
    ) -> StageAssignment | None:
        if self.mode == "SKIP_EXISTING" and existing is not None and existing.pipeline_id:
            return None

        stage = find_matching_stage(score, self.pipeline.stages)
        if stage is None:
            return None

        if existing is not None and existing.stage_id == stage.id:
            return None

        return StageAssignment(
            pipeline_id=self.pipeline.id, stage_id=stage.id, stage_name=stage.name
        )
