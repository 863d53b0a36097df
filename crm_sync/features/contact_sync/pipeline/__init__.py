"""
Contact sync pipeline stages.
"""

from .aggregator import ContactAggregator
from .batch_operations import BatchUpsertEngine
from .differential_fetch import DifferentialFetchEngine
from .progress_tracker import ProgressTracker
from .stage_assigner import (
    PipelineStageAssigner,
    ensure_stage_score_ranges,
    find_matching_stage,
    generate_score_ranges,
    has_placeholder_ranges,
)
from .streaming_processor import StreamingProcessor, StreamingProcessorOptions

__all__ = [
    "BatchUpsertEngine",
    "ContactAggregator",
    "DifferentialFetchEngine",
    "PipelineStageAssigner",
    "ProgressTracker",
    "StreamingProcessor",
    "StreamingProcessorOptions",
    "ensure_stage_score_ranges",
    "find_matching_stage",
    "generate_score_ranges",
    "has_placeholder_ranges",
]
