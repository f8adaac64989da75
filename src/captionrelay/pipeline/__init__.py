"""
Labeling pipeline: batch dispatch of image directories and tag file handling.
"""

from captionrelay.pipeline.labeling import (
    LabelingPipeline,
    PipelineConfig,
    build_payload,
    compute_dispatch_timeout,
    find_images,
    find_short_results,
    resolve_concurrency,
    retry_short,
    save_results,
    save_tag,
    scan_tag_results,
    tag_text_path,
)
from captionrelay.pipeline.stats import AggregateStats, StatsLogger

__all__ = [
    "LabelingPipeline",
    "PipelineConfig",
    "AggregateStats",
    "StatsLogger",
    "build_payload",
    "compute_dispatch_timeout",
    "find_images",
    "find_short_results",
    "resolve_concurrency",
    "retry_short",
    "save_results",
    "save_tag",
    "scan_tag_results",
    "tag_text_path",
]
