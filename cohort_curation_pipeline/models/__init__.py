"""Data models, configuration records and reports."""

from .base import BaseStage, BaseValidator
from .records import (
    SourceQuality,
    AssetKind,
    SourceConfig,
    AssetConfig,
    EventDefinition,
    CohortResult,
    EventResult,
    PipelineResult,
)
from .reports import (
    AssemblyReport,
    LongFormatSummary,
    ConflictReport,
    ExclusionStep,
    CohortReport,
    EventQualityReport,
    CombineReport,
    PreprocessingStep,
    PreprocessingReport,
)

__all__ = [
    "BaseStage",
    "BaseValidator",
    "SourceQuality",
    "AssetKind",
    "SourceConfig",
    "AssetConfig",
    "EventDefinition",
    "CohortResult",
    "EventResult",
    "PipelineResult",
    "AssemblyReport",
    "LongFormatSummary",
    "ConflictReport",
    "ExclusionStep",
    "CohortReport",
    "EventQualityReport",
    "CombineReport",
    "PreprocessingStep",
    "PreprocessingReport",
]
