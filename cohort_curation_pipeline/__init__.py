"""Cohort Curation Pipeline.

Builds analysis-ready research cohorts from multi-source health records:
long-format source assembly, per-dataset preprocessing, priority
resolution, cohort filtering and time-windowed covariate and outcome flags.
"""

__version__ = "0.1.0"

from .config import ConfigurationManager
from .builders import (
    LongFormatAssembler,
    PriorityResolver,
    CohortBuilder,
    TemporalEventSelector,
    DatasetCombiner,
    DataPreprocessor,
)
from .pipeline import CohortPipeline
from .sources import DuckDBSourceAdapter
from .reporting import LoggingReporter, CollectingReporter, NullReporter

__all__ = [
    "ConfigurationManager",
    "LongFormatAssembler",
    "PriorityResolver",
    "CohortBuilder",
    "TemporalEventSelector",
    "DatasetCombiner",
    "DataPreprocessor",
    "CohortPipeline",
    "DuckDBSourceAdapter",
    "LoggingReporter",
    "CollectingReporter",
    "NullReporter",
]
