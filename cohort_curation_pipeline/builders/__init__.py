"""Pipeline stages."""

from .long_format import LongFormatAssembler
from .resolver import PriorityResolver
from .cohort import CohortBuilder
from .events import TemporalEventSelector
from .combiner import DatasetCombiner
from .preprocessing import DataPreprocessor

__all__ = [
    "LongFormatAssembler",
    "PriorityResolver",
    "CohortBuilder",
    "TemporalEventSelector",
    "DatasetCombiner",
    "DataPreprocessor",
]
