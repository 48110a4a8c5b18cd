"""Typed configuration records and canonical column names."""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Any, List, Optional
import pandas as pd
from ..exceptions import ConfigurationError
from .reports import CohortReport, EventQualityReport, CombineReport, AssemblyReport

PATIENT_ID = 'patient_id'
INDEX_DATE = 'index_date'
AGE_AT_INDEX = 'age_at_index'
EVENT_DATE = 'event_date'
CODE = 'code'
TERMINOLOGY = 'terminology'
DAYS_FROM_INDEX = 'days_from_index'
DAYS_TO_INDEX = 'days_to_index'

SOURCE_NAME = 'source_name'
SOURCE_DB_TABLE = 'source_db_table'
SOURCE_PRIORITY = 'source_priority'
SOURCE_QUALITY = 'source_quality'
SOURCE_COVERAGE = 'source_coverage'
SOURCE_LAST_UPDATED = 'source_last_updated'

SOURCE_METADATA_COLUMNS = [
    SOURCE_NAME,
    SOURCE_DB_TABLE,
    SOURCE_PRIORITY,
    SOURCE_QUALITY,
    SOURCE_COVERAGE,
    SOURCE_LAST_UPDATED,
]

LOOKUP_COLUMNS = ['code', 'name', 'description', 'terminology']

DEMOGRAPHIC_COLUMNS = {
    'date_of_birth': 'date_of_birth',
    'sex': 'sex_code',
    'ethnicity': 'ethnicity_code',
    'lsoa': 'lsoa_code',
}

COVARIATE = 'covariate'
OUTCOME = 'outcome'
SELECTION_METHODS = ('min', 'max')

CODE_MATCH = 'code_match'
VALUE_VALIDATION = 'value_validation'
COVARIATE_FLAG = 'covariate_flag'
OUTCOME_FLAG = 'outcome_flag'
DATA_TRANSFORMATION = 'data_transformation'
PREPROCESSING_STEP_TYPES = (CODE_MATCH, VALUE_VALIDATION, COVARIATE_FLAG, OUTCOME_FLAG, DATA_TRANSFORMATION)

VALIDATION_ACTIONS = ('flag', 'filter', 'transform')
TRANSFORM_TYPES = ('date_conversion', 'numeric_conversion', 'string_cleaning', 'categorical_mapping')
JOIN_TYPES = ('left', 'inner', 'semi')
LOOKUP_SOURCE_TYPES = ('lookup', 'csv', 'inline', 'database')
BASELINE_STRATEGIES = ('fixed', 'database')


class SourceQuality(str, Enum):
    """Declared quality tier of a data source."""

    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'

    @classmethod
    def parse(cls, value: Any) -> 'SourceQuality':
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ', '.join(q.value for q in cls)
            raise ConfigurationError(f"Unknown source quality '{value}', expected one of: {allowed}")


class AssetKind(str, Enum):
    """Attribute assets hold one value per patient per source; event assets hold many."""

    ATTRIBUTE = 'attribute'
    EVENT = 'event'


@dataclass
class SourceConfig:
    """Where and how to read one source of an asset."""

    name: str
    priority: int
    table_name: Optional[str] = None
    query: Optional[str] = None
    schema: Optional[str] = None
    quality: SourceQuality = SourceQuality.MEDIUM
    coverage: Optional[float] = None
    last_updated: Optional[date] = None
    terminology: Optional[str] = None
    primary_key: Optional[str] = None
    columns: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, spec: Dict[str, Any], default_schema: Optional[str] = None) -> 'SourceConfig':
        """Build a source record from its YAML mapping.

        Raises:
            ConfigurationError: If the mapping is incomplete or inconsistent
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Source '{name}' must be a dictionary")

        table_name = spec.get('table_name')
        query = spec.get('query')
        if not table_name and not query:
            raise ConfigurationError(f"Source '{name}' needs either table_name or query")
        if table_name and query:
            raise ConfigurationError(f"Source '{name}' cannot define both table_name and query")

        priority = spec.get('priority')
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            raise ConfigurationError(f"Source '{name}' priority must be a positive integer, got {priority!r}")

        coverage = spec.get('coverage')
        if coverage is not None:
            if isinstance(coverage, bool) or not isinstance(coverage, (int, float)) or not 0 <= coverage <= 1:
                raise ConfigurationError(f"Source '{name}' coverage must be between 0 and 1, got {coverage!r}")
            coverage = float(coverage)

        last_updated = spec.get('last_updated')
        if last_updated is not None:
            try:
                last_updated = pd.Timestamp(last_updated).date()
            except (ValueError, TypeError):
                raise ConfigurationError(f"Source '{name}' has invalid last_updated: {last_updated!r}")

        columns = spec.get('columns') or {}
        if not isinstance(columns, dict):
            raise ConfigurationError(f"Source '{name}' columns must map internal to external names")
        if 'patient_id' not in columns and not spec.get('primary_key'):
            raise ConfigurationError(f"Source '{name}' must map patient_id or declare a primary_key")

        return cls(
            name=name,
            priority=priority,
            table_name=table_name,
            query=query,
            schema=spec.get('schema', default_schema),
            quality=SourceQuality.parse(spec.get('quality', 'medium')),
            coverage=coverage,
            last_updated=last_updated,
            terminology=spec.get('terminology'),
            primary_key=spec.get('primary_key'),
            columns={str(k): str(v) for k, v in columns.items()},
        )

    @property
    def column_mapping(self) -> Dict[str, str]:
        """Internal to external column names, with patient_id always present."""
        mapping = dict(self.columns)
        if 'patient_id' not in mapping:
            mapping = {'patient_id': self.primary_key, **mapping}
        return mapping

    @property
    def db_table(self) -> str:
        if self.table_name is None:
            return f"query:{self.name}"
        if self.schema:
            return f"{self.schema}.{self.table_name}"
        return self.table_name


@dataclass
class AssetConfig:
    """A logical data item and the sources that can supply it."""

    name: str
    sources: Dict[str, SourceConfig]
    kind: AssetKind = AssetKind.ATTRIBUTE
    description: str = ""
    default_source: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, spec: Dict[str, Any], default_schema: Optional[str] = None) -> 'AssetConfig':
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Asset '{name}' must be a dictionary")
        sources_spec = spec.get('sources')
        if not isinstance(sources_spec, dict) or not sources_spec:
            raise ConfigurationError(f"Asset '{name}' must define at least one source")

        try:
            kind = AssetKind(spec.get('kind', 'attribute'))
        except ValueError:
            raise ConfigurationError(f"Asset '{name}' kind must be 'attribute' or 'event'")

        sources = {
            source_name: SourceConfig.from_dict(source_name, source_spec, default_schema)
            for source_name, source_spec in sources_spec.items()
        }

        default_source = spec.get('default_source')
        if default_source is not None and default_source not in sources:
            raise ConfigurationError(
                f"Asset '{name}' default_source '{default_source}' is not one of its sources"
            )

        return cls(
            name=name,
            sources=sources,
            kind=kind,
            description=spec.get('description', ''),
            default_source=default_source,
        )

    @property
    def is_event(self) -> bool:
        return self.kind == AssetKind.EVENT


@dataclass
class EventDefinition:
    """A configured covariate or outcome."""

    name: str
    kind: str
    event_assets: List[str]
    label: Optional[str] = None
    days_before_start: Optional[int] = None
    days_before_end: int = 0
    days_after_start: int = 0
    days_after_end: Optional[int] = None
    selection_method: str = 'min'
    calculate_days: bool = True

    def __post_init__(self) -> None:
        if self.label is None:
            self.label = self.name

    @classmethod
    def from_dict(cls, spec: Dict[str, Any], kind: str) -> 'EventDefinition':
        if not isinstance(spec, dict) or not spec.get('name'):
            raise ConfigurationError(f"Each {kind} entry must be a dictionary with a name")

        event_assets = spec.get('event_assets', [])
        if isinstance(event_assets, str):
            event_assets = [event_assets]

        selection_method = spec.get('selection_method', 'min')
        if selection_method not in SELECTION_METHODS:
            raise ConfigurationError(
                f"{kind} '{spec['name']}' selection_method must be one of {SELECTION_METHODS}"
            )

        params: Dict[str, Any] = {}
        if kind == COVARIATE:
            params['days_before_start'] = spec.get('days_before_start')
            params['days_before_end'] = spec.get('days_before_end', 0)
        else:
            params['days_after_start'] = spec.get('days_after_start', 0)
            params['days_after_end'] = spec.get('days_after_end')

        days_key = 'calculate_days_to_index' if kind == COVARIATE else 'calculate_days_from_index'
        calculate_days = spec.get(days_key, True)
        if not isinstance(calculate_days, bool):
            raise ConfigurationError(f"{kind} '{spec['name']}' {days_key} must be true or false")

        return cls(
            name=spec['name'],
            kind=kind,
            event_assets=list(event_assets),
            label=spec.get('label'),
            selection_method=selection_method,
            calculate_days=calculate_days,
            **params,
        )


@dataclass
class CohortResult:
    """Eligible cohort members and the exclusion audit trail."""

    members: pd.DataFrame
    report: CohortReport

    def __len__(self) -> int:
        return len(self.members)


@dataclass
class EventResult:
    """A covariate or outcome: one row per cohort member plus its quality report."""

    label: str
    name: str
    kind: str
    data: pd.DataFrame
    quality: EventQualityReport

    @property
    def flag_column(self) -> str:
        return f"{self.kind}_flag"

    @property
    def date_column(self) -> str:
        return f"{self.kind}_date"

    @property
    def days_column(self) -> str:
        return DAYS_TO_INDEX if self.kind == COVARIATE else DAYS_FROM_INDEX

    @property
    def value_columns(self) -> List[str]:
        return [self.flag_column, self.date_column, self.days_column]

    @property
    def n_flagged(self) -> int:
        return int(self.data[self.flag_column].sum())


@dataclass
class PipelineResult:
    """Everything produced by one end-to-end pipeline run."""

    dataset: pd.DataFrame
    cohort: CohortResult
    covariates: List[EventResult] = field(default_factory=list)
    outcomes: List[EventResult] = field(default_factory=list)
    assembly_reports: Dict[str, AssemblyReport] = field(default_factory=dict)
    combine_report: Optional[CombineReport] = None
