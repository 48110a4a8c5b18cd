"""Quality and audit reports emitted by the pipeline stages.

Reports are plain data. Stages hand them to an injected reporter
(see ``reporting.reporter``) which decides whether and how to render them.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional
import pandas as pd


def _frame_records(frame: Optional[pd.DataFrame]) -> List[Dict[str, Any]]:
    if frame is None or frame.empty:
        return []
    return frame.astype(object).where(frame.notna(), None).to_dict(orient='records')


@dataclass
class AssemblyReport:
    """Outcome of assembling one asset from its sources."""

    asset_name: str
    rows_per_source: Dict[str, int] = field(default_factory=dict)
    skipped_sources: Dict[str, str] = field(default_factory=dict)
    duplicates_collapsed: Dict[str, int] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return sum(self.rows_per_source.values())

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['total_rows'] = self.total_rows
        return result


@dataclass
class LongFormatSummary:
    """Per-source statistics and multi-source coverage for a long-format asset.

    Attributes:
        source_summary: One row per source with n_rows, n_patients,
            priority, quality and coverage
        coverage: Number of patients by how many sources contribute data
    """

    asset_name: str
    n_rows: int
    n_patients: int
    source_summary: pd.DataFrame
    coverage: pd.DataFrame

    def to_dict(self) -> Dict[str, Any]:
        return {
            'asset_name': self.asset_name,
            'n_rows': self.n_rows,
            'n_patients': self.n_patients,
            'source_summary': _frame_records(self.source_summary),
            'coverage': _frame_records(self.coverage),
        }


@dataclass
class ConflictReport:
    """Cross-source disagreement on a single value column."""

    asset_name: str
    value_column: str
    n_patients: int
    n_conflicting: int

    @property
    def conflict_pct(self) -> float:
        if self.n_patients == 0:
            return 0.0
        return round(100.0 * self.n_conflicting / self.n_patients, 2)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['conflict_pct'] = self.conflict_pct
        return result


@dataclass
class ExclusionStep:
    """One filter applied while building the cohort."""

    name: str
    n_excluded: int
    n_remaining: int


@dataclass
class CohortReport:
    """Step-by-step exclusion counts for a cohort build."""

    initial_count: int
    parameters: Dict[str, Any] = field(default_factory=dict)
    steps: List[ExclusionStep] = field(default_factory=list)

    @property
    def final_count(self) -> int:
        if not self.steps:
            return self.initial_count
        return self.steps[-1].n_remaining

    @property
    def total_excluded(self) -> int:
        return self.initial_count - self.final_count

    def add_step(self, name: str, before: int, after: int) -> ExclusionStep:
        step = ExclusionStep(name=name, n_excluded=before - after, n_remaining=after)
        self.steps.append(step)
        return step

    def get_step(self, name: str) -> Optional[ExclusionStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initial_count': self.initial_count,
            'final_count': self.final_count,
            'total_excluded': self.total_excluded,
            'parameters': {k: str(v) if v is not None else None for k, v in self.parameters.items()},
            'steps': [asdict(step) for step in self.steps],
        }


@dataclass
class EventQualityReport:
    """Data quality of the events matched for one covariate or outcome.

    Coverage is measured over cohort members before the window is applied;
    the date range covers every matched event.
    """

    name: str
    label: str
    kind: str
    cohort_size: int
    n_codes: int = 0
    n_events: int = 0
    n_patients_with_events: int = 0
    earliest_date: Optional[pd.Timestamp] = None
    latest_date: Optional[pd.Timestamp] = None
    code_counts: Optional[pd.DataFrame] = None
    window: str = ""
    n_events_in_window: int = 0
    n_flagged: int = 0

    @property
    def coverage_pct(self) -> float:
        if self.cohort_size == 0:
            return 0.0
        return round(100.0 * self.n_patients_with_events / self.cohort_size, 2)

    @property
    def flagged_pct(self) -> float:
        if self.cohort_size == 0:
            return 0.0
        return round(100.0 * self.n_flagged / self.cohort_size, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'label': self.label,
            'kind': self.kind,
            'cohort_size': self.cohort_size,
            'n_codes': self.n_codes,
            'n_events': self.n_events,
            'n_patients_with_events': self.n_patients_with_events,
            'coverage_pct': self.coverage_pct,
            'earliest_date': None if self.earliest_date is None else str(self.earliest_date.date()),
            'latest_date': None if self.latest_date is None else str(self.latest_date.date()),
            'code_counts': _frame_records(self.code_counts),
            'window': self.window,
            'n_events_in_window': self.n_events_in_window,
            'n_flagged': self.n_flagged,
            'flagged_pct': self.flagged_pct,
        }


@dataclass
class CombineReport:
    """Shape and flag prevalence of the final analysis table."""

    n_rows: int
    n_columns: int
    n_cohort_columns: int
    flag_prevalence: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PreprocessingStep:
    """One preprocessing step applied to a source table."""

    name: str
    step_type: str
    n_rows_before: int
    n_rows_after: int
    detail: str = ""


@dataclass
class PreprocessingReport:
    """Row counts through the preprocessing steps of one dataset."""

    dataset: str
    n_rows_in: int
    steps: List[PreprocessingStep] = field(default_factory=list)

    @property
    def n_rows_out(self) -> int:
        if not self.steps:
            return self.n_rows_in
        return self.steps[-1].n_rows_after

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dataset': self.dataset,
            'n_rows_in': self.n_rows_in,
            'n_rows_out': self.n_rows_out,
            'steps': [asdict(step) for step in self.steps],
        }
