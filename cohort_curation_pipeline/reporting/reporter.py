"""Reporters that receive the quality reports produced by pipeline stages."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Type
from ..logging_config import get_logger, REPORT_LOGGER
from ..models.reports import (
    AssemblyReport,
    LongFormatSummary,
    ConflictReport,
    CohortReport,
    EventQualityReport,
    CombineReport,
    PreprocessingReport,
)


class BaseReporter(ABC):
    """Abstract base class for report sinks."""

    @abstractmethod
    def emit(self, report: Any) -> None:
        """Receive a report from a pipeline stage.

        Args:
            report: One of the dataclasses in ``models.reports``
        """
        pass


class NullReporter(BaseReporter):
    """Discards every report."""

    def emit(self, report: Any) -> None:
        return None


class CollectingReporter(BaseReporter):
    """Keeps reports in memory so callers and tests can inspect them."""

    def __init__(self) -> None:
        self.reports: List[Any] = []

    def emit(self, report: Any) -> None:
        self.reports.append(report)

    def of_type(self, report_type: Type[Any]) -> List[Any]:
        return [r for r in self.reports if isinstance(r, report_type)]

    def last(self, report_type: Type[Any]) -> Optional[Any]:
        matching = self.of_type(report_type)
        return matching[-1] if matching else None

    def clear(self) -> None:
        self.reports.clear()


class LoggingReporter(BaseReporter):
    """Renders reports as log lines on the report logger."""

    def __init__(self, logger_name: str = REPORT_LOGGER) -> None:
        self.logger = get_logger(logger_name)
        self._renderers: Dict[Type[Any], Callable[[Any], List[str]]] = {
            AssemblyReport: self._render_assembly,
            LongFormatSummary: self._render_summary,
            ConflictReport: self._render_conflicts,
            CohortReport: self._render_cohort,
            EventQualityReport: self._render_event_quality,
            CombineReport: self._render_combine,
            PreprocessingReport: self._render_preprocessing,
        }

    def emit(self, report: Any) -> None:
        renderer = self._renderers.get(type(report))
        if renderer is None:
            self.logger.info(f"{type(report).__name__}: {report}")
            return
        for line in renderer(report):
            self.logger.info(line)

    def _render_assembly(self, report: AssemblyReport) -> List[str]:
        lines = [f"Asset '{report.asset_name}': {report.total_rows} rows from "
                 f"{len(report.rows_per_source)} source(s)"]
        for source, n_rows in report.rows_per_source.items():
            lines.append(f"  {source}: {n_rows} rows")
        for source, n_dropped in report.duplicates_collapsed.items():
            lines.append(f"  {source}: {n_dropped} duplicate patient rows collapsed")
        for source, reason in report.skipped_sources.items():
            lines.append(f"  {source}: skipped ({reason})")
        return lines

    def _render_summary(self, report: LongFormatSummary) -> List[str]:
        lines = [f"Long-format summary for '{report.asset_name}': "
                 f"{report.n_rows} rows, {report.n_patients} patients"]
        for row in report.source_summary.itertuples(index=False):
            line = f"  {row.source_name}: {row.n_rows} rows, {row.n_patients} patients, priority {row.priority}"
            quality = getattr(row, 'quality', None)
            if quality is not None:
                line += f", quality {quality}"
            lines.append(line)
        for row in report.coverage.itertuples(index=False):
            lines.append(f"  {row.n_patients} patients covered by {row.n_sources} source(s)")
        return lines

    def _render_conflicts(self, report: ConflictReport) -> List[str]:
        return [
            f"Conflicts in '{report.asset_name}.{report.value_column}': "
            f"{report.n_conflicting}/{report.n_patients} patients ({report.conflict_pct}%)"
        ]

    def _render_cohort(self, report: CohortReport) -> List[str]:
        lines = [f"Cohort: {report.initial_count} candidates"]
        for step in report.steps:
            lines.append(f"  {step.name}: excluded {step.n_excluded}, remaining {step.n_remaining}")
        lines.append(f"Cohort: {report.final_count} members "
                     f"({report.total_excluded} excluded in total)")
        return lines

    def _render_event_quality(self, report: EventQualityReport) -> List[str]:
        lines = [
            f"{report.kind.capitalize()} '{report.label}' ({report.name}): "
            f"{report.n_codes} codes, {report.n_events} events, "
            f"coverage {report.coverage_pct}% of {report.cohort_size} cohort members"
        ]
        if report.earliest_date is not None:
            lines.append(f"  event dates {report.earliest_date.date()} to {report.latest_date.date()}")
        if report.code_counts is not None:
            for row in report.code_counts.head(10).itertuples(index=False):
                lines.append(f"  {row.code}: {row.n_events} events, {row.n_patients} patients")
        lines.append(
            f"  window {report.window}: {report.n_events_in_window} events, "
            f"{report.n_flagged} flagged ({report.flagged_pct}%)"
        )
        return lines

    def _render_preprocessing(self, report: PreprocessingReport) -> List[str]:
        lines = [f"Preprocessing '{report.dataset}': {report.n_rows_in} -> {report.n_rows_out} rows"]
        for step in report.steps:
            lines.append(
                f"  {step.name} ({step.step_type}): {step.n_rows_before} -> {step.n_rows_after} rows; {step.detail}"
            )
        return lines

    def _render_combine(self, report: CombineReport) -> List[str]:
        lines = [f"Final dataset: {report.n_rows} rows, {report.n_columns} columns "
                 f"({report.n_cohort_columns} cohort columns)"]
        for column, pct in report.flag_prevalence.items():
            lines.append(f"  {column}: {pct}%")
        return lines
