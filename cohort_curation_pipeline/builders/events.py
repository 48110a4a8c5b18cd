"""Covariate and outcome flags from clinical events in a window around the index date."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Callable, List, Optional, Sequence, Union
import numpy as np
import pandas as pd
from tqdm.auto import tqdm
from ..exceptions import ConfigurationError, ValidationError
from ..models.base import BaseStage
from ..models.records import (
    EventDefinition,
    EventResult,
    PATIENT_ID,
    INDEX_DATE,
    EVENT_DATE,
    CODE,
    TERMINOLOGY,
    DAYS_FROM_INDEX,
    DAYS_TO_INDEX,
    COVARIATE,
    OUTCOME,
    SELECTION_METHODS,
)
from ..models.reports import EventQualityReport
from ..utils.temporal import LookbackWindow, FollowUpWindow, to_date_series, days_between
from ..validation.lookup_validator import LookupValidator

Window = Union[LookbackWindow, FollowUpWindow]

_ROW = '_row'
_CODE_KEY = '_code_key'


class TemporalEventSelector(BaseStage):
    """Selects one qualifying event per cohort member for a named code set.

    Covariates look back from the index date and outcomes follow up after
    it; both share the same steps: code filter, quality assessment, join to
    index dates, day offset, window filter, per-patient selection and a left
    join back to the whole cohort.

    When several events share the selected date, the one with the lowest
    code wins, then the earliest in input order.
    """

    def generate_covariates(
        self,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        name: str,
        days_before_start: Optional[int] = None,
        days_before_end: int = 0,
        selection_method: str = 'min',
        label: Optional[str] = None,
        calculate_days_to_index: bool = True
    ) -> EventResult:
        """Flag cohort members with a matching event before their index date.

        Args:
            events: Clinical events with patient_id, event_date, code and
                optionally terminology
            cohort: Cohort members with patient_id and index_date
            lookup: Code lookup table
            name: Lookup name selecting the code set
            days_before_start: Furthest day before index to include; None
                means no limit
            days_before_end: Nearest day before index to include
            selection_method: 'min' for the earliest event, 'max' for the latest
            label: Stable identifier of the result; defaults to `name`
            calculate_days_to_index: When False the days_to_index column is
                kept but left empty

        Returns:
            EventResult with covariate_flag, covariate_date and days_to_index

        Raises:
            ConfigurationError: If the window, selection method or lookup is invalid
        """
        window = LookbackWindow(days_before_start=days_before_start, days_before_end=days_before_end)
        return self._select(events, cohort, lookup, name, window, selection_method, COVARIATE, label,
                            calculate_days=calculate_days_to_index)

    def generate_outcomes(
        self,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        name: str,
        days_after_start: int = 0,
        days_after_end: Optional[int] = None,
        selection_method: str = 'min',
        label: Optional[str] = None,
        calculate_days_from_index: bool = True
    ) -> EventResult:
        """Flag cohort members with a matching event on or after their index date.

        Args:
            events: Clinical events with patient_id, event_date, code and
                optionally terminology
            cohort: Cohort members with patient_id and index_date
            lookup: Code lookup table
            name: Lookup name selecting the code set
            days_after_start: First day after index to include
            days_after_end: Last day after index to include; None means no limit
            selection_method: 'min' for the earliest event, 'max' for the latest
            label: Stable identifier of the result; defaults to `name`
            calculate_days_from_index: When False the days_from_index column is
                kept but left empty

        Returns:
            EventResult with outcome_flag, outcome_date and days_from_index

        Raises:
            ConfigurationError: If the window, selection method or lookup is invalid
        """
        window = FollowUpWindow(days_after_start=days_after_start, days_after_end=days_after_end)
        return self._select(events, cohort, lookup, name, window, selection_method, OUTCOME, label,
                            calculate_days=calculate_days_from_index)

    def generate_from_definition(
        self,
        definition: EventDefinition,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame
    ) -> EventResult:
        """Run a configured covariate or outcome."""
        if definition.kind == COVARIATE:
            return self.generate_covariates(
                events, cohort, lookup, definition.name,
                days_before_start=definition.days_before_start,
                days_before_end=definition.days_before_end,
                selection_method=definition.selection_method,
                label=definition.label,
                calculate_days_to_index=definition.calculate_days,
            )
        return self.generate_outcomes(
            events, cohort, lookup, definition.name,
            days_after_start=definition.days_after_start,
            days_after_end=definition.days_after_end,
            selection_method=definition.selection_method,
            label=definition.label,
            calculate_days_from_index=definition.calculate_days,
        )

    def generate_multiple_covariates(
        self,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        names: Sequence[str],
        days_before_start: Optional[int] = None,
        days_before_end: int = 0,
        selection_method: str = 'min',
        max_workers: Optional[int] = None
    ) -> List[EventResult]:
        """Generate several covariates that share a window, in the order of `names`."""
        definitions = [
            EventDefinition(name=name, kind=COVARIATE, event_assets=[],
                            days_before_start=days_before_start, days_before_end=days_before_end,
                            selection_method=selection_method)
            for name in names
        ]
        return self.generate_from_definitions(definitions, events, cohort, lookup, max_workers=max_workers)

    def generate_multiple_outcomes(
        self,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        names: Sequence[str],
        days_after_start: int = 0,
        days_after_end: Optional[int] = None,
        selection_method: str = 'min',
        max_workers: Optional[int] = None
    ) -> List[EventResult]:
        """Generate several outcomes that share a window, in the order of `names`."""
        definitions = [
            EventDefinition(name=name, kind=OUTCOME, event_assets=[],
                            days_after_start=days_after_start, days_after_end=days_after_end,
                            selection_method=selection_method)
            for name in names
        ]
        return self.generate_from_definitions(definitions, events, cohort, lookup, max_workers=max_workers)

    def generate_from_definitions(
        self,
        definitions: Sequence[EventDefinition],
        events: Union[pd.DataFrame, Dict[str, pd.DataFrame]],
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        max_workers: Optional[int] = None,
        show_progress: bool = False
    ) -> List[EventResult]:
        """Generate a batch of results, optionally on a thread pool.

        Args:
            definitions: Covariates and/or outcomes to compute
            events: One events frame for all definitions, or a mapping of
                definition label to its events frame
            cohort: Cohort members
            lookup: Code lookup table
            max_workers: Run on this many threads when greater than 1
            show_progress: Display a progress bar

        Returns:
            Results in the order of `definitions`

        Raises:
            ConfigurationError: On duplicate labels or an invalid definition
        """
        self.validate_definitions(definitions, lookup)
        labels = [d.label for d in definitions]

        def events_for(definition: EventDefinition) -> pd.DataFrame:
            if isinstance(events, pd.DataFrame):
                return events
            return events[definition.label]

        tasks: List[Callable[[], EventResult]] = [
            (lambda d=definition: self.generate_from_definition(d, events_for(d), cohort, lookup))
            for definition in definitions
        ]
        return self._run_tasks(tasks, labels, max_workers, show_progress)

    def _run_tasks(
        self,
        tasks: List[Callable[[], EventResult]],
        labels: List[str],
        max_workers: Optional[int],
        show_progress: bool
    ) -> List[EventResult]:
        progress = tqdm(total=len(tasks), desc="Covariates/outcomes", disable=not show_progress)
        results: List[Optional[EventResult]] = [None] * len(tasks)

        try:
            if not max_workers or max_workers <= 1 or len(tasks) <= 1:
                for position, task in enumerate(tasks):
                    results[position] = task()
                    progress.update(1)
            else:
                with ThreadPoolExecutor(max_workers=max_workers) as executor:
                    future_to_position = {executor.submit(task): position for position, task in enumerate(tasks)}
                    for future in as_completed(future_to_position):
                        position = future_to_position[future]
                        try:
                            results[position] = future.result()
                        except Exception as e:
                            self.logger.error(f"Error generating '{labels[position]}': {e}")
                            raise
                        progress.update(1)
        finally:
            progress.close()

        return [result for result in results if result is not None]

    def validate_definitions(
        self,
        definitions: Sequence[EventDefinition],
        lookup: Optional[pd.DataFrame] = None
    ) -> None:
        """Check labels, windows and selection methods before any data is touched.

        With a lookup table, names it does not define are logged as a warning;
        those results come out unflagged rather than failing the run.

        Raises:
            ConfigurationError: On duplicate labels or invalid parameters
        """
        labels = [d.label for d in definitions]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate covariate/outcome labels: {duplicates}")
        for definition in definitions:
            self.window_for(definition)
            if definition.selection_method not in SELECTION_METHODS:
                raise ConfigurationError(
                    f"selection_method must be one of {SELECTION_METHODS}, got '{definition.selection_method}'"
                )
        if lookup is not None:
            unknown = LookupValidator(lookup).unknown_names([d.name for d in definitions])
            if unknown:
                self.logger.warning(f"Names not defined in the lookup table: {sorted(set(unknown))}")

    @staticmethod
    def window_for(definition: EventDefinition) -> Window:
        if definition.kind == COVARIATE:
            return LookbackWindow(definition.days_before_start, definition.days_before_end)
        return FollowUpWindow(definition.days_after_start, definition.days_after_end)

    def _select(
        self,
        events: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        name: str,
        window: Window,
        selection_method: str,
        kind: str,
        label: Optional[str],
        calculate_days: bool = True
    ) -> EventResult:
        if selection_method not in SELECTION_METHODS:
            raise ConfigurationError(
                f"selection_method must be one of {SELECTION_METHODS}, got '{selection_method}'"
            )
        label = label or name
        validator = LookupValidator(lookup)
        events = self._check_inputs(events, cohort)

        self.logger.info(f"Generating {kind} '{label}' ({name}), window {window.describe()}")

        quality = EventQualityReport(name=name, label=label, kind=kind, cohort_size=len(cohort),
                                     window=window.describe())

        codes = validator.codes_for(name)
        if not validator.has_name(name):
            self.logger.warning(f"'{name}' is not a lookup name; every patient is unflagged")
        elif codes.empty:
            self.logger.warning(f"Lookup name '{name}' defines no codes; every patient is unflagged")
        elif events.empty:
            self.logger.warning(f"No events supplied for {kind} '{label}'; every patient is unflagged")
        matched = self._filter_codes(events, codes)
        quality.n_codes = len(codes)

        self._assess_quality(matched, cohort, lookup, name, quality)

        with_index = matched.merge(cohort[[PATIENT_ID, INDEX_DATE]], on=PATIENT_ID, how='inner')
        with_index[DAYS_FROM_INDEX] = days_between(with_index[EVENT_DATE], to_date_series(with_index[INDEX_DATE]))

        in_window = with_index[window.contains(with_index[DAYS_FROM_INDEX])]
        quality.n_events_in_window = len(in_window)

        selected = self._select_per_patient(in_window, selection_method)
        result = self._attach_to_cohort(cohort, selected, kind, calculate_days)

        quality.n_flagged = int(result[f"{kind}_flag"].sum())
        self.logger.info(
            f"{kind.capitalize()} '{label}': {quality.n_flagged}/{len(result)} patients flagged "
            f"({quality.flagged_pct}%)"
        )
        self._emit(quality)
        return EventResult(label=label, name=name, kind=kind, data=result, quality=quality)

    @staticmethod
    def _check_inputs(events: pd.DataFrame, cohort: pd.DataFrame) -> pd.DataFrame:
        """Validate columns; an empty events frame is given the required columns."""
        missing_events = [c for c in (PATIENT_ID, EVENT_DATE, CODE) if c not in events.columns]
        if missing_events and events.empty:
            events = events.assign(**{c: pd.Series(dtype=object) for c in missing_events})
        elif missing_events:
            raise ValidationError(f"Events table is missing columns: {missing_events}")
        missing_cohort = [c for c in (PATIENT_ID, INDEX_DATE) if c not in cohort.columns]
        if missing_cohort:
            raise ValidationError(f"Cohort table is missing columns: {missing_cohort}")
        if cohort[PATIENT_ID].duplicated().any():
            raise ValidationError("Cohort has more than one row per patient")
        return events

    def _filter_codes(self, events: pd.DataFrame, codes: pd.DataFrame) -> pd.DataFrame:
        """Keep events whose code is in the code set.

        An event that carries a terminology must also match the lookup
        terminology for that code; a lookup row without terminology matches
        any terminology.
        """
        event_codes = events[CODE].map(lambda v: str(v).strip() if pd.notna(v) else None)
        keep = event_codes.isin(set(codes[CODE]))

        if TERMINOLOGY in events.columns:
            known_terms = codes[codes[TERMINOLOGY].notna()]
            wildcard_codes = set(codes.loc[codes[TERMINOLOGY].isna(), CODE])
            pair_keys = set(known_terms[CODE] + '|' + known_terms[TERMINOLOGY].astype(str).str.strip().str.upper())

            event_terms = events[TERMINOLOGY]
            event_keys = event_codes.fillna('') + '|' + event_terms.astype(str).str.strip().str.upper()
            keep &= event_terms.isna() | event_keys.isin(pair_keys) | event_codes.isin(wildcard_codes)

        mask = keep.to_numpy(dtype=bool)
        matched = events[mask].copy()
        matched[_ROW] = np.arange(len(events))[mask]
        matched[_CODE_KEY] = event_codes.to_numpy()[mask]
        matched[EVENT_DATE] = to_date_series(matched[EVENT_DATE])

        undated = matched[EVENT_DATE].isna()
        if undated.any():
            self.logger.warning(f"Ignoring {int(undated.sum())} matched events without a valid event_date")
            matched = matched[~undated]

        self.logger.info(f"Filtered to {len(matched)} events matching {len(codes)} codes")
        return matched

    def _assess_quality(
        self,
        matched: pd.DataFrame,
        cohort: pd.DataFrame,
        lookup: pd.DataFrame,
        name: str,
        quality: EventQualityReport
    ) -> None:
        """Fill coverage, date range and per-code counts; does not change the data."""
        quality.n_events = len(matched)
        if matched.empty:
            return

        in_cohort = matched[PATIENT_ID].isin(cohort[PATIENT_ID])
        quality.n_patients_with_events = int(matched.loc[in_cohort, PATIENT_ID].nunique())
        quality.earliest_date = matched[EVENT_DATE].min()
        quality.latest_date = matched[EVENT_DATE].max()

        code_counts = (
            matched.groupby(_CODE_KEY)
            .agg(n_events=(PATIENT_ID, 'size'), n_patients=(PATIENT_ID, 'nunique'))
            .rename_axis(CODE)
            .reset_index()
        )
        code_counts.insert(1, 'name', name)
        quality.code_counts = code_counts.sort_values(
            ['n_events', CODE], ascending=[False, True], kind='mergesort'
        ).reset_index(drop=True)

    @staticmethod
    def _select_per_patient(in_window: pd.DataFrame, selection_method: str) -> pd.DataFrame:
        ascending_date = selection_method == 'min'
        ordered = in_window.sort_values(
            [PATIENT_ID, EVENT_DATE, _CODE_KEY, _ROW],
            ascending=[True, ascending_date, True, True],
            kind='mergesort'
        )
        return ordered.drop_duplicates(subset=[PATIENT_ID], keep='first')

    @staticmethod
    def _attach_to_cohort(
        cohort: pd.DataFrame,
        selected: pd.DataFrame,
        kind: str,
        calculate_days: bool = True
    ) -> pd.DataFrame:
        flag_column = f"{kind}_flag"
        date_column = f"{kind}_date"
        days_column = DAYS_TO_INDEX if kind == COVARIATE else DAYS_FROM_INDEX

        picked = selected[[PATIENT_ID, EVENT_DATE, DAYS_FROM_INDEX]].rename(
            columns={EVENT_DATE: date_column, DAYS_FROM_INDEX: days_column}
        )
        result = cohort[[PATIENT_ID, INDEX_DATE]].merge(picked, on=PATIENT_ID, how='left', validate='one_to_one')
        result[date_column] = pd.to_datetime(result[date_column])
        result[days_column] = result[days_column].astype('Int64')
        if not calculate_days:
            result[days_column] = pd.array([pd.NA] * len(result), dtype='Int64')
        result[flag_column] = result[date_column].notna()
        return result[[PATIENT_ID, INDEX_DATE, flag_column, date_column, days_column]]
