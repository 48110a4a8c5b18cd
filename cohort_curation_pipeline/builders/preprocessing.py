"""Per-dataset cleaning applied to source rows before they enter a long-format asset.

Steps run in their configured order. Each step is one of:

- ``code_match``: join a code column against a lookup table
- ``value_validation``: range and allowed-value checks, flagged, filtered or blanked
- ``covariate_flag`` / ``outcome_flag``: mark events before / on-or-after the index date
- ``data_transformation``: date, numeric, string or categorical conversion

Missing columns and a missing cohort are data conditions: the step is
skipped with a warning. Malformed step configuration raises.
"""

from pathlib import Path
from typing import Dict, Any, Callable, List, Optional, Sequence, Tuple, Union
import pandas as pd
from ..exceptions import ConfigurationError
from ..models.base import BaseStage
from ..models.records import (
    PATIENT_ID,
    INDEX_DATE,
    EVENT_DATE,
    CODE,
    CODE_MATCH,
    VALUE_VALIDATION,
    COVARIATE_FLAG,
    OUTCOME_FLAG,
    DATA_TRANSFORMATION,
    PREPROCESSING_STEP_TYPES,
    VALIDATION_ACTIONS,
    TRANSFORM_TYPES,
    JOIN_TYPES,
    LOOKUP_SOURCE_TYPES,
    BASELINE_STRATEGIES,
)
from ..models.reports import PreprocessingReport, PreprocessingStep
from ..utils.temporal import to_timestamp, to_date_series
from ..validation.lookup_validator import LookupValidator

StepsInput = Union[Sequence[Dict[str, Any]], Dict[str, Dict[str, Any]]]

_MATCH_KEY = '_match_key'


def normalise_steps(steps: Optional[StepsInput]) -> List[Dict[str, Any]]:
    """Turn a mapping of step name to step, or a list of steps, into a named list.

    Raises:
        ConfigurationError: If a step is not a mapping or has an unknown type
    """
    if not steps:
        return []
    if isinstance(steps, dict):
        named = [(step_name, step) for step_name, step in steps.items()]
    else:
        named = [(None, step) for step in steps]

    items = []
    for position, (step_name, step) in enumerate(named, start=1):
        if not isinstance(step, dict):
            raise ConfigurationError(f"Preprocessing step {step_name or position} must be a dictionary")
        step = dict(step)
        step.setdefault('name', step_name or f"step_{position}")
        if step.get('type') not in PREPROCESSING_STEP_TYPES:
            raise ConfigurationError(
                f"Preprocessing step '{step['name']}' type must be one of {PREPROCESSING_STEP_TYPES}, "
                f"got {step.get('type')!r}"
            )
        items.append(step)
    return items


def _codes_as_strings(values: pd.Series) -> pd.Series:
    return values.map(lambda v: str(v).strip() if pd.notna(v) else None)


class DataPreprocessor(BaseStage):
    """Applies configured preprocessing steps to a source table.

    Args:
        config: Loaded pipeline configuration
        reporter: Receives one PreprocessingReport per processed dataset
        adapter: Source adapter used for ``database`` lookups and baselines
        lookup_loader: Returns the configured code lookup table; called only
            when a step needs it
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        reporter: Optional[Any] = None,
        adapter: Optional[Any] = None,
        lookup_loader: Optional[Callable[[], pd.DataFrame]] = None
    ) -> None:
        self.adapter = adapter
        self.lookup_loader = lookup_loader
        super().__init__(config, reporter)

    def apply_preprocessing(
        self,
        data: pd.DataFrame,
        steps: Optional[StepsInput],
        cohort: Optional[pd.DataFrame] = None,
        dataset: str = "dataset"
    ) -> pd.DataFrame:
        """Run every step in order and return the processed table.

        Args:
            data: Source rows with internal column names
            steps: Step list, or mapping of step name to step
            cohort: Cohort with patient_id and index_date, used by flag steps
            dataset: Name used in logs and the report

        Returns:
            Processed copy of `data`; `data` itself is not modified

        Raises:
            ConfigurationError: If a step is misconfigured
        """
        steps = normalise_steps(steps)
        if not steps:
            return data

        self.logger.info(f"Preprocessing {dataset}: {len(data)} rows, {len(steps)} step(s)")
        report = PreprocessingReport(dataset=dataset, n_rows_in=len(data))
        handlers = {
            CODE_MATCH: lambda d, s: self.apply_code_matching(d, s),
            VALUE_VALIDATION: lambda d, s: self.apply_value_validation(d, s),
            COVARIATE_FLAG: lambda d, s: self.apply_event_flagging(d, s, cohort, COVARIATE_FLAG),
            OUTCOME_FLAG: lambda d, s: self.apply_event_flagging(d, s, cohort, OUTCOME_FLAG),
            DATA_TRANSFORMATION: lambda d, s: self.apply_data_transformation(d, s),
        }

        result = data.copy()
        for step in steps:
            n_before = len(result)
            result, detail = handlers[step['type']](result, step)
            report.steps.append(self._step_record(step, n_before, len(result), detail))
            self.logger.debug(f"Step '{step['name']}' ({step['type']}): {detail}")

        self._emit(report)
        self.logger.info(f"Preprocessed {dataset}: {report.n_rows_in} -> {report.n_rows_out} rows")
        return result

    @staticmethod
    def _step_record(step: Dict[str, Any], n_before: int, n_after: int, detail: str) -> PreprocessingStep:
        return PreprocessingStep(
            name=step['name'], step_type=step['type'],
            n_rows_before=n_before, n_rows_after=n_after, detail=detail
        )

    def _has_column(self, data: pd.DataFrame, column: Optional[str], step: Dict[str, Any]) -> bool:
        if not column:
            raise ConfigurationError(f"Preprocessing step '{step['name']}' needs a column")
        if column not in data.columns:
            self.logger.warning(f"Column '{column}' not found for step '{step['name']}'; step skipped")
            return False
        return True

    def apply_code_matching(self, data: pd.DataFrame, step: Dict[str, Any]) -> Tuple[pd.DataFrame, str]:
        """Join a code column against a lookup table.

        Step keys: ``code_column`` (default ``code``), ``match_column`` in the
        lookup (default ``code``), ``output_columns`` (default every other
        lookup column), ``join_type`` (left, inner or semi) and the lookup
        source (``source_type`` lookup, csv, inline or database).

        Codes are compared as stripped strings. A lookup that repeats a code
        keeps its first row so the join never multiplies records.
        """
        code_column = step.get('code_column', CODE)
        match_column = step.get('match_column', CODE)
        join_type = step.get('join_type', 'left')
        if join_type not in JOIN_TYPES:
            raise ConfigurationError(f"join_type must be one of {JOIN_TYPES}, got '{join_type}'")
        if not self._has_column(data, code_column, step):
            return data, "skipped: code column missing"

        lookup = self._load_step_lookup(step)
        if lookup is None or lookup.empty:
            self.logger.warning(f"Lookup for step '{step['name']}' is empty; step skipped")
            return data, "skipped: empty lookup"
        if match_column not in lookup.columns:
            raise ConfigurationError(f"Lookup for step '{step['name']}' has no '{match_column}' column")

        output_columns = step.get('output_columns')
        if output_columns is None:
            output_columns = [c for c in lookup.columns if c != match_column]
        missing = [c for c in output_columns if c not in lookup.columns]
        if missing:
            raise ConfigurationError(f"Lookup for step '{step['name']}' has no columns {missing}")
        clashes = [c for c in output_columns if c in data.columns]
        if clashes and join_type != 'semi':
            raise ConfigurationError(
                f"Step '{step['name']}' output columns {clashes} already exist in the data"
            )

        keys = lookup[[match_column, *output_columns]].copy()
        keys[_MATCH_KEY] = _codes_as_strings(keys[match_column])
        keys = keys.dropna(subset=[_MATCH_KEY])
        repeated = keys[_MATCH_KEY].duplicated()
        if repeated.any():
            self.logger.warning(
                f"Lookup for step '{step['name']}' repeats {int(repeated.sum())} codes; keeping the first row"
            )
            keys = keys[~repeated]

        data_keys = _codes_as_strings(data[code_column])
        matched = data_keys.isin(set(keys[_MATCH_KEY]))
        detail = f"{int(matched.sum())}/{len(data)} records matched"
        self.logger.info(f"Code matching '{step['name']}': {detail}")

        if join_type == 'semi':
            return data[matched.to_numpy()].reset_index(drop=True), detail

        joined = data.assign(**{_MATCH_KEY: data_keys}).merge(
            keys[[_MATCH_KEY, *output_columns]], on=_MATCH_KEY, how=join_type
        )
        return joined.drop(columns=[_MATCH_KEY]), detail

    def _load_step_lookup(self, step: Dict[str, Any]) -> Optional[pd.DataFrame]:
        source_type = step.get('source_type', 'lookup')
        if source_type not in LOOKUP_SOURCE_TYPES:
            raise ConfigurationError(f"source_type must be one of {LOOKUP_SOURCE_TYPES}, got '{source_type}'")

        if source_type == 'inline':
            return pd.DataFrame(step.get('lookup_values') or [])
        if source_type == 'csv':
            return self._read_csv(step.get('lookup_source'), step)
        if source_type == 'database':
            return self._read_reference_table(step.get('lookup_source'), step, step.get('lookup_columns'))

        lookup = self._configured_lookup(step)
        name = step.get('lookup_name')
        if name is not None:
            lookup = lookup[lookup['name'] == name]
        return lookup

    def _configured_lookup(self, step: Dict[str, Any]) -> pd.DataFrame:
        if self.lookup_loader is None:
            raise ConfigurationError(f"Step '{step['name']}' needs the code lookup table but none is available")
        return self.lookup_loader()

    def _read_csv(self, path: Optional[str], step: Dict[str, Any]) -> pd.DataFrame:
        if not path:
            raise ConfigurationError(f"Step '{step['name']}' needs a lookup_source path")
        if not Path(path).exists():
            raise ConfigurationError(f"Lookup file not found for step '{step['name']}': {path}")
        return pd.read_csv(path, dtype=str)

    def _read_reference_table(
        self,
        table: Optional[str],
        step: Dict[str, Any],
        columns: Optional[Sequence[str]] = None
    ) -> pd.DataFrame:
        if not table:
            raise ConfigurationError(f"Step '{step['name']}' needs a table name")
        if self.adapter is None:
            raise ConfigurationError(f"Step '{step['name']}' reads table '{table}' but no adapter is available")
        return self.adapter.read_table(table, schema=step.get('schema'), columns=columns)

    def apply_value_validation(self, data: pd.DataFrame, step: Dict[str, Any]) -> Tuple[pd.DataFrame, str]:
        """Check a column against a numeric range and/or allowed values.

        Null values always pass. Non-numeric values fail a range check.
        ``action`` decides what happens to failures: ``flag`` adds a boolean
        column (default ``<column>_valid``), ``filter`` drops the rows and
        ``transform`` replaces the value with ``transform_value`` (null by
        default).
        """
        column = step.get('column')
        action = step.get('action', 'flag')
        if action not in VALIDATION_ACTIONS:
            raise ConfigurationError(f"action must be one of {VALIDATION_ACTIONS}, got '{action}'")
        if not self._has_column(data, column, step):
            return data, "skipped: column missing"

        values = data[column]
        present = values.notna()
        is_valid = pd.Series(True, index=data.index)

        min_value = step.get('min_value')
        max_value = step.get('max_value')
        if min_value is not None or max_value is not None:
            numeric = pd.to_numeric(values, errors='coerce')
            is_valid &= ~(present & numeric.isna())
            if min_value is not None:
                is_valid &= ~present | (numeric >= min_value)
            if max_value is not None:
                is_valid &= ~present | (numeric <= max_value)

        allowed = step.get('allowed_values')
        if allowed is not None:
            is_valid &= ~present | values.isin(list(allowed))

        n_invalid = int((~is_valid).sum())
        detail = f"{n_invalid}/{len(data)} records invalid for '{column}'"
        if n_invalid:
            self.logger.info(f"Value validation '{step['name']}': {detail}")

        if action == 'flag':
            result = data.copy()
            result[step.get('flag_column', f"{column}_valid")] = is_valid.to_numpy()
            return result, detail
        if action == 'filter':
            return data[is_valid.to_numpy()].reset_index(drop=True), detail

        result = data.copy()
        result[column] = values.where(is_valid, step.get('transform_value'))
        return result, detail

    def apply_data_transformation(self, data: pd.DataFrame, step: Dict[str, Any]) -> Tuple[pd.DataFrame, str]:
        """Convert one column.

        ``transform_type`` is ``date_conversion`` (``date_format``, default
        ``%Y-%m-%d``), ``numeric_conversion``, ``string_cleaning`` (strip and
        upper-case) or ``categorical_mapping`` (``mapping``; unmapped values
        become null). Values that cannot be converted become null.
        """
        column = step.get('column')
        transform_type = step.get('transform_type')
        if transform_type not in TRANSFORM_TYPES:
            raise ConfigurationError(f"transform_type must be one of {TRANSFORM_TYPES}, got {transform_type!r}")
        if not self._has_column(data, column, step):
            return data, "skipped: column missing"

        values = data[column]
        if transform_type == 'date_conversion':
            converted = pd.to_datetime(values, format=step.get('date_format', '%Y-%m-%d'), errors='coerce')
        elif transform_type == 'numeric_conversion':
            converted = pd.to_numeric(values, errors='coerce')
        elif transform_type == 'string_cleaning':
            converted = values.map(lambda v: str(v).strip().upper() if pd.notna(v) else v)
        else:
            mapping = step.get('mapping')
            if not isinstance(mapping, dict):
                raise ConfigurationError(f"Step '{step['name']}' categorical_mapping needs a mapping")
            mapping = {str(k): v for k, v in mapping.items()}
            converted = values.map(lambda v: mapping.get(str(v).strip()) if pd.notna(v) else None)

        lost = int((values.notna() & converted.isna()).sum())
        if lost:
            self.logger.warning(f"Step '{step['name']}': {lost} values of '{column}' could not be converted")

        result = data.copy()
        result[column] = converted
        return result, f"{transform_type} on '{column}', {lost} values lost"

    def apply_event_flagging(
        self,
        data: pd.DataFrame,
        step: Dict[str, Any],
        cohort: Optional[pd.DataFrame],
        step_type: str
    ) -> Tuple[pd.DataFrame, str]:
        """Flag events with a matching code before (covariate) or on/after (outcome) the index date.

        Without ``aggregate_to_patient`` every record gets the flag column
        (default ``has_<name>``). With it, covariates return one row per
        patient in the data, and outcomes return one row per cohort member
        with the first qualifying date (``include_date``, default true).
        """
        if cohort is None:
            self.logger.warning(f"Step '{step['name']}' needs a cohort with index dates; step skipped")
            return data, "skipped: no cohort"

        name = step.get('name')
        code_column = step.get('code_column', CODE)
        date_column = step.get('event_date_column', EVENT_DATE)
        flag_column = step.get('flag_column', f"has_{name}")
        for column in (code_column, date_column):
            if not self._has_column(data, column, step):
                return data, "skipped: column missing"

        codes = self._event_codes(step)
        index_dates = cohort[[PATIENT_ID, INDEX_DATE]].drop_duplicates(subset=[PATIENT_ID])
        with_index = data.merge(index_dates, on=PATIENT_ID, how='left')
        event_dates = to_date_series(with_index[date_column])
        index = to_date_series(with_index[INDEX_DATE])

        in_code_set = _codes_as_strings(with_index[code_column]).isin(codes)
        if step_type == COVARIATE_FLAG:
            timing = event_dates < index
        else:
            timing = event_dates >= index
        is_event = (in_code_set & timing.fillna(False)).astype(bool)

        if not step.get('aggregate_to_patient', False):
            result = data.copy()
            result[flag_column] = is_event.to_numpy()
            return result, f"{int(is_event.sum())} records flagged"

        if step_type == COVARIATE_FLAG:
            flags = is_event.groupby(with_index[PATIENT_ID], sort=False).any()
            result = flags.rename(flag_column).rename_axis(PATIENT_ID).reset_index()
            return result, f"{int(result[flag_column].sum())} patients flagged"

        first_dates = (
            pd.DataFrame({PATIENT_ID: with_index[PATIENT_ID], 'first_date': event_dates})[is_event.to_numpy()]
            .groupby(PATIENT_ID)['first_date'].min()
        )
        result = cohort[[PATIENT_ID]].drop_duplicates().reset_index(drop=True)
        outcome_dates = result[PATIENT_ID].map(first_dates)
        result[flag_column] = outcome_dates.notna().to_numpy()
        if step.get('include_date', True):
            result[step.get('date_column', f"{name}_date")] = pd.to_datetime(outcome_dates).to_numpy()
        return result, f"{int(result[flag_column].sum())} patients with outcome"

    def _event_codes(self, step: Dict[str, Any]) -> set:
        """Codes for a flag step from ``event_codes``, ``lookup_name``, ``code_file`` or ``code_table``."""
        code_column = step.get('code_column', CODE)
        if step.get('event_codes') is not None:
            codes = pd.Series(list(step['event_codes']), dtype=object)
        elif step.get('lookup_name') is not None:
            codes = LookupValidator(self._configured_lookup(step)).codes_for(step['lookup_name'])[CODE]
        elif step.get('code_file') is not None:
            codes = self._read_csv(step['code_file'], step)[code_column]
        elif step.get('code_table') is not None:
            codes = self._read_reference_table(step['code_table'], step, [code_column])[code_column]
        else:
            raise ConfigurationError(
                f"Step '{step['name']}' needs event_codes, lookup_name, code_file or code_table"
            )

        codes = set(_codes_as_strings(codes).dropna())
        if not codes:
            self.logger.warning(f"Step '{step['name']}' resolved no event codes; nothing will be flagged")
        return codes

    def create_cohort_baseline(self, patient_ids: Sequence[Any], settings: Dict[str, Any]) -> pd.DataFrame:
        """Build per-patient index dates from a ``fixed`` date or a ``database`` table.

        Args:
            patient_ids: Patients to date
            settings: ``strategy`` plus ``fixed_date``, or ``table``,
                ``patient_id_column``, ``baseline_date_column`` and
                optional ``schema``

        Returns:
            DataFrame with patient_id and index_date, one row per requested
            patient; patients without a baseline get a null index date

        Raises:
            ConfigurationError: On an unknown strategy or incomplete settings
        """
        strategy = settings.get('strategy', 'fixed')
        if strategy not in BASELINE_STRATEGIES:
            raise ConfigurationError(f"Baseline strategy must be one of {BASELINE_STRATEGIES}, got {strategy!r}")

        cohort = pd.DataFrame({PATIENT_ID: list(patient_ids)})
        if strategy == 'fixed':
            if settings.get('fixed_date') is None:
                raise ConfigurationError("Fixed baseline strategy needs a fixed_date")
            cohort[INDEX_DATE] = to_timestamp(settings['fixed_date'], 'fixed_date')
            self.logger.info(f"Fixed baseline {settings['fixed_date']} for {len(cohort)} patients")
            return cohort

        missing = [k for k in ('table', 'patient_id_column', 'baseline_date_column') if not settings.get(k)]
        if missing:
            raise ConfigurationError(f"Database baseline strategy is missing settings: {missing}")

        step = {'name': 'cohort_baseline', 'schema': settings.get('schema')}
        table = self._read_reference_table(
            settings['table'], step, [settings['patient_id_column'], settings['baseline_date_column']]
        )
        baselines = table.rename(columns={
            settings['patient_id_column']: PATIENT_ID,
            settings['baseline_date_column']: INDEX_DATE,
        })
        baselines[INDEX_DATE] = to_date_series(baselines[INDEX_DATE])
        repeated = baselines[PATIENT_ID].duplicated()
        if repeated.any():
            self.logger.warning(f"Baseline table repeats {int(repeated.sum())} patients; keeping the first date")
            baselines = baselines[~repeated]

        cohort = cohort.merge(baselines, on=PATIENT_ID, how='left')
        n_dated = int(cohort[INDEX_DATE].notna().sum())
        self.logger.info(f"Loaded baseline dates for {n_dated}/{len(cohort)} patients from {settings['table']}")
        return cohort
