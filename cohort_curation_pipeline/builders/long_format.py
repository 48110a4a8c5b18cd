"""Assembly of multi-source long-format asset tables."""

from typing import Dict, Any, List, Optional, Sequence, Iterable
import pandas as pd
from ..exceptions import DataRetrievalError, SourceUnavailableError
from ..models.base import BaseStage
from ..models.records import (
    AssetConfig,
    SourceConfig,
    PATIENT_ID,
    TERMINOLOGY,
    SOURCE_NAME,
    SOURCE_DB_TABLE,
    SOURCE_PRIORITY,
    SOURCE_QUALITY,
    SOURCE_COVERAGE,
    SOURCE_LAST_UPDATED,
)
from ..models.reports import AssemblyReport, LongFormatSummary


def normalise_missing(data: pd.DataFrame) -> pd.DataFrame:
    """Strip string values and turn empty strings into nulls.

    After this, "known" means non-null; no stage needs a separate blank check.
    """
    result = data.copy()
    for column in result.columns:
        if result[column].dtype == object or pd.api.types.is_string_dtype(result[column]):
            stripped = result[column].map(lambda v: v.strip() if isinstance(v, str) else v)
            result[column] = stripped.mask(stripped.map(lambda v: isinstance(v, str) and v == ""))
    return result


class LongFormatAssembler(BaseStage):
    """Builds one long-format table per asset from every configured source.

    Each output row carries the source metadata columns
    (source_name, source_db_table, source_priority, source_quality,
    source_coverage, source_last_updated) followed by the asset values.
    """

    table_label = "Long-format table"

    def __init__(
        self,
        config_manager: Any,
        adapter: Any,
        reporter: Optional[Any] = None,
        preprocessor: Optional[Any] = None
    ) -> None:
        self.config_manager = config_manager
        self.adapter = adapter
        self.preprocessor = preprocessor
        self.assembly_reports: Dict[str, AssemblyReport] = {}
        super().__init__(config_manager.config, reporter)

    def create_long_format_asset(
        self,
        asset_name: str,
        patient_ids: Optional[Sequence[Any]] = None,
        include_sources: Optional[Iterable[str]] = None,
        project_name: Optional[str] = None,
        cohort: Optional[pd.DataFrame] = None
    ) -> pd.DataFrame:
        """Retrieve an asset from all its sources into one long-format table.

        Args:
            asset_name: Configured asset name
            patient_ids: Optional patient filter applied at the source
            include_sources: Optional subset of sources to read
            project_name: Optional project whose source preference re-ranks priorities
            cohort: Optional cohort (patient_id, index_date) passed to preprocessing
                flag steps

        Returns:
            Concatenated rows from every source that returned data

        Raises:
            ConfigurationError: If the asset or a requested source is unknown
            DataRetrievalError: If no source returned any rows
        """
        asset = self.config_manager.get_asset(asset_name)
        sources = self.config_manager.get_asset_sources(
            asset_name, project_name=project_name, include_sources=include_sources
        )
        report = AssemblyReport(asset_name=asset_name)
        frames: List[pd.DataFrame] = []
        unavailable: List[str] = []

        self.logger.info(f"Assembling asset '{asset_name}' from {len(sources)} source(s)")

        for source in sources:
            try:
                data = self.adapter.fetch(source, patient_ids)
            except SourceUnavailableError as e:
                self.logger.warning(f"Skipping source '{source.name}' for asset '{asset_name}': {e}")
                report.skipped_sources[source.name] = str(e)
                unavailable.append(source.name)
                continue

            if data.empty:
                self.logger.warning(f"Skipping source '{source.name}' for asset '{asset_name}': no rows returned")
                report.skipped_sources[source.name] = "no rows returned"
                continue

            data = self._prepare_source_rows(data, asset, source, report, cohort)
            frames.append(data)
            report.rows_per_source[source.name] = len(data)

        if not frames:
            raise DataRetrievalError(
                f"No data could be retrieved for asset '{asset_name}': every source failed",
                context={
                    "asset": asset_name,
                    "skipped_sources": report.skipped_sources,
                    "unavailable_sources": unavailable,
                }
            )

        long_df = pd.concat(frames, ignore_index=True, sort=False)
        self.assembly_reports[asset_name] = report
        self._emit(report)
        self._log_stage_stats(long_df, f"{asset_name} long-format")
        return long_df

    def _prepare_source_rows(
        self,
        data: pd.DataFrame,
        asset: AssetConfig,
        source: SourceConfig,
        report: AssemblyReport,
        cohort: Optional[pd.DataFrame] = None
    ) -> pd.DataFrame:
        data = normalise_missing(data)

        missing_ids = data[PATIENT_ID].isna()
        if missing_ids.any():
            self.logger.warning(
                f"Dropping {int(missing_ids.sum())} rows without patient_id from source '{source.name}'"
            )
            data = data[~missing_ids]

        if self.preprocessor is not None:
            steps = self.config_manager.get_preprocessing_steps(source)
            if steps:
                data = self.preprocessor.apply_preprocessing(
                    data, steps, cohort=cohort, dataset=f"{asset.name}/{source.name}"
                )

        if asset.is_event:
            if source.terminology is not None and TERMINOLOGY not in data.columns:
                data = data.assign(**{TERMINOLOGY: source.terminology})
        else:
            duplicated = data.duplicated(subset=[PATIENT_ID], keep='first')
            if duplicated.any():
                n_dropped = int(duplicated.sum())
                self.logger.warning(
                    f"Source '{source.name}' returned {n_dropped} duplicate rows for asset "
                    f"'{asset.name}'; keeping the first row per patient"
                )
                report.duplicates_collapsed[source.name] = n_dropped
                data = data[~duplicated]

        metadata = pd.DataFrame({
            SOURCE_NAME: source.name,
            SOURCE_DB_TABLE: source.db_table,
            SOURCE_PRIORITY: source.priority,
            SOURCE_QUALITY: source.quality.value,
            SOURCE_COVERAGE: source.coverage,
            SOURCE_LAST_UPDATED: pd.Timestamp(source.last_updated) if source.last_updated else pd.NaT,
        }, index=data.index)

        value_columns = [c for c in data.columns if c != PATIENT_ID]
        return pd.concat([data[[PATIENT_ID]], metadata, data[value_columns]], axis=1).reset_index(drop=True)

    def create_all_asset_tables(
        self,
        assets: Optional[Iterable[str]] = None,
        patient_ids: Optional[Sequence[Any]] = None,
        project_name: Optional[str] = None,
        skip_failed: bool = False
    ) -> Dict[str, pd.DataFrame]:
        """Assemble several assets at once.

        Args:
            assets: Asset names; defaults to every configured asset
            patient_ids: Optional patient filter
            project_name: Optional project whose source preferences apply
            skip_failed: Log and leave out assets whose sources all failed
                instead of raising

        Returns:
            Mapping of asset name to long-format table
        """
        asset_names = list(assets) if assets is not None else list(self.config_manager.assets)
        tables: Dict[str, pd.DataFrame] = {}

        for asset_name in asset_names:
            try:
                tables[asset_name] = self.create_long_format_asset(
                    asset_name, patient_ids=patient_ids, project_name=project_name
                )
            except DataRetrievalError as e:
                if not skip_failed:
                    raise
                self.logger.error(f"Asset '{asset_name}' left out: {e}")

        self.logger.info(f"Created {len(tables)} of {len(asset_names)} asset tables")
        return tables

    def summarize_long_format_table(self, long_df: pd.DataFrame, asset_name: str) -> LongFormatSummary:
        """Summarise rows and patients per source and multi-source coverage.

        Args:
            long_df: Long-format table for one asset
            asset_name: Name used in the report

        Returns:
            LongFormatSummary with a per-source frame and a coverage frame
        """
        self._require_columns(long_df, [PATIENT_ID, SOURCE_NAME, SOURCE_PRIORITY])

        grouped = long_df.groupby(SOURCE_NAME, sort=False)
        source_summary = pd.DataFrame({
            'n_rows': grouped.size(),
            'n_patients': grouped[PATIENT_ID].nunique(),
            'priority': grouped[SOURCE_PRIORITY].first(),
        })
        if SOURCE_QUALITY in long_df.columns:
            source_summary['quality'] = grouped[SOURCE_QUALITY].first()
        if SOURCE_COVERAGE in long_df.columns:
            source_summary['coverage'] = grouped[SOURCE_COVERAGE].first()
        source_summary = (
            source_summary.rename_axis(SOURCE_NAME)
            .reset_index()
            .sort_values(['priority', SOURCE_NAME], kind='mergesort')
            .reset_index(drop=True)
        )

        sources_per_patient = long_df.groupby(PATIENT_ID)[SOURCE_NAME].nunique()
        coverage = (
            sources_per_patient.value_counts()
            .rename_axis('n_sources')
            .reset_index(name='n_patients')
            .sort_values('n_sources')
            .reset_index(drop=True)
        )

        summary = LongFormatSummary(
            asset_name=asset_name,
            n_rows=len(long_df),
            n_patients=int(long_df[PATIENT_ID].nunique()),
            source_summary=source_summary,
            coverage=coverage,
        )
        self._emit(summary)
        return summary

    def pivot_to_wide_by_source(self, long_df: pd.DataFrame, value_columns: Sequence[str]) -> pd.DataFrame:
        """Spread value columns across sources, one row per patient.

        Output columns are named ``<source>_<column>``. For event assets the
        first row per patient and source is used.
        """
        if isinstance(value_columns, str):
            value_columns = [value_columns]
        self._require_columns(long_df, [PATIENT_ID, SOURCE_NAME, *value_columns])

        first_rows = long_df.drop_duplicates(subset=[PATIENT_ID, SOURCE_NAME], keep='first')
        wide = first_rows.pivot(index=PATIENT_ID, columns=SOURCE_NAME, values=list(value_columns))
        wide.columns = [f"{source}_{column}" for column, source in wide.columns]
        return wide.reset_index()

