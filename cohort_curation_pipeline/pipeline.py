"""End-to-end orchestration: demographics, cohort, covariates, outcomes, final dataset."""

from typing import Dict, Any, List, Optional, Sequence
import pandas as pd
from .builders import (
    LongFormatAssembler,
    PriorityResolver,
    CohortBuilder,
    TemporalEventSelector,
    DatasetCombiner,
    DataPreprocessor,
)
from .config import ConfigurationManager
from .exceptions import ConfigurationError, DataRetrievalError, ValidationError
from .logging_config import get_logger
from .models.records import (
    EventDefinition,
    PipelineResult,
    COVARIATE,
    OUTCOME,
    DEMOGRAPHIC_COLUMNS,
    PATIENT_ID,
    EVENT_DATE,
    CODE,
)
from .reporting.reporter import BaseReporter, LoggingReporter
from .utils.errors import ErrorContext, log_performance
from .validation.validator import DatasetValidator


class CohortPipeline:
    """Runs the configured pipeline against a source adapter.

    The stages share one reporter. Demographic assets are resolved to one
    row per patient by source priority; event assets keep every row.
    """

    def __init__(
        self,
        config_manager: ConfigurationManager,
        adapter: Any,
        reporter: Optional[BaseReporter] = None,
        max_workers: Optional[int] = None,
        show_progress: bool = False
    ) -> None:
        if config_manager.config is None:
            raise ConfigurationError("CohortPipeline needs a loaded configuration")

        self.config_manager = config_manager
        self.adapter = adapter
        self.reporter = reporter if reporter is not None else LoggingReporter()
        self.max_workers = max_workers
        self.show_progress = show_progress
        self.logger = get_logger(self.__class__.__name__)

        config = config_manager.config
        self.preprocessor = DataPreprocessor(
            config, self.reporter, adapter=adapter, lookup_loader=config_manager.get_lookup_table
        )
        self.assembler = LongFormatAssembler(config_manager, adapter, self.reporter, preprocessor=self.preprocessor)
        self.resolver = PriorityResolver(config, self.reporter)
        self.cohort_builder = CohortBuilder(config, self.reporter)
        self.selector = TemporalEventSelector(config, self.reporter)
        self.combiner = DatasetCombiner(config, self.reporter)

    def describe_plan(self, project_name: Optional[str] = None) -> List[str]:
        """Human-readable list of what `run` would read and compute."""
        settings = self.config_manager.cohort_settings
        lines = []
        for role, asset_name in self._demographic_assets().items():
            sources = self.config_manager.get_asset_sources(asset_name, project_name=project_name)
            ranked = ", ".join(f"{s.name} (priority {s.priority})" for s in sources)
            lines.append(f"{role}: asset '{asset_name}' from {ranked}")
        lines.append(
            f"cohort: index date {settings.get('index_date')}, age {settings.get('min_age')}-{settings.get('max_age')}"
        )
        for definition in self._definitions(COVARIATE) + self._definitions(OUTCOME):
            lines.append(
                f"{definition.kind} '{definition.label}': name '{definition.name}' "
                f"from {', '.join(definition.event_assets)}"
            )
        return lines

    @log_performance
    def run(
        self,
        patient_ids: Optional[Sequence[Any]] = None,
        project_name: Optional[str] = None
    ) -> PipelineResult:
        """Execute every stage and return the final analysis table.

        Args:
            patient_ids: Optional restriction of the source population
            project_name: Optional project whose source preferences apply

        Returns:
            PipelineResult with the dataset, cohort and each covariate/outcome

        Raises:
            ConfigurationError: If the configuration cannot drive a run
            DataRetrievalError: If every source of a required asset fails
            ValidationError: If the final tables break their invariants
        """
        if project_name is not None:
            self.config_manager.get_project_preferences(project_name)

        covariate_definitions = self._definitions(COVARIATE)
        outcome_definitions = self._definitions(OUTCOME)
        lookup = self.config_manager.get_lookup_table() if covariate_definitions or outcome_definitions else None
        self.selector.validate_definitions(covariate_definitions, lookup)
        self.selector.validate_definitions(outcome_definitions, lookup)
        self._check_demographic_columns(project_name)

        self.logger.info("Step 1: curating demographics")
        with ErrorContext("curate demographics", DataRetrievalError):
            resolved = self._curate_demographics(patient_ids, project_name)
            demographics = self.cohort_builder.combine_demographics(
                resolved['date_of_birth'], resolved['sex'],
                ethnicity=resolved.get('ethnicity'), lsoa=resolved.get('lsoa')
            )

        self.logger.info("Step 2: building cohort")
        settings = self.config_manager.cohort_settings
        index_date = settings.get('index_date')
        if index_date is None:
            raise ConfigurationError("cohort.index_date must be configured")
        if isinstance(index_date, dict):
            index_date = self.preprocessor.create_cohort_baseline(demographics[PATIENT_ID].tolist(), index_date)
        cohort = self.cohort_builder.generate_cohort(
            demographics,
            index_date=index_date,
            min_age=settings['min_age'],
            max_age=settings['max_age'],
            require_known_sex=settings['require_known_sex'],
            require_known_ethnicity=settings['require_known_ethnicity'],
            require_lsoa=settings['require_lsoa'],
        )
        members = cohort.members

        self.logger.info("Step 3: retrieving events")
        event_cache: Dict[str, pd.DataFrame] = {}
        with ErrorContext("retrieve events", DataRetrievalError):
            covariate_events = self._collect_events(covariate_definitions, members, project_name, event_cache)
            outcome_events = self._collect_events(outcome_definitions, members, project_name, event_cache)

        self.logger.info("Step 4: generating covariates and outcomes")
        covariates = self.selector.generate_from_definitions(
            covariate_definitions, covariate_events, members, lookup,
            max_workers=self.max_workers, show_progress=self.show_progress
        ) if covariate_definitions else []
        outcomes = self.selector.generate_from_definitions(
            outcome_definitions, outcome_events, members, lookup,
            max_workers=self.max_workers, show_progress=self.show_progress
        ) if outcome_definitions else []

        self.logger.info("Step 5: combining final dataset")
        dataset = self.combiner.combine(members, covariates, outcomes)

        validator = DatasetValidator(self.config_manager.config)
        if not validator.validate({'cohort': members, 'dataset': dataset}):
            raise ValidationError(
                "Final dataset failed validation",
                context={"errors": list(validator.validation_errors)}
            )

        return PipelineResult(
            dataset=dataset,
            cohort=cohort,
            covariates=covariates,
            outcomes=outcomes,
            assembly_reports=dict(self.assembler.assembly_reports),
            combine_report=self.combiner.last_report,
        )

    def _demographic_assets(self) -> Dict[str, str]:
        """Demographic role (date_of_birth, sex, ...) to configured asset name."""
        configured = self.config_manager.cohort_settings.get('demographics', {})
        assets = {role: configured.get(role, role) for role in ('date_of_birth', 'sex')}
        for role in ('ethnicity', 'lsoa'):
            if role in configured:
                assets[role] = configured[role]
            elif role in self.config_manager.assets:
                assets[role] = role
        return assets

    def _curate_demographics(
        self,
        patient_ids: Optional[Sequence[Any]],
        project_name: Optional[str]
    ) -> Dict[str, pd.DataFrame]:
        resolved: Dict[str, pd.DataFrame] = {}
        for role, asset_name in self._demographic_assets().items():
            value_column = DEMOGRAPHIC_COLUMNS[role]
            long_df = self.assembler.create_long_format_asset(
                asset_name, patient_ids=patient_ids, project_name=project_name
            )
            self.assembler.summarize_long_format_table(long_df, asset_name)
            self.resolver.check_conflicts(long_df, asset_name, value_column)
            resolved[role] = self.resolver.get_highest_priority_per_patient(long_df)
        return resolved

    def _check_demographic_columns(self, project_name: Optional[str]) -> None:
        """Every source of a demographic asset must map the column its role reads.

        Raises:
            ConfigurationError: If a source leaves the column unmapped
        """
        for role, asset_name in self._demographic_assets().items():
            value_column = DEMOGRAPHIC_COLUMNS[role]
            for source in self.config_manager.get_asset_sources(asset_name, project_name=project_name):
                if value_column not in self.config_manager.get_source_columns(asset_name, source.name):
                    raise ConfigurationError(
                        f"Source '{source.name}' of asset '{asset_name}' must map a '{value_column}' column for {role}"
                    )

    def _definitions(self, kind: str) -> List[EventDefinition]:
        definitions = self.config_manager.get_event_definitions(kind)
        for definition in definitions:
            if not definition.event_assets:
                raise ConfigurationError(f"{kind} '{definition.label}' lists no event_assets")
        return definitions

    def _collect_events(
        self,
        definitions: List[EventDefinition],
        members: pd.DataFrame,
        project_name: Optional[str],
        cache: Dict[str, pd.DataFrame]
    ) -> Dict[str, pd.DataFrame]:
        """Assemble each event asset once and concatenate them per definition label."""
        patient_ids = members[PATIENT_ID].tolist()
        events: Dict[str, pd.DataFrame] = {}
        for definition in definitions:
            if not patient_ids:
                events[definition.label] = self._no_events()
                continue
            frames = []
            for asset_name in definition.event_assets:
                if asset_name not in cache:
                    cache[asset_name] = self._assemble_events(asset_name, members, project_name)
                frames.append(cache[asset_name])
            events[definition.label] = pd.concat(frames, ignore_index=True, sort=False)
        return events

    def _assemble_events(self, asset_name: str, members: pd.DataFrame, project_name: Optional[str]) -> pd.DataFrame:
        """Read an event asset for the cohort.

        Sources that answer with no rows mean the cohort has no such events.
        Only when every source is unavailable is the error raised.
        """
        try:
            return self.assembler.create_long_format_asset(
                asset_name, patient_ids=members[PATIENT_ID].tolist(),
                project_name=project_name, cohort=members
            )
        except DataRetrievalError as e:
            n_sources = len(self.config_manager.get_asset_sources(asset_name, project_name=project_name))
            if len(e.context.get('unavailable_sources', [])) >= n_sources:
                raise
            self.logger.warning(f"Event asset '{asset_name}' has no rows for the cohort; no patient is flagged from it")
            return self._no_events()

    @staticmethod
    def _no_events() -> pd.DataFrame:
        return pd.DataFrame(columns=[PATIENT_ID, EVENT_DATE, CODE])
