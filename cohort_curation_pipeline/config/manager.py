"""Configuration management for the cohort curation pipeline."""

import logging
import yaml
from dataclasses import replace
from pathlib import Path
from typing import Dict, Any, Optional, List, Iterable
import pandas as pd
from ..exceptions import ConfigurationError
from ..models.records import (
    AssetConfig,
    SourceConfig,
    EventDefinition,
    COVARIATE,
    OUTCOME,
    DEMOGRAPHIC_COLUMNS,
    BASELINE_STRATEGIES,
)
from ..builders.preprocessing import normalise_steps
from ..validation.lookup_validator import validate_lookup_table

logger = logging.getLogger(__name__)

DEFAULT_COHORT_SETTINGS: Dict[str, Any] = {
    'min_age': None,
    'max_age': None,
    'require_known_sex': True,
    'require_known_ethnicity': False,
    'require_lsoa': False,
}


class ConfigurationManager:
    """Loads the YAML configuration and answers questions about assets and sources."""

    def __init__(self) -> None:
        self._config: Optional[Dict[str, Any]] = None
        self._config_dir: Optional[Path] = None
        self._assets: Dict[str, AssetConfig] = {}
        self._lookup: Optional[pd.DataFrame] = None

    def load_yaml_spec(self, spec_path: str) -> Dict[str, Any]:
        """Load and validate YAML configuration specification.

        Args:
            spec_path: Path to the YAML configuration file

        Returns:
            Loaded configuration dictionary

        Raises:
            ConfigurationError: If file cannot be loaded or is invalid
        """
        spec_file = Path(spec_path)
        if not spec_file.exists():
            raise ConfigurationError(f"Configuration file not found: {spec_path}")

        try:
            with open(spec_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        self._config_dir = spec_file.parent
        self.load_config(config)
        logger.info(f"Successfully loaded configuration from {spec_path}")
        return config

    def load_config(self, config: Any) -> Dict[str, Any]:
        """Validate and install an already-parsed configuration dictionary.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a dictionary")

        self._validate_configuration(config)
        default_schema = (config.get('database') or {}).get('schema')
        self._assets = {
            name: AssetConfig.from_dict(name, spec, default_schema)
            for name, spec in config['assets'].items()
        }
        self._config = config
        self._lookup = None
        try:
            self._validate_references()
        except ConfigurationError:
            self._config = None
            self._assets = {}
            raise
        return config

    def validate_configuration(self, config: Dict[str, Any]) -> bool:
        """Public interface for configuration validation.

        Args:
            config: Configuration dictionary to validate

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        self._validate_configuration(config)
        default_schema = (config.get('database') or {}).get('schema')
        for name, spec in config['assets'].items():
            AssetConfig.from_dict(name, spec, default_schema)
        return True

    def _validate_configuration(self, config: Dict[str, Any]) -> bool:
        """Validate configuration structure and values.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if 'assets' not in config:
            raise ConfigurationError("Missing required configuration section: assets")
        if not isinstance(config['assets'], dict) or not config['assets']:
            raise ConfigurationError("assets must be a non-empty dictionary")

        database = config.get('database')
        if database is not None:
            if not isinstance(database, dict):
                raise ConfigurationError("database must be a dictionary")
            retries = database.get('retries', 0)
            if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
                raise ConfigurationError("database retries must be a non-negative integer")

        projects = config.get('projects', {}) or {}
        if not isinstance(projects, dict):
            raise ConfigurationError("projects must be a dictionary")
        for project_name, project in projects.items():
            if not isinstance(project, dict):
                raise ConfigurationError(f"Project '{project_name}' must be a dictionary")
            preferred = project.get('preferred_sources', {}) or {}
            if not isinstance(preferred, dict):
                raise ConfigurationError(f"Project '{project_name}' preferred_sources must be a dictionary")

        cohort = config.get('cohort')
        if cohort is not None:
            if not isinstance(cohort, dict):
                raise ConfigurationError("cohort must be a dictionary")
            min_age = cohort.get('min_age')
            max_age = cohort.get('max_age')
            if min_age is not None and max_age is not None and min_age > max_age:
                raise ConfigurationError(f"cohort min_age ({min_age}) must not exceed max_age ({max_age})")
            unknown = set(cohort.get('demographics', {}) or {}) - set(DEMOGRAPHIC_COLUMNS)
            if unknown:
                raise ConfigurationError(f"Unknown cohort demographics keys: {sorted(unknown)}")
            index_date = cohort.get('index_date')
            if isinstance(index_date, dict):
                strategy = index_date.get('strategy', 'fixed')
                if strategy not in BASELINE_STRATEGIES:
                    raise ConfigurationError(
                        f"cohort index_date strategy must be one of {BASELINE_STRATEGIES}, got '{strategy}'"
                    )

        lookup = config.get('lookup')
        if lookup is not None:
            if not isinstance(lookup, dict) or not ('file' in lookup or 'entries' in lookup):
                raise ConfigurationError("lookup must define either 'file' or 'entries'")

        self._validate_preprocessing(config.get('preprocessing'))

        for section in (COVARIATE + 's', OUTCOME + 's'):
            entries = config.get(section, []) or []
            if not isinstance(entries, list):
                raise ConfigurationError(f"{section} must be a list")

        if 'lookup' not in config and (config.get('covariates') or config.get('outcomes')):
            logger.warning("covariates or outcomes configured without a lookup section")

        logger.info("Configuration validation passed")
        return True

    def _validate_preprocessing(self, preprocessing: Any) -> None:
        """Check the preprocessing section: named step pipelines and the datasets that use them.

        Raises:
            ConfigurationError: If a pipeline or dataset entry is malformed
        """
        if preprocessing is None:
            return
        if not isinstance(preprocessing, dict):
            raise ConfigurationError("preprocessing must be a dictionary")

        pipelines = preprocessing.get('pipelines', {}) or {}
        if not isinstance(pipelines, dict):
            raise ConfigurationError("preprocessing pipelines must be a dictionary")
        for steps in pipelines.values():
            normalise_steps(steps)

        datasets = preprocessing.get('datasets', {}) or {}
        if not isinstance(datasets, dict):
            raise ConfigurationError("preprocessing datasets must be a dictionary")
        for dataset_name, dataset in datasets.items():
            if not isinstance(dataset, dict):
                raise ConfigurationError(f"Preprocessing dataset '{dataset_name}' must be a dictionary")
            pipeline_name = dataset.get('pipeline')
            if pipeline_name is not None and pipeline_name not in pipelines:
                raise ConfigurationError(
                    f"Preprocessing dataset '{dataset_name}' uses unknown pipeline '{pipeline_name}'",
                    context={"available_pipelines": sorted(pipelines)}
                )
            if pipeline_name is None and 'steps' not in dataset:
                raise ConfigurationError(f"Preprocessing dataset '{dataset_name}' needs a pipeline or steps")
            normalise_steps(dataset.get('steps'))

    def _validate_references(self) -> None:
        """Check that projects and event definitions name known assets and sources."""
        for project_name, project in self.projects.items():
            for asset_name, source_name in (project.get('preferred_sources') or {}).items():
                asset = self.get_asset(asset_name)
                if source_name not in asset.sources:
                    raise ConfigurationError(
                        f"Project '{project_name}' prefers unknown source '{source_name}' for asset '{asset_name}'"
                    )

        for definition in self.get_event_definitions(COVARIATE) + self.get_event_definitions(OUTCOME):
            for asset_name in definition.event_assets:
                asset = self.get_asset(asset_name)
                if not asset.is_event:
                    logger.warning(
                        f"{definition.kind} '{definition.name}' reads attribute asset '{asset_name}'"
                    )

        demographics = self.cohort_settings.get('demographics', {})
        for asset_name in demographics.values():
            self.get_asset(asset_name)

    @property
    def config(self) -> Optional[Dict[str, Any]]:
        """Get the loaded configuration."""
        return self._config

    @property
    def assets(self) -> Dict[str, AssetConfig]:
        return self._assets

    @property
    def projects(self) -> Dict[str, Dict[str, Any]]:
        return (self._config or {}).get('projects', {}) or {}

    @property
    def database_settings(self) -> Dict[str, Any]:
        return (self._config or {}).get('database', {}) or {}

    @property
    def cohort_settings(self) -> Dict[str, Any]:
        """Cohort filters merged over their defaults."""
        settings = dict(DEFAULT_COHORT_SETTINGS)
        settings.update((self._config or {}).get('cohort', {}) or {})
        settings['demographics'] = dict(settings.get('demographics') or {})
        return settings

    def _require_loaded(self) -> None:
        if self._config is None:
            raise ConfigurationError("No configuration loaded")

    def get_asset(self, asset_name: str) -> AssetConfig:
        """Look up an asset by name.

        Raises:
            ConfigurationError: If the asset is not configured
        """
        self._require_loaded()
        if asset_name not in self._assets:
            raise ConfigurationError(
                f"Asset '{asset_name}' not found in configuration",
                context={"available_assets": sorted(self._assets)}
            )
        return self._assets[asset_name]

    def get_project_preferences(self, project_name: str) -> Dict[str, str]:
        if project_name not in self.projects:
            raise ConfigurationError(
                f"Project '{project_name}' not found in configuration",
                context={"available_projects": sorted(self.projects)}
            )
        return dict(self.projects[project_name].get('preferred_sources') or {})

    def get_asset_sources(
        self,
        asset_name: str,
        project_name: Optional[str] = None,
        include_sources: Optional[Iterable[str]] = None
    ) -> List[SourceConfig]:
        """Get the sources of an asset in priority order.

        When the project prefers a source for this asset, that source is
        promoted to priority 1 and the others are renumbered after it.

        Args:
            asset_name: Configured asset name
            project_name: Optional project whose preferences apply
            include_sources: Optional subset of source names to keep

        Returns:
            Source records sorted by (priority, name)

        Raises:
            ConfigurationError: If the asset, project or a requested source is unknown
        """
        asset = self.get_asset(asset_name)
        sources = list(asset.sources.values())

        if include_sources is not None:
            include = list(include_sources)
            unknown = [s for s in include if s not in asset.sources]
            if unknown:
                raise ConfigurationError(
                    f"Source(s) {unknown} not found for asset '{asset_name}'",
                    context={"available_sources": sorted(asset.sources)}
                )
            sources = [s for s in sources if s.name in include]

        sources.sort(key=lambda s: (s.priority, s.name))

        if project_name is not None:
            preferred = self.get_project_preferences(project_name).get(asset_name)
            if preferred is not None and any(s.name == preferred for s in sources):
                ordered = [s for s in sources if s.name == preferred] + [s for s in sources if s.name != preferred]
                sources = [replace(s, priority=rank) for rank, s in enumerate(ordered, start=1)]
                logger.debug(f"Project '{project_name}' promotes source '{preferred}' for asset '{asset_name}'")

        return sources

    def select_source_for_asset(
        self,
        asset_name: str,
        preferred_source: Optional[str] = None,
        project_name: Optional[str] = None
    ) -> str:
        """Choose a single source for an asset.

        Resolution order: explicit preference, project preference, the asset's
        default source, then the highest-priority source.
        """
        asset = self.get_asset(asset_name)

        if preferred_source is not None:
            if preferred_source not in asset.sources:
                raise ConfigurationError(
                    f"Source '{preferred_source}' not found for asset '{asset_name}'",
                    context={"available_sources": sorted(asset.sources)}
                )
            return preferred_source

        if project_name is not None:
            project_choice = self.get_project_preferences(project_name).get(asset_name)
            if project_choice is not None:
                return project_choice

        if asset.default_source is not None:
            return asset.default_source

        return self.get_asset_sources(asset_name)[0].name

    def get_source_columns(self, asset_name: str, source_name: str) -> Dict[str, str]:
        """Internal to external column names of one source of an asset."""
        asset = self.get_asset(asset_name)
        if source_name not in asset.sources:
            raise ConfigurationError(f"Source '{source_name}' not found for asset '{asset_name}'")
        return asset.sources[source_name].column_mapping

    def get_preprocessing_steps(self, source: SourceConfig) -> List[Dict[str, Any]]:
        """Preprocessing steps configured for a source.

        A dataset entry is matched by source name first, then by table name.
        Entries with ``enabled: false`` yield no steps.
        """
        preprocessing = (self._config or {}).get('preprocessing') or {}
        datasets = preprocessing.get('datasets') or {}
        dataset = datasets.get(source.name)
        if dataset is None and source.table_name is not None:
            dataset = datasets.get(source.table_name)
        if dataset is None or not dataset.get('enabled', True):
            return []

        if dataset.get('pipeline') is not None:
            steps = (preprocessing.get('pipelines') or {})[dataset['pipeline']]
        else:
            steps = dataset.get('steps')
        return normalise_steps(steps)

    def get_event_definitions(self, kind: str) -> List[EventDefinition]:
        """Parse the configured covariates or outcomes.

        Args:
            kind: 'covariate' or 'outcome'
        """
        entries = (self._config or {}).get(kind + 's', []) or []
        return [EventDefinition.from_dict(entry, kind) for entry in entries]

    def load_lookup_table(self, csv_path: str) -> pd.DataFrame:
        """Load a code lookup table from CSV file.

        Args:
            csv_path: Path to the lookup CSV file

        Returns:
            DataFrame with code, name, description and terminology columns

        Raises:
            ConfigurationError: If file cannot be loaded or has invalid format
        """
        csv_file = Path(csv_path)
        if not csv_file.is_absolute() and self._config_dir is not None and not csv_file.exists():
            csv_file = self._config_dir / csv_file
        if not csv_file.exists():
            raise ConfigurationError(f"Lookup table not found: {csv_path}")

        try:
            lookup = pd.read_csv(csv_file, dtype={'code': str})
        except pd.errors.EmptyDataError:
            raise ConfigurationError("Lookup table CSV file is empty")
        except (OSError, pd.errors.ParserError) as e:
            raise ConfigurationError(f"Failed to load lookup table: {e}")

        validate_lookup_table(lookup)
        self._lookup = lookup
        logger.info(f"Loaded {len(lookup)} lookup codes from {csv_file}")
        return lookup

    def get_lookup_table(self) -> pd.DataFrame:
        """Get the configured lookup table, loading it on first use.

        Raises:
            ConfigurationError: If no lookup is configured or it is malformed
        """
        if self._lookup is not None:
            return self._lookup

        self._require_loaded()
        lookup_config = self._config.get('lookup')
        if not lookup_config:
            raise ConfigurationError("No lookup table configured")

        if 'file' in lookup_config:
            return self.load_lookup_table(lookup_config['file'])

        lookup = pd.DataFrame(lookup_config['entries'])
        validate_lookup_table(lookup)
        lookup['code'] = lookup['code'].astype(str)
        self._lookup = lookup
        logger.info(f"Loaded {len(lookup)} lookup codes from configuration")
        return lookup
