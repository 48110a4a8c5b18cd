"""Command-line interface for the cohort curation pipeline."""

import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

from .logging_config import setup_logging, get_logger
from .config import ConfigurationManager
from .pipeline import CohortPipeline
from .reporting import LoggingReporter
from .sources import DuckDBSourceAdapter
from .exceptions import CohortPipelineError


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="Cohort Curation Pipeline - build an analysis-ready cohort with covariates and outcomes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the configured pipeline and store the final table
  %(prog)s --config pipeline.yaml --output analysis.duckdb

  # Use a project's preferred sources and a patient subset
  %(prog)s --config pipeline.yaml --output analysis.duckdb --project diabetes_study --patient-ids ids.txt

  # Validate the configuration only
  %(prog)s --config pipeline.yaml --validate-only

  # Show configuration template
  %(prog)s --show-template
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--output",
        type=str,
        help="DuckDB database to write the final analysis table into"
    )
    parser.add_argument(
        "--table",
        type=str,
        default="analysis_dataset",
        help="Name of the output table (default: analysis_dataset)"
    )

    parser.add_argument(
        "--project",
        type=str,
        help="Project whose preferred sources apply"
    )
    parser.add_argument(
        "--patient-ids",
        type=str,
        help="File with one patient id per line restricting the source population"
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Threads used for covariates and outcomes (default: sequential)"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        help="Optional log file path"
    )
    parser.add_argument(
        "--report-file",
        type=str,
        help="Optional file that collects the data quality reports of the run"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output (equivalent to --log-level DEBUG)"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress progress output (equivalent to --log-level WARNING)"
    )

    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only validate configuration without reading data"
    )
    parser.add_argument(
        "--show-template",
        action="store_true",
        help="Show example configuration template and exit"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be read and computed without touching the database"
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress indicators"
    )

    return parser


def show_template() -> None:
    """Display a basic configuration template."""
    template = """# Cohort Curation Pipeline Configuration Template
# Copy this template and customize for your needs

database:
  path: "source.duckdb"
  schema: "SAIL"
  read_only: true
  retries: 2

assets:
  date_of_birth:
    kind: attribute
    sources:
      gp_registration:
        table_name: "GP_PATIENT"
        priority: 1
        quality: high
        coverage: 0.95
        columns: {patient_id: "ALF_PE", date_of_birth: "WOB"}
  sex:
    kind: attribute
    sources:
      gp_registration:
        table_name: "GP_PATIENT"
        priority: 1
        quality: high
        columns: {patient_id: "ALF_PE", sex_code: "GNDR_CD"}
  gp_events:
    kind: event
    sources:
      primary_care:
        table_name: "GP_EVENT"
        priority: 1
        terminology: "READ"
        columns: {patient_id: "ALF_PE", event_date: "EVENT_DT", code: "EVENT_CD"}

projects:
  diabetes_study:
    preferred_sources: {sex: gp_registration}

cohort:
  index_date: 2024-01-01
  min_age: 18
  max_age: 100
  require_known_sex: true
  # or per-patient dates from a table:
  # index_date: {strategy: database, table: "BASELINE", patient_id_column: "ALF_PE", baseline_date_column: "BASE_DT"}

lookup:
  file: "codes.csv"   # columns: code, name, description, terminology

covariates:
  - name: diabetes
    event_assets: [gp_events]
    days_before_end: 0
    selection_method: min

outcomes:
  - name: stroke
    event_assets: [gp_events]
    days_after_start: 0
    days_after_end: 365
    calculate_days_from_index: true

preprocessing:
  pipelines:
    clean_events:
      - {type: data_transformation, column: code, transform_type: string_cleaning}
      - {type: code_match, lookup_name: diabetes, join_type: left, output_columns: [description]}
  datasets:
    primary_care: {pipeline: clean_events, enabled: true}
"""
    print(template)


def validate_arguments(args: argparse.Namespace) -> None:
    """Validate command line arguments."""
    if args.show_template:
        return

    if not args.config:
        raise ValueError("--config is required unless using --show-template")

    if not args.output and not (args.validate_only or args.dry_run):
        raise ValueError("--output is required unless using --validate-only or --dry-run")

    if not Path(args.config).exists():
        raise FileNotFoundError(f"Configuration file not found: {args.config}")

    if args.patient_ids and not Path(args.patient_ids).exists():
        raise FileNotFoundError(f"Patient id file not found: {args.patient_ids}")

    if args.workers is not None and args.workers < 1:
        raise ValueError("--workers must be at least 1")

    if args.verbose and args.quiet:
        raise ValueError("Cannot specify both --verbose and --quiet")


def setup_logging_from_args(args: argparse.Namespace) -> None:
    """Set up logging based on command line arguments."""
    log_level = args.log_level

    if args.verbose:
        log_level = "DEBUG"
    elif args.quiet:
        log_level = "WARNING"

    setup_logging(level=log_level, log_file=args.log_file, report_file=args.report_file)


def read_patient_ids(path: str) -> List[str]:
    """Read one patient id per line, skipping blanks and '#' comments."""
    with open(path, 'r', encoding='utf-8') as f:
        ids = [line.strip() for line in f]
    return [pid for pid in ids if pid and not pid.startswith('#')]


def run_pipeline(config_manager: ConfigurationManager, args: argparse.Namespace) -> None:
    """Run the complete curation pipeline."""
    logger = get_logger(__name__)
    start_time = time.time()
    show_progress = not args.no_progress and not args.quiet

    patient_ids: Optional[List[str]] = None
    if args.patient_ids:
        patient_ids = read_patient_ids(args.patient_ids)
        logger.info(f"Restricting to {len(patient_ids)} patient ids from {args.patient_ids}")

    adapter = DuckDBSourceAdapter.from_settings(config_manager.database_settings)
    try:
        pipeline = CohortPipeline(
            config_manager,
            adapter,
            reporter=LoggingReporter(),
            max_workers=args.workers,
            show_progress=show_progress,
        )

        if args.dry_run:
            for line in pipeline.describe_plan(project_name=args.project):
                print(line)
            logger.info("Dry run completed - no data read")
            return

        result = pipeline.run(patient_ids=patient_ids, project_name=args.project)

        output = DuckDBSourceAdapter(args.output)
        try:
            output.write_table(result.dataset, args.table)
        finally:
            output.close()

        elapsed_time = time.time() - start_time
        if show_progress:
            print(f"Cohort: {len(result.cohort)} patients")
            print(f"Covariates: {len(result.covariates)}, outcomes: {len(result.outcomes)}")
            print(f"Wrote {args.table} ({result.dataset.shape[0]} rows, {result.dataset.shape[1]} columns) "
                  f"to {args.output} in {elapsed_time:.1f} seconds")

        logger.info(f"Pipeline completed successfully in {elapsed_time:.1f} seconds")
    finally:
        adapter.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging_from_args(args)
    logger = get_logger(__name__)

    try:
        if args.show_template:
            show_template()
            return

        validate_arguments(args)

        logger.info("Cohort Curation Pipeline CLI started")
        logger.info(f"Configuration: {args.config}")

        config_manager = ConfigurationManager()
        config_manager.load_yaml_spec(args.config)

        if args.validate_only:
            if config_manager.config.get('lookup'):
                config_manager.get_lookup_table()
            logger.info("Configuration validation completed successfully")
            if not args.quiet:
                print("Configuration is valid")
            return

        run_pipeline(config_manager, args)

    except KeyboardInterrupt:
        logger.info("Pipeline interrupted by user")
        sys.exit(1)
    except (CohortPipelineError, ValueError, FileNotFoundError) as e:
        logger.error(f"Error: {str(e)}")
        if not args.quiet:
            print(f"Error: {str(e)}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}", exc_info=True)
        if not args.quiet:
            print(f"Unexpected error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
