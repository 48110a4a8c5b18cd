"""Logging configuration for the cohort curation pipeline.

Two loggers matter: the package logger, which every stage logs to, and the
report logger, which receives the rendered quality reports (source coverage,
conflicts, exclusion counts, covariate/outcome coverage). The report logger
can be written to its own file so a run leaves an audit trail next to its
output.
"""

import logging
import logging.config
import sys
from pathlib import Path
from typing import Dict, Any, Optional

PACKAGE_LOGGER = 'cohort_curation_pipeline'
REPORT_LOGGER = f'{PACKAGE_LOGGER}.reports'

LOG_FORMATS = {
    'simple': '%(levelname)s - %(message)s',
    'detailed': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'json': '{"timestamp": "%(asctime)s", "logger": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
}

# 10MB per file, five rotations
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def _file_handler(path: str, level: str, formatter: str) -> Dict[str, Any]:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return {
        'class': 'logging.handlers.RotatingFileHandler',
        'level': level,
        'formatter': formatter,
        'filename': str(log_path),
        'maxBytes': MAX_LOG_BYTES,
        'backupCount': LOG_BACKUPS,
        'encoding': 'utf-8'
    }


def build_logging_config(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_type: str = "detailed",
    report_level: Optional[str] = None,
    report_file: Optional[str] = None
) -> Dict[str, Any]:
    """Build the dictConfig mapping used by `setup_logging`.

    Args:
        level: Level for the package logger and console
        log_file: Optional rotating log file for everything the package logs
        format_type: 'simple', 'detailed' or 'json'
        report_level: Level for the report logger; defaults to `level`
        report_file: Optional rotating file that receives only quality reports

    Returns:
        Dictionary accepted by ``logging.config.dictConfig``
    """
    if format_type not in LOG_FORMATS:
        raise ValueError(f"Unknown log format '{format_type}', expected one of {sorted(LOG_FORMATS)}")

    handlers: Dict[str, Any] = {
        'console': {
            'class': 'logging.StreamHandler',
            'level': level,
            'formatter': 'standard',
            'stream': sys.stdout
        }
    }
    package_handlers = ['console']
    if log_file:
        handlers['file'] = _file_handler(log_file, level, 'standard')
        package_handlers.append('file')

    report_logger: Dict[str, Any] = {'level': report_level or level, 'propagate': True}
    if report_file:
        handlers['reports'] = _file_handler(report_file, report_level or level, 'report')
        report_logger['handlers'] = ['reports']

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {'format': LOG_FORMATS[format_type], 'datefmt': '%Y-%m-%d %H:%M:%S'},
            'report': {'format': '%(asctime)s - %(message)s', 'datefmt': '%Y-%m-%d %H:%M:%S'}
        },
        'handlers': handlers,
        'loggers': {
            PACKAGE_LOGGER: {'level': level, 'handlers': package_handlers, 'propagate': False},
            REPORT_LOGGER: report_logger
        },
        'root': {'level': 'WARNING', 'handlers': ['console']}
    }


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_type: str = "detailed",
    report_level: Optional[str] = None,
    report_file: Optional[str] = None
) -> None:
    """Configure package and report logging for a pipeline run.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, logs only to console.
        format_type: Format type - 'simple', 'detailed', or 'json'
        report_level: Level for the quality report logger. Defaults to `level`.
        report_file: Optional path that collects the quality reports only
    """
    logging.config.dictConfig(
        build_logging_config(level, log_file, format_type, report_level, report_file)
    )
    get_logger(__name__).debug(
        f"Logging configured - level {level}, log file {log_file or 'none'}, "
        f"report file {report_file or 'none'}"
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the package logger.

    Class names such as ``CohortBuilder`` become
    ``cohort_curation_pipeline.CohortBuilder`` so the handlers set up by
    `setup_logging` apply to them.
    """
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
