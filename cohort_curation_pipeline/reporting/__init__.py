"""Report sinks."""

from .reporter import BaseReporter, NullReporter, CollectingReporter, LoggingReporter

__all__ = ["BaseReporter", "NullReporter", "CollectingReporter", "LoggingReporter"]
