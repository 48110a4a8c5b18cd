"""Retry, error wrapping and timing helpers shared by the pipeline stages."""

import logging
import time
import functools
from typing import Callable, TypeVar, Any, Iterator, Optional, Type, Tuple
import pandas as pd
from ..exceptions import CohortPipelineError, SourceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _backoff_delays(max_retries: int, delay: float, backoff_factor: float) -> Iterator[float]:
    for attempt in range(max_retries):
        yield delay * (backoff_factor ** attempt)


def retry_on_failure(
    max_retries: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (SourceUnavailableError,)
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that retries a call on transient errors with exponential backoff.

    The adapter wraps its query execution with this so a locked or briefly
    unreachable database file does not fail the whole source.

    Args:
        max_retries: Retries after the first attempt; 0 disables retrying
        delay: Wait before the first retry in seconds
        backoff_factor: Multiplier applied to the wait after each retry
        exceptions: Exception types that trigger a retry

    Returns:
        Decorated function with retry logic
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempts = max_retries + 1
            for attempt, wait in enumerate(_backoff_delays(max_retries, delay, backoff_factor), start=1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{attempts}: {e}. "
                        f"Retrying in {wait:.1f}s"
                    )
                    time.sleep(wait)

            try:
                return func(*args, **kwargs)
            except exceptions as e:
                if max_retries:
                    logger.error(f"{func.__name__} failed after {max_retries} retries: {e}")
                raise

        return wrapper
    return decorator


class ErrorContext:
    """Context manager that names the pipeline stage in error logs.

    Errors that are not already pipeline errors are re-raised as
    `error_class` so callers can tell a failed run from an empty result.
    Pipeline errors pass through unchanged.

    Example:
        with ErrorContext("curate demographics", DataRetrievalError, project=name):
            ...
    """

    def __init__(self, operation: str,
                 error_class: Type[CohortPipelineError] = CohortPipelineError,
                 **context: Any) -> None:
        self.operation = operation
        self.error_class = error_class
        self.context = context

    def __enter__(self) -> 'ErrorContext':
        logger.debug(f"Starting stage: {self.operation}")
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]],
                 exc_val: Optional[BaseException],
                 exc_tb: Any) -> None:
        if exc_type is None:
            logger.debug(f"Stage finished: {self.operation}")
            return

        details = f" ({self.context})" if self.context else ""
        logger.error(f"Stage '{self.operation}' failed{details}: {exc_val}")

        if isinstance(exc_val, Exception) and not isinstance(exc_val, CohortPipelineError):
            raise self.error_class(
                f"Stage '{self.operation}' failed: {exc_val}",
                context=dict(self.context)
            ) from exc_val


def _describe_result(result: Any) -> str:
    frame = getattr(result, 'dataset', result)
    if isinstance(frame, pd.DataFrame):
        return f" ({frame.shape[0]} rows x {frame.shape[1]} columns)"
    return ""


def log_performance(func: Callable[..., T]) -> Callable[..., T]:
    """Decorator that logs how long a stage took and the size of its table."""
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"{func.__name__} failed after {time.perf_counter() - started:.2f}s: {e}")
            raise

        logger.info(f"{func.__name__} completed in {time.perf_counter() - started:.2f}s{_describe_result(result)}")
        return result

    return wrapper
