"""
Phase timing for index builds, probes, transforms and file I/O.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PerformanceTimer:
    """
    Times a block and logs its duration with the given context fields.

    When a ``rows`` field is given the record also carries ``rows_per_second``.
    A block that raises is logged as failed at WARNING.

    Usage:
        with PerformanceTimer("join_build", side="right", rows=len(column)) as timer:
            index = StrTreeIndex(geometries)
        timer.duration_ms
    """

    def __init__(
        self,
        operation: str,
        log_level: int = logging.DEBUG,
        threshold_ms: Optional[float] = None,
        **context: Any,
    ):
        self.operation = operation
        self.log_level = log_level
        self.threshold_ms = threshold_ms
        self.context = context
        self.duration_ms: Optional[float] = None
        self._start: Optional[float] = None

    def __enter__(self) -> "PerformanceTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._start is None:
            return
        self.duration_ms = (time.perf_counter() - self._start) * 1000
        extra = {"operation": self.operation, "duration_ms": self.duration_ms, **self.context}

        if exc_type is not None:
            logger.warning(
                f"{self.operation} failed after {self.duration_ms:.2f}ms: {exc_type.__name__}",
                extra=extra,
            )
            return
        if self.threshold_ms is not None and self.duration_ms < self.threshold_ms:
            return

        rows = self.context.get("rows")
        if isinstance(rows, int) and self.duration_ms > 0:
            extra["rows_per_second"] = rows / (self.duration_ms / 1000)
        logger.log(self.log_level, f"{self.operation} completed in {self.duration_ms:.2f}ms", extra=extra)


def log_performance(
    log_level: int = logging.DEBUG,
    threshold_ms: Optional[float] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator that runs the function inside a ``PerformanceTimer`` named after it."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        operation = f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with PerformanceTimer(operation, log_level, threshold_ms):
                return func(*args, **kwargs)

        return wrapper

    return decorator
