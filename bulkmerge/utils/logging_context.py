"""Context-aware structured logging for merge operations.

A ``LoggingContext`` carries the target table and operation identifiers so that
every log line emitted during a commit can be correlated, and offers an
``operation()`` context manager that times a step and records row counts.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from bulkmerge.utils import logging as logging_module
from bulkmerge.utils.logging import StructuredLogger


class OperationType(str, Enum):
    """Steps of a merge commit that are timed and logged."""

    PROBE = "probe"
    STAGE = "stage"
    LOAD = "load"
    INDEX = "index"
    MERGE = "merge"
    IDENTITY = "identity"


@dataclass
class OperationMetrics:
    """Timing and row counts for one logged operation."""

    start_time: Optional[float] = None
    end_time: Optional[float] = None
    rows_in: Optional[int] = None
    rows_out: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = round(self.elapsed_ms, 2)
        if self.rows_in is not None:
            result["rows_in"] = self.rows_in
        if self.rows_out is not None:
            result["rows_out"] = self.rows_out
        result.update(self.extra)
        return result


class LoggingContext:
    """Logger wrapper that stamps every entry with the merge context."""

    def __init__(
        self,
        logger: Optional[StructuredLogger] = None,
        table: Optional[str] = None,
        operation_id: Optional[str] = None,
    ):
        self._logger = logger
        self.table = table
        self.operation_id = operation_id

    @property
    def logger(self) -> StructuredLogger:
        # Read the module attribute so configure_logging() replacements are honoured
        return self._logger or logging_module.logger

    def _base_context(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        if self.table:
            context["table"] = self.table
        if self.operation_id:
            context["operation_id"] = self.operation_id
        return context

    def with_context(self, **kwargs) -> "LoggingContext":
        """Return a copy with some context fields replaced."""
        return LoggingContext(
            logger=kwargs.get("logger", self._logger),
            table=kwargs.get("table", self.table),
            operation_id=kwargs.get("operation_id", self.operation_id),
        )

    def __enter__(self) -> "LoggingContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is not None:
            self.error(
                "Unhandled error in logging context",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
            )
        return False

    def _log(self, level: str, message: str, **kwargs) -> None:
        context = self._base_context()
        context.update(kwargs)
        getattr(self.logger, level)(message, **context)

    def info(self, message: str, **kwargs) -> None:
        self._log("info", message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log("warning", message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log("error", message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        self._log("debug", message, **kwargs)

    def log_operation_start(self, operation: OperationType, description: str) -> OperationMetrics:
        self.debug(f"Starting {operation.value}: {description}")
        return OperationMetrics(start_time=time.perf_counter())

    def log_operation_end(
        self, operation: OperationType, description: str, metrics: OperationMetrics
    ) -> None:
        metrics.end_time = time.perf_counter()
        self.debug(f"Completed {operation.value}: {description}", **metrics.to_dict())

    @contextmanager
    def operation(self, operation: OperationType, description: str) -> Iterator[OperationMetrics]:
        """Time a step; failures are logged with the elapsed time and re-raised."""
        metrics = self.log_operation_start(operation, description)
        try:
            yield metrics
        except Exception as e:
            metrics.end_time = time.perf_counter()
            self.error(
                f"Failed {operation.value}: {description}",
                error_type=type(e).__name__,
                error_message=str(e),
                **metrics.to_dict(),
            )
            raise
        self.log_operation_end(operation, description, metrics)

    def log_connection(self, connection_type: str, connection_name: str, action: str = "connect"):
        self.debug(
            f"Connection {action}",
            connection_type=connection_type,
            connection_name=connection_name,
        )


_global_context: Optional[LoggingContext] = None


def get_logging_context() -> LoggingContext:
    """Get the process-wide logging context, creating a default one on first use."""
    global _global_context
    if _global_context is None:
        _global_context = LoggingContext()
    return _global_context


def set_logging_context(context: LoggingContext) -> None:
    global _global_context
    _global_context = context


def create_logging_context(
    table: Optional[str] = None,
    operation_id: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
) -> LoggingContext:
    return LoggingContext(logger=logger, table=table, operation_id=operation_id)
