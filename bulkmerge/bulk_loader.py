"""Bulk transfer of the staging DataFrame into the temporary table.

The orchestrator only depends on the ``BulkLoader`` protocol. The default
``ExecuteManyBulkLoader`` issues batched, parameterized INSERTs through
SQLAlchemy; on ``mssql+pyodbc`` engines created with ``fast_executemany=True``
each batch is sent as a single array-bound round trip.
"""

import math
from typing import Any, Dict, Iterator, List, Protocol, Sequence

import pandas as pd
from sqlalchemy import text

from bulkmerge.config import BulkCopySettings
from bulkmerge.connections.sql_server import set_command_timeout
from bulkmerge.sql.dialect import escape_column
from bulkmerge.utils.logging_context import get_logging_context


class BulkLoader(Protocol):
    def load(self, connection: Any, frame: pd.DataFrame, table_name: str, settings: BulkCopySettings) -> int:
        """Copy every row of ``frame`` into ``table_name`` and return the row count."""
        ...


def to_native(value: Any) -> Any:
    """Convert pandas/numpy scalars and missing markers to values the DBAPI accepts."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if hasattr(value, "item") and type(value).__module__ == "numpy":
        return value.item()
    return value


def build_insert_sql(table_name: str, columns: Sequence[str], table_lock: bool = False) -> str:
    """INSERT with positional bind names, so column names never need to be valid bind names."""
    hint = " WITH (TABLOCK)" if table_lock else ""
    col_list = ", ".join(escape_column(c) for c in columns)
    values = ", ".join(f":p{i}" for i in range(len(columns)))
    return f"INSERT INTO {table_name}{hint} ({col_list}) VALUES ({values})"


class ExecuteManyBulkLoader:
    """Default bulk loader: batched executemany INSERTs on the caller's connection."""

    def __init__(self):
        self.ctx = get_logging_context()

    def _iter_rows(self, frame: pd.DataFrame) -> Iterator[Dict[str, Any]]:
        for row in frame.itertuples(index=False, name=None):
            yield {f"p{i}": to_native(v) for i, v in enumerate(row)}

    def _batches(self, frame: pd.DataFrame, settings: BulkCopySettings) -> Iterator[List[Dict[str, Any]]]:
        batch_size = settings.batch_size or max(len(frame), 1)
        if settings.enable_streaming:
            batch: List[Dict[str, Any]] = []
            for row in self._iter_rows(frame):
                batch.append(row)
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
            if batch:
                yield batch
        else:
            rows = list(self._iter_rows(frame))
            for start in range(0, len(rows), batch_size):
                yield rows[start : start + batch_size]

    def load(self, connection: Any, frame: pd.DataFrame, table_name: str, settings: BulkCopySettings) -> int:
        """
        Copy all rows of ``frame`` into ``table_name``.

        Args:
            connection: Open SQLAlchemy connection (sync)
            frame: Staging DataFrame; its columns name the table columns
            table_name: Staging table to insert into
            settings: Batch size, timeout, notification and streaming settings

        Returns:
            Number of rows copied
        """
        if frame.empty:
            return 0

        set_command_timeout(connection, settings.timeout)
        statement = text(build_insert_sql(table_name, list(frame.columns), settings.table_lock))

        rows_copied = 0
        batches = 0
        next_notify = settings.notify_after
        for batch in self._batches(frame, settings):
            connection.execute(statement, batch, execution_options=dict(settings.options))
            rows_copied += len(batch)
            batches += 1
            self.ctx.debug("Staged batch", table_name=table_name, batch=batches, rows=len(batch))

            if next_notify is not None and rows_copied >= next_notify:
                for callback in settings.callbacks:
                    callback(rows_copied)
                next_notify = (rows_copied // settings.notify_after + 1) * settings.notify_after

        self.ctx.info("Bulk load completed", table_name=table_name, rows=rows_copied, batches=batches)
        return rows_copied
