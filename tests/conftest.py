import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from bulkmerge.utils import logging_context


@pytest.fixture(autouse=True)
def configure_logging():
    """Configure logging to avoid Rich Text object issues in tests."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if hasattr(handler, "__class__") and "Rich" in handler.__class__.__name__:
            root.removeHandler(handler)
    logging.basicConfig(level=logging.WARNING, format="%(message)s", force=True)
    logging_context._global_context = None
    yield
    logging_context._global_context = None
    logging.basicConfig(level=logging.INFO, force=True)


def schema_row(name, data_type="int", char_len=None, precision=None, scale=None, identity=0, nullable="YES"):
    return {
        "COLUMN_NAME": name,
        "DATA_TYPE": data_type,
        "CHARACTER_MAXIMUM_LENGTH": char_len,
        "NUMERIC_PRECISION": precision,
        "NUMERIC_SCALE": scale,
        "DATETIME_PRECISION": None,
        "IS_NULLABLE": nullable,
        "IS_IDENTITY": identity,
    }


ORDERS_SCHEMA = [
    schema_row("Id", "int", identity=1, nullable="NO"),
    schema_row("Code", "nvarchar", char_len=50, nullable="NO"),
    schema_row("Name", "nvarchar", char_len=255),
    schema_row("Amount", "decimal", precision=18, scale=2),
]


def _result_for(sql, schema_rows, output_rows, rowcount):
    result = MagicMock()
    result.mappings.return_value.all.return_value = list(schema_rows) if "INFORMATION_SCHEMA" in sql else []
    result.fetchall.return_value = list(output_rows) if "FROM #TmpOutput" in sql else []
    result.rowcount = rowcount if sql.lstrip().startswith(("MERGE", "SET IDENTITY_INSERT")) else -1
    return result


class FakeDatabase:
    """Records every statement sent to it and answers the few queries a merge reads from."""

    def __init__(self, schema_rows=ORDERS_SCHEMA, output_rows=(), rowcount=0, fail_on=None, error=None,
                 cleanup_error=None):
        self.schema_rows = schema_rows
        self.output_rows = output_rows
        self.rowcount = rowcount
        self.fail_on = fail_on
        self.error = error
        self.cleanup_error = cleanup_error
        self.executed = []

    def execute(self, statement, params=None, **kwargs):
        sql = str(statement)
        self.executed.append((sql, params))
        if self.fail_on and self.fail_on in sql:
            raise self.error
        if self.cleanup_error is not None and sql.startswith("IF OBJECT_ID"):
            raise self.cleanup_error
        return _result_for(sql, self.schema_rows, self.output_rows, self.rowcount)

    def statements(self):
        return [sql for sql, _ in self.executed]

    def find(self, fragment):
        return [(sql, params) for sql, params in self.executed if fragment in sql]

    def sync_connection(self, in_transaction=True):
        conn = MagicMock()
        conn.in_transaction.return_value = in_transaction
        conn.execute.side_effect = self.execute
        return conn

    def async_connection(self, in_transaction=True):
        sync_conn = self.sync_connection()
        conn = MagicMock()
        conn.in_transaction = MagicMock(return_value=in_transaction)
        conn.execute = AsyncMock(side_effect=self.execute)
        conn.begin = AsyncMock()
        conn.run_sync = AsyncMock(side_effect=lambda fn, *args: fn(sync_conn, *args))
        conn.sync_conn = sync_conn
        return conn


@pytest.fixture
def fake_db():
    """Factory for FakeDatabase instances."""
    return FakeDatabase


@pytest.fixture
def orders_schema():
    """INFORMATION_SCHEMA rows for a [sales].[orders] table with an identity Id."""
    return list(ORDERS_SCHEMA)


@pytest.fixture
def make_schema_row():
    return schema_row
