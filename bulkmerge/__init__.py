"""bulkmerge - Bulk insert-or-update for SQL Server through a staging table and one MERGE."""

__version__ = "0.1.0"

from bulkmerge.config import BulkCopySettings, IdentityDirection, MergeBuilder, MergeConfig
from bulkmerge.exceptions import (
    BulkMergeException,
    ConfigValidationError,
    ConnectionError,
    IdentityError,
    SchemaError,
)
from bulkmerge.sql.predicates import ComparisonOperator, Predicate, col
from bulkmerge.writers.sql_server_writer import CommitState, SqlServerMergeWriter

__all__ = [
    "BulkCopySettings",
    "BulkMergeException",
    "CommitState",
    "ComparisonOperator",
    "ConfigValidationError",
    "ConnectionError",
    "IdentityDirection",
    "IdentityError",
    "MergeBuilder",
    "MergeConfig",
    "Predicate",
    "SchemaError",
    "SqlServerMergeWriter",
    "col",
    "__version__",
]


# Lazy imports so that loading YAML or building engines doesn't load at import time
def __getattr__(name):
    if name == "load_merge_config":
        from bulkmerge.utils.config_loader import load_merge_config

        return load_merge_config
    if name == "SqlServerConnection":
        from bulkmerge.connections.sql_server import SqlServerConnection

        return SqlServerConnection
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
