"""Writers that apply a merge configuration to a database."""

from bulkmerge.writers.sql_server_writer import CommitState, SqlServerMergeWriter

__all__ = ["CommitState", "SqlServerMergeWriter"]
