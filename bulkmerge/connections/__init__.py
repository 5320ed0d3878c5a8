"""Connection implementations for bulkmerge."""

from bulkmerge.connections.sql_server import SqlServerConnection, set_command_timeout

__all__ = ["SqlServerConnection", "set_command_timeout"]
