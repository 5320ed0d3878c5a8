"""Custom exceptions for bulkmerge."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type


class BulkMergeException(Exception):
    """Base exception for all bulkmerge errors."""

    pass


class ConfigValidationError(BulkMergeException):
    """Merge configuration is invalid. Always raised before any database I/O."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = ["Configuration validation error"]
        if self.field:
            parts.append(f"\n  Field: {self.field}")
        parts.append(f"\n  Error: {self.message}")
        return "".join(parts)


class SchemaError(BulkMergeException):
    """Target table is missing or lacks columns the merge needs."""

    def __init__(self, table: str, missing_columns: Optional[List[str]] = None):
        self.table = table
        self.missing_columns = missing_columns or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        if not self.missing_columns:
            return f"✗ Table not found or has no columns: {self.table}"

        parts = [f"✗ Schema mismatch for table: {self.table}"]
        parts.append("\n\n  Missing columns:")
        for col in self.missing_columns:
            parts.append(f"\n    • {col}")
        parts.append("\n\n  Check custom column mappings and the configured column set.")
        return "".join(parts)


class IdentityError(BulkMergeException):
    """The server rejected a write to an identity column (error 8102)."""

    def __init__(self, message: str, server_messages: Optional[List[str]] = None):
        self.message = message
        self.server_messages = server_messages or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Identity column misconfiguration: {self.message}"]
        parts.append("\n\n  Suggestions:")
        parts.append(
            "\n    1. Declare the table's identity column with identity() on the builder"
        )
        parts.append(
            "\n    2. Required when the identity column is matched on or all columns are added"
        )
        return "".join(parts)


class ConnectionError(BulkMergeException):
    """Connection failed or invalid."""

    def __init__(self, connection_name: str, reason: str, suggestions: Optional[List[str]] = None):
        self.connection_name = connection_name
        self.reason = reason
        self.suggestions = suggestions or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [
            f"✗ Connection failed: {self.connection_name}",
            f"\n  Reason: {self.reason}",
        ]

        if self.suggestions:
            parts.append("\n\n  Suggestions:")
            for i, suggestion in enumerate(self.suggestions, 1):
                parts.append(f"\n    {i}. {suggestion}")

        return "".join(parts)


# pyodbc appends the native error number to the end of each message, e.g.
# "[SQL Server]Cannot update identity column 'Id'. (8102) (SQLExecDirectW)".
# Anchored so parenthesised numbers inside the message text are ignored.
_ODBC_CODE_PATTERN = re.compile(r"\((\d+)\)\s*(?:\(SQL\w+\))?\s*(?:;\s*(?:\[\w+\])?)?$")
_ODBC_MESSAGE_SPLIT = re.compile(r"(?=\[Microsoft\])")


@dataclass
class ServerError:
    """Native server error payload extracted from a DBAPI exception."""

    errors: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def codes(self) -> List[int]:
        return [code for code, _ in self.errors]

    @property
    def messages(self) -> List[str]:
        return [message for _, message in self.errors]

    def first(self, code: int) -> Optional[str]:
        for error_code, message in self.errors:
            if error_code == code:
                return message
        return None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ServerError":
        """Build from a SQLAlchemy ``DBAPIError`` or a raw driver exception.

        Handles pymssql style ``(code, message)`` args and pyodbc style
        ``(sqlstate, message)`` args where codes are embedded in the message.
        """
        orig = getattr(exc, "orig", None) or exc
        args = getattr(orig, "args", ()) or ()

        if len(args) >= 2 and isinstance(args[0], int):
            message = args[1]
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            return cls(errors=[(args[0], str(message))])

        errors = []
        for arg in args:
            if not isinstance(arg, str):
                continue
            for chunk in _ODBC_MESSAGE_SPLIT.split(arg):
                chunk = chunk.strip()
                if not chunk:
                    continue
                match = _ODBC_CODE_PATTERN.search(chunk)
                if match:
                    errors.append((int(match.group(1)), chunk))
        return cls(errors=errors)


SERVER_ERROR_CLASSES: Dict[int, Type[BulkMergeException]] = {
    8102: IdentityError,
}


def classify_server_error(exc: BaseException) -> Optional[BulkMergeException]:
    """Map a failed batch to a domain error, or None when it should pass through unchanged."""
    server_error = ServerError.from_exception(exc)
    for code in server_error.codes:
        error_cls = SERVER_ERROR_CLASSES.get(code)
        if error_cls is not None:
            return error_cls(server_error.first(code), server_messages=server_error.messages)
    return None
