"""Structured logging for bulkmerge.

Console output goes through rich. With ``structured=True`` every record is
printed as one JSON object per line so merge runs can be shipped to a log
collector. Registered secrets (passwords, connection strings) are redacted
from messages and string fields in both modes.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Set

from rich.logging import RichHandler

LOGGER_NAME = "bulkmerge"

REDACTED = "[REDACTED]"

# Never more verbose than WARNING
DRIVER_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "pyodbc", "aioodbc")

_PREFIXES = {"DEBUG": "[DEBUG] ", "INFO": "", "WARNING": "[WARN] ", "ERROR": "[ERROR] "}


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _console_handler(structured: bool) -> logging.Handler:
    if structured:
        return logging.StreamHandler(sys.stdout)
    return RichHandler(rich_tracebacks=True, markup=False, show_path=False)


class StructuredLogger:
    """Merge logger with human-readable or JSON output."""

    def __init__(self, structured: bool = False, level: str = "INFO"):
        self.structured = structured
        self.level = _resolve_level(level)
        self._secrets: Set[str] = set()

        logging.basicConfig(
            level=self.level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[_console_handler(structured)],
        )

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(self.level)

        driver_level = max(self.level, logging.WARNING)
        for name in DRIVER_LOGGERS:
            logging.getLogger(name).setLevel(driver_level)

    def register_secret(self, secret: str) -> None:
        """Redact ``secret`` from everything logged afterwards."""
        if isinstance(secret, str) and secret.strip():
            self._secrets.add(secret)

    def _redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        if logging.getLevelName(level) < self.level:
            return

        message = self._redact(str(message))
        fields: Dict[str, Any] = {
            key: self._redact(value) if isinstance(value, str) else value
            for key, value in kwargs.items()
        }

        if self.structured:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "message": message,
            }
            entry.update(fields)
            print(json.dumps(entry, default=str))
            return

        if fields:
            pairs = ", ".join(f"{key}={value}" for key, value in fields.items())
            message = f"{message} ({pairs})"
        getattr(self.logger, level.lower())(_PREFIXES[level] + message)


logger = StructuredLogger()


def configure_logging(structured: bool, level: str) -> None:
    """Replace the module-level logger."""
    global logger
    logger = StructuredLogger(structured=structured, level=level)
