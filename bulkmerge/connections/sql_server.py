"""
SQL Server Connection
=====================

Builds SQLAlchemy engines for SQL Server, sync (``mssql+pyodbc``) and async
(``mssql+aioodbc``), from server/database/authentication settings.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

from sqlalchemy.engine.interfaces import AdaptedConnection

from bulkmerge.exceptions import ConnectionError
from bulkmerge.utils import logging as logging_module
from bulkmerge.utils.logging_context import get_logging_context


def _driver_connection(connection: Any) -> Any:
    pooled = getattr(connection, "connection", None)
    dbapi_connection = getattr(pooled, "dbapi_connection", None)
    if isinstance(dbapi_connection, AdaptedConnection):
        # aioodbc runs a pyodbc connection on a worker thread; the adapter itself is slotted
        driver = dbapi_connection.driver_connection
        return getattr(driver, "_conn", driver)
    return dbapi_connection


def set_command_timeout(connection: Any, seconds: Optional[int]) -> None:
    """Apply a query timeout to the pyodbc connection behind a SQLAlchemy connection.

    pyodbc honours ``Connection.timeout`` for every statement issued afterwards;
    0 disables the timeout. Works for ``mssql+pyodbc`` connections and for the
    sync view of ``mssql+aioodbc`` connections passed in by ``run_sync``.
    """
    if seconds is None:
        return
    driver_connection = _driver_connection(connection)
    if driver_connection is not None:
        driver_connection.timeout = seconds


class SqlServerConnection:
    """
    SQL Server / Azure SQL connection settings.

    Supports:
    - SQL authentication (username/password)
    - Azure Active Directory Managed Identity
    - Windows integrated (trusted) authentication
    """

    def __init__(
        self,
        server: str,
        database: str,
        driver: str = "ODBC Driver 18 for SQL Server",
        username: Optional[str] = None,
        password: Optional[str] = None,
        auth_mode: str = "sql",  # "sql", "aad_msi", "trusted"
        port: int = 1433,
        timeout: int = 30,
        trust_server_certificate: bool = True,
        fast_executemany: bool = True,
    ):
        """
        Initialize SQL Server connection settings.

        Args:
            server: SQL server hostname (e.g., 'myserver.database.windows.net')
            database: Database name
            driver: ODBC driver name (default: ODBC Driver 18 for SQL Server)
            username: SQL auth username (required if auth_mode='sql')
            password: SQL auth password (required if auth_mode='sql')
            auth_mode: Authentication mode ('sql', 'aad_msi', 'trusted')
            port: SQL Server port (default: 1433)
            timeout: Login timeout in seconds (default: 30)
            trust_server_certificate: Skip server certificate validation
            fast_executemany: Enable pyodbc array binding for bulk staging loads
        """
        self.server = server
        self.database = database
        self.driver = driver
        self.username = username
        self.password = password
        self.auth_mode = auth_mode
        self.port = port
        self.timeout = timeout
        self.trust_server_certificate = trust_server_certificate
        self.fast_executemany = fast_executemany
        self._engine = None
        self._async_engine = None

        if password:
            logging_module.logger.register_secret(password)

    @property
    def name(self) -> str:
        return f"SqlServer({self.server}/{self.database})"

    def odbc_dsn(self) -> str:
        """Build ODBC connection string.

        Example:
            >>> conn = SqlServerConnection(server="myserver", database="mydb", auth_mode="aad_msi")
            >>> conn.odbc_dsn()
            'Driver={ODBC Driver 18 for SQL Server};Server=tcp:myserver,1433;...'
        """
        dsn = (
            f"Driver={{{self.driver}}};"
            f"Server=tcp:{self.server},{self.port};"
            f"Database={self.database};"
            f"Encrypt=yes;"
            f"TrustServerCertificate={'yes' if self.trust_server_certificate else 'no'};"
            f"Connection Timeout={self.timeout};"
        )

        if self.auth_mode == "sql" and self.username and self.password:
            dsn += f"UID={self.username};PWD={self.password};"
        elif self.auth_mode == "aad_msi":
            dsn += "Authentication=ActiveDirectoryMsi;"
        elif self.auth_mode == "trusted":
            dsn += "Trusted_Connection=yes;"

        return dsn

    def validate(self) -> None:
        """Validate connection configuration."""
        if not self.server:
            raise ValueError("SQL Server connection requires 'server'")
        if not self.database:
            raise ValueError("SQL Server connection requires 'database'")
        if self.auth_mode not in ("sql", "aad_msi", "trusted"):
            raise ValueError(f"Unsupported auth_mode '{self.auth_mode}'")
        if self.auth_mode == "sql":
            if not self.username:
                raise ValueError("SQL Server with auth_mode='sql' requires username")
            if not self.password:
                raise ValueError("SQL Server with auth_mode='sql' requires password")

    def connection_url(self, dialect: str = "mssql+pyodbc") -> str:
        return f"{dialect}:///?odbc_connect={quote_plus(self.odbc_dsn())}"

    def get_engine(self):
        """
        Get or create the SQLAlchemy engine.

        Raises:
            ConnectionError: If the engine can't be created or the server can't be reached
        """
        if self._engine is not None:
            return self._engine

        from sqlalchemy import create_engine

        self.validate()
        ctx = get_logging_context()
        try:
            self._engine = create_engine(
                self.connection_url(),
                fast_executemany=self.fast_executemany,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=False,
            )

            with self._engine.connect():
                pass

            ctx.log_connection("sql_server", self.name, action="connect")
            return self._engine

        except Exception as e:
            self._engine = None
            raise ConnectionError(
                connection_name=self.name,
                reason=f"Failed to create engine: {str(e)}",
                suggestions=self._get_error_suggestions(str(e)),
            ) from e

    def get_async_engine(self):
        """
        Get or create the async SQLAlchemy engine (``mssql+aioodbc``).

        The engine is created lazily; connectivity is checked on first use.
        """
        if self._async_engine is not None:
            return self._async_engine

        from sqlalchemy.ext.asyncio import create_async_engine

        self.validate()
        try:
            self._async_engine = create_async_engine(
                self.connection_url("mssql+aioodbc"),
                fast_executemany=self.fast_executemany,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=False,
            )
        except Exception as e:
            raise ConnectionError(
                connection_name=self.name,
                reason=f"Failed to create async engine: {str(e)}",
                suggestions=self._get_error_suggestions(str(e)),
            ) from e

        get_logging_context().log_connection("sql_server_async", self.name, action="create")
        return self._async_engine

    def close(self):
        """Dispose of the sync engine. Async engines are disposed with ``await close_async()``."""
        if self._engine:
            self._engine.dispose()
            self._engine = None

    async def close_async(self):
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None

    def _get_error_suggestions(self, error_msg: str) -> List[str]:
        """Generate suggestions based on error message."""
        suggestions = []
        error_lower = error_msg.lower()

        if "login failed" in error_lower:
            suggestions.append("Check username and password")
            suggestions.append(f"Verify auth_mode is correct (current: {self.auth_mode})")

        if "firewall" in error_lower or "tcp provider" in error_lower:
            suggestions.append("Check SQL Server firewall rules")
            suggestions.append("Ensure client IP is allowed")

        if "driver" in error_lower or "no module named" in error_lower:
            suggestions.append(f"Verify ODBC driver '{self.driver}' is installed")
            suggestions.append("On Linux: sudo apt-get install msodbcsql18")
            suggestions.append("Install Python drivers: pip install pyodbc aioodbc")

        return suggestions

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SqlServerConnection":
        """Build from a mapping, e.g. the 'connection' block of a YAML file."""
        server = config.get("server") or config.get("host")
        if not server:
            raise ValueError("SQL Server connection config missing 'server'")
        return cls(
            server=server,
            database=config.get("database", ""),
            driver=config.get("driver", "ODBC Driver 18 for SQL Server"),
            username=config.get("username"),
            password=config.get("password"),
            auth_mode=config.get("auth_mode", "sql"),
            port=int(config.get("port", 1433)),
            timeout=int(config.get("timeout", 30)),
            trust_server_certificate=bool(config.get("trust_server_certificate", True)),
            fast_executemany=bool(config.get("fast_executemany", True)),
        )
