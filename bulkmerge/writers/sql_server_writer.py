"""SQL Server bulk insert-or-update via a staging table and a single MERGE batch.

Sequence per commit, against one connection:

1. validate configuration and build all SQL (no I/O)
2. probe the target schema
3. create ``#TmpTable`` and bulk load the records into it
4. optionally disable indexes
5. create ``#TmpOutput`` when identities are round-tripped
6. execute the MERGE batch (which also drops ``#TmpTable``)
7. optionally rebuild indexes
8. write identities back onto the records
9. drop whatever staging tables are left, on success and on failure
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from bulkmerge.bulk_loader import BulkLoader, ExecuteManyBulkLoader
from bulkmerge.config import IdentityDirection, MergeConfig, MergePlan
from bulkmerge.connections.sql_server import set_command_timeout
from bulkmerge.exceptions import classify_server_error
from bulkmerge.identity import synchronize_identities, synchronize_identities_async
from bulkmerge.indexes import DISABLE, REBUILD, build_index_command
from bulkmerge.schema import ColumnInfo, get_table_schema, get_table_schema_async
from bulkmerge.sql.dialect import TEMP_TABLE_NAME
from bulkmerge.sql.merge import build_merge_sql
from bulkmerge.staging import (
    build_create_output_table,
    build_create_temp_table,
    build_drop_tables,
    build_frame,
)
from bulkmerge.utils.logging_context import OperationType, get_logging_context


class CommitState(str, Enum):
    """Progress of one commit call. FAILED is reachable from every state."""

    IDLE = "idle"
    VALIDATED = "validated"
    STAGING_BUILT = "staging_built"
    INDEXES_DISABLED = "indexes_disabled"
    MERGING = "merging"
    INDEXES_REBUILT = "indexes_rebuilt"
    IDENTITY_SYNCED = "identity_synced"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PreparedMerge:
    """Everything a commit needs that can be built before touching the database."""

    plan: MergePlan
    frame: pd.DataFrame
    merge_sql: str
    parameters: Dict[str, Any]


class SqlServerMergeWriter:
    """
    Executes bulk insert-or-update operations against SQL Server.

    Supports:
    - Staging through a session-scoped temporary table
    - Update and delete gating predicates with bound parameters
    - Identity round-trip onto the original records
    - Index disable/rebuild around large merges
    - Blocking (``commit``) and asyncio (``commit_async``) execution

    A writer holds per-call state; use one writer per concurrent commit.
    """

    def __init__(self, config: MergeConfig, bulk_loader: Optional[BulkLoader] = None):
        """
        Initialize the writer.

        Args:
            config: Validated merge configuration
            bulk_loader: Loader used to stage rows (default: ExecuteManyBulkLoader)
        """
        self.config = config
        self.bulk_loader = bulk_loader or ExecuteManyBulkLoader()
        self.ctx = get_logging_context().with_context(table=config.table)
        self.state = CommitState.IDLE

    def _transition(self, state: CommitState) -> None:
        self.ctx.debug("Commit state changed", previous=self.state.value, state=state.value)
        self.state = state

    def prepare(self, rows: List[Any]) -> PreparedMerge:
        """Resolve the config, build the staging frame and compose the MERGE. No I/O."""
        plan = self.config.resolve()
        frame = build_frame(rows, plan.fields, plan.columns, plan.round_trips_identity)
        merge_sql, parameters = build_merge_sql(plan)
        return PreparedMerge(plan=plan, frame=frame, merge_sql=merge_sql, parameters=parameters)

    def _start(self, rows: Iterable[Any]) -> Optional[PreparedMerge]:
        self.state = CommitState.IDLE
        if not rows:
            self.ctx.info("No rows to merge, skipping")
            self._transition(CommitState.DONE)
            return None
        try:
            prepared = self.prepare(rows)
        except Exception:
            self._transition(CommitState.FAILED)
            raise
        self._transition(CommitState.VALIDATED)
        return prepared

    def _build_staging_sql(self, plan: MergePlan, table_columns: Dict[str, ColumnInfo]) -> List[str]:
        # Columns taken from record fields can pick up the identity without it being declared
        for name, info in table_columns.items():
            undeclared = info.is_identity and name in plan.columns and name != plan.identity_column
            if self.config.all_columns and undeclared:
                self.ctx.warning(
                    "Column is an identity column in the target but was not declared as one",
                    column=name,
                    suggestion="Declare it with identity() to avoid server error 8102",
                )

        statements = [
            build_create_temp_table(plan.columns, table_columns, plan.target, plan.round_trips_identity)
        ]
        if plan.round_trips_identity:
            statements.append(build_create_output_table(plan.identity_column, table_columns, plan.target))
        return statements

    def _cleanup_sql(self, plan: MergePlan) -> str:
        sql = build_drop_tables()
        if plan.identity_direction == IdentityDirection.SUPPLIED and plan.identity_column:
            sql += f"\nSET IDENTITY_INSERT {plan.target} OFF;"
        return sql

    def _fail(self, e: Exception) -> Exception:
        """Log a failed commit and return the error to raise."""
        failed_in = self.state
        self._transition(CommitState.FAILED)
        domain_error = classify_server_error(e) if isinstance(e, DBAPIError) else None
        self.ctx.error(
            "Bulk merge failed",
            step=failed_in.value,
            error_type=type(domain_error or e).__name__,
            error_message=str(e),
        )
        return domain_error or e

    def _log_merge_result(self, plan: MergePlan, affected: int) -> int:
        self.ctx.info("MERGE completed", target_table=plan.target, affected_rows=affected)
        return affected

    # ------------------------------------------------------------------ sync

    def commit(self, rows: Iterable[Any], connection: Any) -> int:
        """
        Merge ``rows`` into the target table.

        Args:
            rows: Records to merge. Identities are written back onto these
                objects when the identity direction is input_output.
            connection: SQLAlchemy Connection, or an Engine to open one from

        Returns:
            Rows affected by the MERGE (inserted + updated + deleted)

        Raises:
            ConfigValidationError: Invalid configuration, before any I/O
            SchemaError: Target table missing or lacking configured columns
            IdentityError: Server rejected an identity column write (8102)
        """
        rows = list(rows)
        prepared = self._start(rows)
        if prepared is None:
            return 0

        if isinstance(connection, Engine):
            with connection.connect() as conn:
                return self._commit_on(conn, rows, prepared)
        return self._commit_on(connection, rows, prepared)

    def _commit_on(self, connection: Any, rows: List[Any], prepared: PreparedMerge) -> int:
        transaction = None if connection.in_transaction() else connection.begin()
        try:
            affected = self._run(connection, rows, prepared)
        except Exception:
            if transaction is not None:
                transaction.rollback()
            raise
        if transaction is not None:
            transaction.commit()
        return affected

    def _run(self, connection: Any, rows: List[Any], prepared: PreparedMerge) -> int:
        plan = prepared.plan
        try:
            set_command_timeout(connection, self.config.command_timeout)

            with self.ctx.operation(OperationType.PROBE, plan.target):
                table_columns = get_table_schema(connection, plan.schema, plan.table, self.config.database)

            create_temp_sql, *create_output_sql = self._build_staging_sql(plan, table_columns)
            with self.ctx.operation(OperationType.STAGE, TEMP_TABLE_NAME):
                connection.execute(text(create_temp_sql))

            with self.ctx.operation(OperationType.LOAD, TEMP_TABLE_NAME) as metrics:
                metrics.rows_in = len(prepared.frame)
                metrics.rows_out = self.bulk_loader.load(
                    connection, prepared.frame, TEMP_TABLE_NAME, self.config.bulk_copy
                )
            set_command_timeout(connection, self.config.command_timeout)
            self._transition(CommitState.STAGING_BUILT)

            if plan.manages_indexes:
                sql, params = build_index_command(
                    DISABLE, plan.target, plan.schema, plan.table, plan.disable_indexes, plan.disable_all_indexes
                )
                with self.ctx.operation(OperationType.INDEX, f"disable on {plan.target}"):
                    connection.execute(text(sql), params)
                self._transition(CommitState.INDEXES_DISABLED)

            for sql in create_output_sql:
                connection.execute(text(sql))

            self._transition(CommitState.MERGING)
            self.ctx.debug(
                "Executing MERGE", target_table=plan.target, match_on=list(plan.match_on), rows=len(rows)
            )
            with self.ctx.operation(OperationType.MERGE, plan.target):
                result = connection.execute(text(prepared.merge_sql), prepared.parameters)
                affected = self._log_merge_result(plan, result.rowcount)

            if plan.manages_indexes:
                sql, params = build_index_command(
                    REBUILD, plan.target, plan.schema, plan.table, plan.disable_indexes, plan.disable_all_indexes
                )
                with self.ctx.operation(OperationType.INDEX, f"rebuild on {plan.target}"):
                    connection.execute(text(sql), params)
                self._transition(CommitState.INDEXES_REBUILT)

            if plan.round_trips_identity:
                with self.ctx.operation(OperationType.IDENTITY, plan.identity_column):
                    synchronize_identities(connection, rows, plan.identity_column, plan.identity_field)
                self._transition(CommitState.IDENTITY_SYNCED)

            self._transition(CommitState.DONE)
            return affected

        except Exception as e:
            error = self._fail(e)
            if error is e:
                raise
            raise error from e

        finally:
            self._cleanup(connection, plan)

    def _cleanup(self, connection: Any, plan: MergePlan) -> None:
        try:
            connection.execute(text(self._cleanup_sql(plan)))
        except Exception as e:
            self.ctx.warning(
                "Failed to drop staging tables; they are released when the session ends",
                error_type=type(e).__name__,
                error_message=str(e),
            )

    # ----------------------------------------------------------------- async

    async def commit_async(self, rows: Iterable[Any], connection: Any) -> int:
        """
        Async variant of ``commit`` for ``AsyncConnection`` / ``AsyncEngine``.

        Steps run in the same strictly sequential order; each round trip
        suspends the task instead of blocking the thread. The bulk loader runs
        through ``AsyncConnection.run_sync``.
        """
        rows = list(rows)
        prepared = self._start(rows)
        if prepared is None:
            return 0

        if isinstance(connection, AsyncEngine):
            async with connection.connect() as conn:
                return await self._commit_on_async(conn, rows, prepared)
        return await self._commit_on_async(connection, rows, prepared)

    async def _commit_on_async(self, connection: Any, rows: List[Any], prepared: PreparedMerge) -> int:
        transaction = None if connection.in_transaction() else await connection.begin()
        try:
            affected = await self._run_async(connection, rows, prepared)
        except Exception:
            if transaction is not None:
                await transaction.rollback()
            raise
        if transaction is not None:
            await transaction.commit()
        return affected

    async def _run_async(self, connection: Any, rows: List[Any], prepared: PreparedMerge) -> int:
        plan = prepared.plan
        try:
            await connection.run_sync(set_command_timeout, self.config.command_timeout)

            with self.ctx.operation(OperationType.PROBE, plan.target):
                table_columns = await get_table_schema_async(
                    connection, plan.schema, plan.table, self.config.database
                )

            create_temp_sql, *create_output_sql = self._build_staging_sql(plan, table_columns)
            with self.ctx.operation(OperationType.STAGE, TEMP_TABLE_NAME):
                await connection.execute(text(create_temp_sql))

            with self.ctx.operation(OperationType.LOAD, TEMP_TABLE_NAME) as metrics:
                metrics.rows_in = len(prepared.frame)
                metrics.rows_out = await connection.run_sync(
                    self.bulk_loader.load, prepared.frame, TEMP_TABLE_NAME, self.config.bulk_copy
                )
            await connection.run_sync(set_command_timeout, self.config.command_timeout)
            self._transition(CommitState.STAGING_BUILT)

            if plan.manages_indexes:
                sql, params = build_index_command(
                    DISABLE, plan.target, plan.schema, plan.table, plan.disable_indexes, plan.disable_all_indexes
                )
                with self.ctx.operation(OperationType.INDEX, f"disable on {plan.target}"):
                    await connection.execute(text(sql), params)
                self._transition(CommitState.INDEXES_DISABLED)

            for sql in create_output_sql:
                await connection.execute(text(sql))

            self._transition(CommitState.MERGING)
            self.ctx.debug(
                "Executing MERGE", target_table=plan.target, match_on=list(plan.match_on), rows=len(rows)
            )
            with self.ctx.operation(OperationType.MERGE, plan.target):
                result = await connection.execute(text(prepared.merge_sql), prepared.parameters)
                affected = self._log_merge_result(plan, result.rowcount)

            if plan.manages_indexes:
                sql, params = build_index_command(
                    REBUILD, plan.target, plan.schema, plan.table, plan.disable_indexes, plan.disable_all_indexes
                )
                with self.ctx.operation(OperationType.INDEX, f"rebuild on {plan.target}"):
                    await connection.execute(text(sql), params)
                self._transition(CommitState.INDEXES_REBUILT)

            if plan.round_trips_identity:
                with self.ctx.operation(OperationType.IDENTITY, plan.identity_column):
                    await synchronize_identities_async(
                        connection, rows, plan.identity_column, plan.identity_field
                    )
                self._transition(CommitState.IDENTITY_SYNCED)

            self._transition(CommitState.DONE)
            return affected

        except Exception as e:
            error = self._fail(e)
            if error is e:
                raise
            raise error from e

        finally:
            await self._cleanup_async(connection, plan)

    async def _cleanup_async(self, connection: Any, plan: MergePlan) -> None:
        try:
            await connection.execute(text(self._cleanup_sql(plan)))
        except Exception as e:
            self.ctx.warning(
                "Failed to drop staging tables; they are released when the session ends",
                error_type=type(e).__name__,
                error_message=str(e),
            )
