"""Target table metadata lookups used to shape and validate the staging table."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import text

from bulkmerge.exceptions import SchemaError
from bulkmerge.sql.dialect import escape_column, get_escaped_table_name
from bulkmerge.utils.logging_context import get_logging_context

SIZED_TYPES = ("nvarchar", "varchar", "char", "nchar", "binary", "varbinary")
PRECISION_TYPES = ("decimal", "numeric")
FRACTIONAL_SECOND_TYPES = ("datetime2", "time", "datetimeoffset")


@dataclass(frozen=True)
class ColumnInfo:
    """One column of the target table as reported by INFORMATION_SCHEMA."""

    name: str
    data_type: str
    full_type: str
    is_nullable: bool = True
    is_identity: bool = False


def format_sql_type(
    data_type: str,
    char_len: Optional[int] = None,
    num_prec: Optional[int] = None,
    num_scale: Optional[int] = None,
    datetime_prec: Optional[int] = None,
) -> str:
    """Build a full SQL Server type (e.g. 'nvarchar(255)') from its metadata parts."""
    kind = data_type.lower()
    if kind in SIZED_TYPES:
        if char_len == -1 or not char_len:
            return f"{data_type}(MAX)"
        return f"{data_type}({char_len})"
    if kind in PRECISION_TYPES:
        if num_prec and num_scale is not None:
            return f"{data_type}({num_prec},{num_scale})"
        return data_type
    if kind in FRACTIONAL_SECOND_TYPES and datetime_prec is not None:
        return f"{data_type}({datetime_prec})"
    return data_type


def build_schema_query(schema: str, table: str, database: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
    """Parameterized INFORMATION_SCHEMA lookup for the target table's columns."""
    prefix = f"{escape_column(database)}." if database else ""
    sql = f"""
        SELECT
            c.COLUMN_NAME,
            c.DATA_TYPE,
            c.CHARACTER_MAXIMUM_LENGTH,
            c.NUMERIC_PRECISION,
            c.NUMERIC_SCALE,
            c.DATETIME_PRECISION,
            c.IS_NULLABLE,
            COLUMNPROPERTY(OBJECT_ID(:object_name), c.COLUMN_NAME, 'IsIdentity') AS IS_IDENTITY
        FROM {prefix}INFORMATION_SCHEMA.COLUMNS c
        WHERE c.TABLE_SCHEMA = :schema_name AND c.TABLE_NAME = :table_name
        ORDER BY c.ORDINAL_POSITION
        """
    params = {
        "object_name": get_escaped_table_name(table, schema, database, for_text=False),
        "schema_name": schema,
        "table_name": table,
    }
    return sql, params


def parse_schema_rows(rows: Iterable[Mapping[str, Any]]) -> Dict[str, ColumnInfo]:
    columns: Dict[str, ColumnInfo] = {}
    for row in rows:
        data_type = row["DATA_TYPE"]
        columns[row["COLUMN_NAME"]] = ColumnInfo(
            name=row["COLUMN_NAME"],
            data_type=data_type,
            full_type=format_sql_type(
                data_type,
                row.get("CHARACTER_MAXIMUM_LENGTH"),
                row.get("NUMERIC_PRECISION"),
                row.get("NUMERIC_SCALE"),
                row.get("DATETIME_PRECISION"),
            ),
            is_nullable=str(row.get("IS_NULLABLE", "YES")).upper() == "YES",
            is_identity=bool(row.get("IS_IDENTITY")),
        )
    return columns


def get_table_schema(
    connection: Any, schema: str, table: str, database: Optional[str] = None
) -> Dict[str, ColumnInfo]:
    """
    Get column metadata for a table.

    Args:
        connection: Open SQLAlchemy connection
        schema: Schema name
        table: Table name
        database: Optional database for cross-database targets

    Returns:
        Ordered mapping of column name to ColumnInfo

    Raises:
        SchemaError: If the table does not exist or has no columns
    """
    sql, params = build_schema_query(schema, table, database)
    rows = connection.execute(text(sql), params).mappings().all()
    return _checked(parse_schema_rows(rows), schema, table)


async def get_table_schema_async(
    connection: Any, schema: str, table: str, database: Optional[str] = None
) -> Dict[str, ColumnInfo]:
    """Async variant of ``get_table_schema`` for an ``AsyncConnection``."""
    sql, params = build_schema_query(schema, table, database)
    result = await connection.execute(text(sql), params)
    return _checked(parse_schema_rows(result.mappings().all()), schema, table)


def _checked(columns: Dict[str, ColumnInfo], schema: str, table: str) -> Dict[str, ColumnInfo]:
    ctx = get_logging_context()
    if not columns:
        ctx.error("Target table not found", schema=schema, table=table)
        raise SchemaError(f"{schema}.{table}")
    ctx.debug("Probed target schema", schema=schema, table=table, column_count=len(columns))
    return columns


def resolve_columns(
    table_columns: Mapping[str, ColumnInfo], required: Iterable[str], table: str
) -> List[ColumnInfo]:
    """
    Look up the required columns in the probed schema, in the order given.

    Names are compared case-insensitively, matching SQL Server's default
    collation behaviour for identifiers.

    Raises:
        SchemaError: If any required column is absent from the table
    """
    lookup = {name.lower(): info for name, info in table_columns.items()}
    resolved = []
    missing = []
    for name in required:
        info = lookup.get(name.lower())
        if info is None:
            missing.append(name)
        else:
            resolved.append(info)

    if missing:
        get_logging_context().error("Required columns missing from target", table=table, missing=missing)
        raise SchemaError(table, missing_columns=missing)
    return resolved
