"""Staging table DDL and the tabular buffer handed to the bulk loader."""

from typing import Any, List, Mapping, Optional, Sequence

import pandas as pd

from bulkmerge import records
from bulkmerge.schema import ColumnInfo, resolve_columns
from bulkmerge.sql.dialect import (
    INTERNAL_ID_COLUMN,
    TEMP_OUTPUT_TABLE_NAME,
    TEMP_TABLE_NAME,
    escape_column,
)

INTERNAL_ID_TYPE = "int"


def build_frame(
    rows: Sequence[Any],
    fields: Sequence[str],
    columns: Sequence[str],
    with_row_sequence: bool = False,
) -> pd.DataFrame:
    """
    Convert records into the DataFrame loaded into the staging table.

    Args:
        rows: Caller records (dicts, dataclasses, pydantic models or objects)
        fields: Record field names, in column order
        columns: Target column names for those fields (custom mappings applied)
        with_row_sequence: Append the 0-based record position used to match
            OUTPUT identities back to records

    Returns:
        DataFrame with one column per target column, object dtype so values
        reach the driver unconverted
    """
    data = {
        column: pd.Series([records.get_value(row, f) for row in rows], dtype=object)
        for f, column in zip(fields, columns)
    }
    if with_row_sequence:
        data[INTERNAL_ID_COLUMN] = pd.Series(range(len(rows)), dtype="int64")
    return pd.DataFrame(data)


def build_create_temp_table(
    columns: Sequence[str],
    table_columns: Mapping[str, ColumnInfo],
    table: str,
    with_row_sequence: bool = False,
) -> str:
    """
    Build CREATE TABLE for the session-scoped staging table.

    Column types come from the probed target schema so type mismatches fail
    here instead of mid-merge. Every staging column accepts NULL; nullability
    is enforced by the target table.

    Raises:
        SchemaError: If a column is missing from the target table
    """
    resolved = resolve_columns(table_columns, columns, table)
    definitions = [f"{escape_column(name)} {info.full_type} NULL" for name, info in zip(columns, resolved)]
    if with_row_sequence:
        definitions.append(f"{escape_column(INTERNAL_ID_COLUMN)} {INTERNAL_ID_TYPE} NOT NULL")
    return f"CREATE TABLE {TEMP_TABLE_NAME} ({', '.join(definitions)});"


def build_create_output_table(
    identity_column: str, table_columns: Mapping[str, ColumnInfo], table: str
) -> str:
    """CREATE TABLE for the identity OUTPUT table (row sequence + identity value)."""
    (info,) = resolve_columns(table_columns, [identity_column], table)
    return (
        f"CREATE TABLE {TEMP_OUTPUT_TABLE_NAME} ("
        f"{escape_column(INTERNAL_ID_COLUMN)} {INTERNAL_ID_TYPE} NULL, "
        f"{escape_column(identity_column)} {info.full_type} NULL);"
    )


def build_drop_tables(table_names: Optional[List[str]] = None) -> str:
    """Guarded DROP for the staging tables; safe to run after the merge batch dropped them."""
    table_names = table_names or [TEMP_TABLE_NAME, TEMP_OUTPUT_TABLE_NAME]
    return "\n".join(
        f"IF OBJECT_ID('tempdb..{name}') IS NOT NULL DROP TABLE {name};" for name in table_names
    )
