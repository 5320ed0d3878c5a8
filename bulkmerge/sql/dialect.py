"""T-SQL identifier quoting and the reserved names used by generated statements."""

import re
from typing import Optional, Tuple

TEMP_TABLE_NAME = "#TmpTable"
TEMP_OUTPUT_TABLE_NAME = "#TmpOutput"
INTERNAL_ID_COLUMN = "BulkMerge_InternalId"
UNIQUE_PARAM_IDENTIFIER = "Condition"
SOURCE_ALIAS = "Source"
TARGET_ALIAS = "Target"
DEFAULT_SCHEMA = "dbo"

# Collation names are spliced into SQL text, so only plain identifiers are accepted
COLLATION_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _unwrap(name: str) -> str:
    """Drop one pair of wrapping brackets from an already-quoted name."""
    if len(name) >= 2 and name.startswith("[") and name.endswith("]"):
        return name[1:-1].replace("]]", "]")
    return name


def quote_name(name: str) -> str:
    """Bracket-quote an identifier; embedded ``]`` is doubled.

    A name already wrapped in brackets is unwrapped first so it is not double
    wrapped.
    """
    return "[" + _unwrap(name).replace("]", "]]") + "]"


def escape_column(col: str) -> str:
    """Escape column name for SQL Server statements run through ``sqlalchemy.text()``.

    ``:`` is escaped as well so names such as ``a:b`` are not read as bind
    parameters.
    """
    return quote_name(col).replace(":", "\\:")


def qualified_column(alias: str, col: str) -> str:
    return f"[{alias}].{escape_column(col)}"


def parse_table_name(table: str, schema: Optional[str] = None) -> Tuple[str, str]:
    """
    Parse table name into schema and table parts.

    Args:
        table: Table name (e.g., 'sales.fact_orders' or 'fact_orders')
        schema: Schema used when the table name carries none (default: dbo)

    Returns:
        Tuple of (schema, table_name)
    """
    if "." in table:
        schema_part, table_name = table.split(".", 1)
    else:
        schema_part = schema or DEFAULT_SCHEMA
        table_name = table

    return _unwrap(schema_part), _unwrap(table_name)


def get_escaped_table_name(
    table: str, schema: Optional[str] = None, database: Optional[str] = None, for_text: bool = True
) -> str:
    """Get fully escaped table name, database-qualified when a database is given.

    Pass ``for_text=False`` when the name travels as a bound value rather than
    inside a ``text()`` statement.
    """
    quote = escape_column if for_text else quote_name
    schema_name, table_name = parse_table_name(table, schema)
    escaped = f"{quote(schema_name)}.{quote(table_name)}"
    if database:
        escaped = f"{quote(database)}.{escaped}"
    return escaped



def collate(collation: Optional[str]) -> str:
    if not collation:
        return ""
    return f" COLLATE {collation}"
