"""Disable and rebuild target table indexes around a large merge.

Only nonclustered indexes are disabled by the "all indexes" mode: disabling a
clustered index makes the table unreadable until it is rebuilt.
"""

from typing import Any, Dict, Sequence, Tuple

from bulkmerge.sql.dialect import escape_column

DISABLE = "DISABLE"
REBUILD = "REBUILD"

_ALL_NONCLUSTERED_SQL = """
DECLARE @sql NVARCHAR(MAX) = N'';
SELECT @sql = @sql + N'ALTER INDEX ' + QUOTENAME(i.name) + N' ON '
    + QUOTENAME(s.name) + N'.' + QUOTENAME(o.name) + N' {action};'
FROM sys.indexes i
JOIN sys.objects o ON i.object_id = o.object_id
JOIN sys.schemas s ON o.schema_id = s.schema_id
WHERE i.type_desc = 'NONCLUSTERED'
    AND i.is_disabled = 0
    AND o.type_desc = 'USER_TABLE'
    AND o.name = :table_name
    AND s.name = :schema_name;
EXEC sp_executesql @sql;
"""


def build_index_command(
    action: str,
    target: str,
    schema: str,
    table: str,
    index_names: Sequence[str] = (),
    all_indexes: bool = False,
) -> Tuple[str, Dict[str, Any]]:
    """
    Build the index management batch for one step.

    Args:
        action: DISABLE or REBUILD
        target: Escaped target table name
        schema: Unescaped schema, bound as a parameter in "all indexes" mode
        table: Unescaped table name, bound as a parameter in "all indexes" mode
        index_names: Explicit indexes to manage
        all_indexes: Manage every nonclustered index of the table instead

    Returns:
        Tuple of (sql, bound parameters)
    """
    if action not in (DISABLE, REBUILD):
        raise ValueError(f"Unknown index action '{action}'")

    if all_indexes:
        if action == REBUILD:
            return f"ALTER INDEX ALL ON {target} REBUILD;", {}
        sql = _ALL_NONCLUSTERED_SQL.format(action=action)
        return sql, {"schema_name": schema, "table_name": table}

    statements = [f"ALTER INDEX {escape_column(name)} ON {target} {action};" for name in index_names]
    return "\n".join(statements), {}
