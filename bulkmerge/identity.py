"""Write server-generated identity values back onto the caller's records."""

from typing import Any, Iterable, List, Sequence, Tuple

from sqlalchemy import text

from bulkmerge import records
from bulkmerge.sql.dialect import INTERNAL_ID_COLUMN, TEMP_OUTPUT_TABLE_NAME, escape_column
from bulkmerge.utils.logging_context import get_logging_context


def build_output_select(identity_column: str) -> str:
    internal_id = escape_column(INTERNAL_ID_COLUMN)
    return (
        f"SELECT {internal_id}, {escape_column(identity_column)} FROM {TEMP_OUTPUT_TABLE_NAME} "
        f"WHERE {internal_id} IS NOT NULL ORDER BY {internal_id};"
    )


def assign_identities(
    rows: Sequence[Any], identity_field: str, output: Iterable[Tuple[int, Any]]
) -> int:
    """
    Assign identity values to records by their staged row sequence.

    Args:
        rows: The original Row Collection, in the order it was staged
        identity_field: Record field that receives the identity
        output: ``(row sequence, identity)`` pairs read from the OUTPUT table

    Returns:
        Number of records updated

    Raises:
        IndexError: If the server returned a sequence outside the staged range
    """
    assigned = 0
    for position, identity in output:
        if position < 0 or position >= len(rows):
            raise IndexError(
                f"Identity output references row {position} but only {len(rows)} rows were staged"
            )
        records.set_value(rows[position], identity_field, identity)
        assigned += 1
    return assigned


def _pairs(result_rows: Iterable[Any]) -> List[Tuple[int, Any]]:
    return [(int(row[0]), row[1]) for row in result_rows]


def synchronize_identities(connection: Any, rows: Sequence[Any], identity_column: str, identity_field: str) -> int:
    """Read ``#TmpOutput`` and write identities onto ``rows``."""
    result = connection.execute(text(build_output_select(identity_column)))
    assigned = assign_identities(rows, identity_field, _pairs(result.fetchall()))
    get_logging_context().debug("Synchronized identities", identity_column=identity_column, assigned=assigned)
    return assigned


async def synchronize_identities_async(
    connection: Any, rows: Sequence[Any], identity_column: str, identity_field: str
) -> int:
    """Async variant of ``synchronize_identities`` for an ``AsyncConnection``."""
    result = await connection.execute(text(build_output_select(identity_column)))
    assigned = assign_identities(rows, identity_field, _pairs(result.fetchall()))
    get_logging_context().debug("Synchronized identities", identity_column=identity_column, assigned=assigned)
    return assigned
