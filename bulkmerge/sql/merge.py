"""T-SQL MERGE composition for bulk insert-or-update."""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from bulkmerge.config import IdentityDirection, MergePlan
from bulkmerge.sql.dialect import (
    INTERNAL_ID_COLUMN,
    SOURCE_ALIAS,
    TARGET_ALIAS,
    TEMP_OUTPUT_TABLE_NAME,
    TEMP_TABLE_NAME,
    collate,
    escape_column,
    qualified_column,
)
from bulkmerge.sql.predicates import PredicateCondition, build_predicate_query


def build_join_conditions(match_on: Sequence[str], collations: Optional[Mapping[str, str]] = None) -> str:
    """``ON`` clause matching target and source rows on every key column."""
    collations = collations or {}
    parts = [
        f"{qualified_column(TARGET_ALIAS, k)} = {qualified_column(SOURCE_ALIAS, k)}{collate(collations.get(k))}"
        for k in match_on
    ]
    return "ON " + " AND ".join(parts)


def get_update_columns(plan: MergePlan) -> List[str]:
    return [
        c for c in plan.columns if c != plan.identity_column and c not in plan.exclude_from_update
    ]


def get_insert_columns(plan: MergePlan) -> List[str]:
    if plan.identity_direction == IdentityDirection.SUPPLIED:
        return list(plan.columns)
    return [c for c in plan.columns if c != plan.identity_column]


def build_update_set(columns: Sequence[str]) -> str:
    return "UPDATE SET " + ", ".join(
        f"{qualified_column(TARGET_ALIAS, c)} = {qualified_column(SOURCE_ALIAS, c)}" for c in columns
    )


def build_insert_set(columns: Sequence[str]) -> str:
    col_list = ", ".join(escape_column(c) for c in columns)
    values = ", ".join(qualified_column(SOURCE_ALIAS, c) for c in columns)
    return f"INSERT ({col_list}) VALUES ({values})"


def build_output_identity(identity_column: str) -> str:
    """OUTPUT clause capturing each source row's sequence number with its identity."""
    return (
        f"OUTPUT {qualified_column(SOURCE_ALIAS, INTERNAL_ID_COLUMN)}, "
        f"inserted.{escape_column(identity_column)} "
        f"INTO {TEMP_OUTPUT_TABLE_NAME} ({escape_column(INTERNAL_ID_COLUMN)}, {escape_column(identity_column)})"
    )


def build_merge_sql(plan: MergePlan) -> Tuple[str, Dict[str, Any]]:
    """
    Build the T-SQL MERGE batch for a resolved plan.

    The batch merges ``#TmpTable`` into the target under HOLDLOCK, so that
    concurrent mergers can't both insert the same not-yet-committed key, and
    drops the staging table in the same round trip.

    Args:
        plan: Resolved merge plan (column mappings applied)

    Returns:
        Tuple of (sql, bound predicate parameters)
    """
    sql_parts = [
        f"MERGE INTO {plan.target} WITH (HOLDLOCK) AS {TARGET_ALIAS}",
        f"USING {TEMP_TABLE_NAME} AS {SOURCE_ALIAS}",
        build_join_conditions(plan.match_on, plan.collations),
    ]

    parameters: Dict[str, Any] = {}
    update_columns = get_update_columns(plan)
    if update_columns:
        parameters.update(_bound(plan, plan.update_conditions))
        update_predicates = build_predicate_query(list(plan.update_conditions), plan.collations)
        sql_parts.append(f"WHEN MATCHED{update_predicates} THEN")
        sql_parts.append(f"    {build_update_set(update_columns)}")

    sql_parts.append("WHEN NOT MATCHED BY TARGET THEN")
    sql_parts.append(f"    {build_insert_set(get_insert_columns(plan))}")

    if plan.delete_when_not_matched:
        parameters.update(_bound(plan, plan.delete_conditions))
        delete_predicates = build_predicate_query(list(plan.delete_conditions), plan.collations)
        sql_parts.append(f"WHEN NOT MATCHED BY SOURCE{delete_predicates} THEN")
        sql_parts.append("    DELETE")

    if plan.round_trips_identity:
        sql_parts.append(build_output_identity(plan.identity_column))

    sql_parts[-1] += ";"
    sql_parts.append(f"DROP TABLE {TEMP_TABLE_NAME};")

    if plan.identity_direction == IdentityDirection.SUPPLIED and plan.identity_column:
        sql_parts.insert(0, f"SET IDENTITY_INSERT {plan.target} ON;")
        sql_parts.append(f"SET IDENTITY_INSERT {plan.target} OFF;")

    return "\n".join(sql_parts), parameters


def _bound(plan: MergePlan, conditions: Sequence[PredicateCondition]) -> Dict[str, Any]:
    return {c.param_name: plan.parameters[c.param_name] for c in conditions if c.param_name}
