"""Declarative predicates that gate the update and delete branches of a MERGE.

Predicates are a closed AST, a column reference compared with a constant, built
either directly or with ``col()``::

    col("Amount") > 10
    col("DeletedAt") == None   # IS NULL

Values never appear in SQL text. Each predicate binds one uniquely named
parameter built from a fixed prefix, the predicate kind and its sort order.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from bulkmerge.exceptions import ConfigValidationError
from bulkmerge.sql.dialect import TARGET_ALIAS, UNIQUE_PARAM_IDENTIFIER, collate, qualified_column


class PredicateKind(str, Enum):
    """Which MERGE branch a predicate gates."""

    UPDATE = "Update"
    DELETE = "Delete"


class ComparisonOperator(str, Enum):
    EQ = "="
    NE = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"

    @property
    def is_null_check(self) -> bool:
        return self in (ComparisonOperator.IS_NULL, ComparisonOperator.IS_NOT_NULL)


SCALAR_TYPES = (str, int, float, bool, Decimal, date, datetime, time, UUID, bytes)


class Predicate(BaseModel):
    """One comparison between a column and a constant."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    column: str
    operator: ComparisonOperator
    value: Any = None
    kind: Optional[PredicateKind] = None

    def for_kind(self, kind: PredicateKind) -> "Predicate":
        return self.model_copy(update={"kind": kind})


class ColumnRef:
    """Typed builder for predicates: comparison operators return ``Predicate``."""

    __slots__ = ("name",)

    def __init__(self, name: str):
        if not name:
            raise ConfigValidationError("Predicate column name can't be null or empty.")
        self.name = name

    def __eq__(self, other: Any) -> Predicate:  # type: ignore[override]
        if other is None:
            return Predicate(column=self.name, operator=ComparisonOperator.IS_NULL)
        return Predicate(column=self.name, operator=ComparisonOperator.EQ, value=other)

    def __ne__(self, other: Any) -> Predicate:  # type: ignore[override]
        if other is None:
            return Predicate(column=self.name, operator=ComparisonOperator.IS_NOT_NULL)
        return Predicate(column=self.name, operator=ComparisonOperator.NE, value=other)

    def __lt__(self, other: Any) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.LT, value=other)

    def __le__(self, other: Any) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.LE, value=other)

    def __gt__(self, other: Any) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.GT, value=other)

    def __ge__(self, other: Any) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.GE, value=other)

    def is_null(self) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.IS_NULL)

    def is_not_null(self) -> Predicate:
        return Predicate(column=self.name, operator=ComparisonOperator.IS_NOT_NULL)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"col({self.name!r})"


def col(name: str) -> ColumnRef:
    return ColumnRef(name)


@dataclass(frozen=True)
class PredicateCondition:
    """A validated predicate with its position and bound parameter name."""

    column: str
    operator: ComparisonOperator
    kind: PredicateKind
    sort_order: int
    param_name: Optional[str] = None


def validate_predicate(predicate: Any) -> Predicate:
    """Reject predicate shapes the MERGE composer can't render."""
    if not isinstance(predicate, Predicate):
        raise ConfigValidationError(
            f"Unsupported predicate expression {predicate!r}. Expected a simple comparison "
            "between a column and a constant, e.g. col('Amount') > 10.",
            field="predicate",
        )

    if not predicate.column:
        raise ConfigValidationError("Predicate column name can't be null or empty.", field="predicate")

    if predicate.operator.is_null_check:
        if predicate.value is not None:
            raise ConfigValidationError(
                f"'{predicate.operator.value}' on column '{predicate.column}' can't carry a value.",
                field="predicate",
            )
        return predicate

    if predicate.value is None:
        raise ConfigValidationError(
            f"Comparison '{predicate.column} {predicate.operator.value} NULL' is not supported. "
            "Use col(...) == None or is_null() for null checks.",
            field="predicate",
        )

    if isinstance(predicate.value, (Predicate, ColumnRef)) or not isinstance(predicate.value, SCALAR_TYPES):
        raise ConfigValidationError(
            f"Predicate on column '{predicate.column}' must compare against a constant value, "
            f"got {type(predicate.value).__name__}.",
            field="predicate",
        )

    return predicate


def get_param_name(kind: PredicateKind, sort_order: int, param_prefix: str = UNIQUE_PARAM_IDENTIFIER) -> str:
    return f"{param_prefix}_{kind.value}_{sort_order}"


def add_predicate(
    predicate: Any,
    kind: PredicateKind,
    target_list: List[PredicateCondition],
    parameters: Dict[str, Any],
    sort_order: int,
    param_prefix: str = UNIQUE_PARAM_IDENTIFIER,
    column_name: Optional[str] = None,
) -> PredicateCondition:
    """
    Validate a predicate and append it to ``target_list``.

    Args:
        predicate: Predicate to add
        kind: Branch the predicate gates
        target_list: Conditions for that branch, appended to in place
        parameters: Shared bound parameters, one entry added unless a null check
        sort_order: Declaration position, unique within one commit
        param_prefix: Fixed parameter prefix
        column_name: Target column when a custom mapping renames the field

    Returns:
        The appended PredicateCondition

    Raises:
        ConfigValidationError: If the predicate shape is unsupported or the
            generated parameter name is already taken
    """
    predicate = validate_predicate(predicate)

    param_name = None
    if not predicate.operator.is_null_check:
        param_name = get_param_name(kind, sort_order, param_prefix)
        if param_name in parameters:
            raise ConfigValidationError(
                f"Duplicate predicate parameter '{param_name}'; sort orders must be unique.",
                field="predicate",
            )
        parameters[param_name] = predicate.value

    condition = PredicateCondition(
        column=column_name or predicate.column,
        operator=predicate.operator,
        kind=kind,
        sort_order=sort_order,
        param_name=param_name,
    )
    target_list.append(condition)
    return condition


def build_predicate_query(
    conditions: List[PredicateCondition],
    collations: Optional[Mapping[str, str]] = None,
    target_alias: str = TARGET_ALIAS,
) -> str:
    """Render conditions as ``AND`` fragments in declaration order.

    Returns an empty string when there are no conditions, otherwise a string
    starting with ``" AND "`` that can follow ``WHEN MATCHED`` directly.
    """
    collations = collations or {}
    parts = []
    for condition in sorted(conditions, key=lambda c: c.sort_order):
        left = qualified_column(target_alias, condition.column)
        if condition.operator.is_null_check:
            parts.append(f"{left} {condition.operator.value}")
        else:
            parts.append(
                f"{left} {condition.operator.value} :{condition.param_name}"
                f"{collate(collations.get(condition.column))}"
            )

    if not parts:
        return ""
    return " AND " + " AND ".join(parts)
