"""Configuration models for bulkmerge.

``MergeConfig`` is an immutable description of one insert-or-update operation.
It is assembled by ``MergeBuilder`` (or loaded from YAML), validated once when
constructed, and resolved into a ``MergePlan`` at commit time. Resolution
applies custom column mappings exactly once and assigns predicate parameters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bulkmerge import records
from bulkmerge.exceptions import ConfigValidationError
from bulkmerge.sql.dialect import (
    COLLATION_PATTERN,
    DEFAULT_SCHEMA,
    UNIQUE_PARAM_IDENTIFIER,
    get_escaped_table_name,
    parse_table_name,
)
from bulkmerge.sql.predicates import (
    Predicate,
    PredicateCondition,
    PredicateKind,
    add_predicate,
    validate_predicate,
)


class IdentityDirection(str, Enum):
    """How the identity column flows between records and the table."""

    # Identity is generated by the server and not read back
    INPUT = "input"
    # Generated identities are written back onto the records
    INPUT_OUTPUT = "input_output"
    # Records carry explicit identity values, inserted under IDENTITY_INSERT
    SUPPLIED = "supplied"


class BulkCopySettings(BaseModel):
    """Tuning passed to the bulk loader when staging rows."""

    model_config = ConfigDict(frozen=True)

    batch_size: Optional[int] = Field(default=None, ge=1, description="Rows per batch (None = one batch)")
    timeout: int = Field(default=600, ge=0, description="Bulk copy timeout in seconds (0 = no limit)")
    notify_after: Optional[int] = Field(default=None, ge=1, description="Rows between progress callbacks")
    enable_streaming: bool = Field(default=False, description="Generate rows lazily instead of materialising")
    table_lock: bool = Field(default=False, description="Take a table lock on the staging table while loading")
    options: Dict[str, Any] = Field(
        default_factory=dict, description="Execution options passed to the driver with every batch"
    )
    callbacks: Tuple[Callable[[int], Any], ...] = Field(
        default=(), description="Called with the running row count every notify_after rows"
    )


class MergeConfig(BaseModel):
    """Immutable configuration for a bulk insert-or-update against one table."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    table: str
    schema_name: str = Field(default=DEFAULT_SCHEMA, alias="schema")
    database: Optional[str] = None
    columns: Tuple[str, ...]
    match_on: Tuple[str, ...] = ()
    exclude_from_update: Tuple[str, ...] = ()
    conditions: Tuple[Predicate, ...] = ()
    delete_when_not_matched: bool = False
    identity_column: Optional[str] = None
    identity_direction: IdentityDirection = IdentityDirection.INPUT
    collations: Dict[str, str] = Field(default_factory=dict)
    column_mappings: Dict[str, str] = Field(default_factory=dict)
    disable_indexes: Tuple[str, ...] = ()
    disable_all_indexes: bool = False
    all_columns: bool = False
    command_timeout: int = Field(default=600, ge=0)
    bulk_copy: BulkCopySettings = Field(default_factory=BulkCopySettings)

    @model_validator(mode="after")
    def check_merge_invariants(self) -> "MergeConfig":
        """Validate everything that can be checked without touching the database."""
        if not self.table or not self.table.strip("[] "):
            raise ConfigValidationError("Table name can't be empty.", field="table")

        if not self.columns:
            raise ConfigValidationError(
                "No columns configured. Call columns() or add_all_columns() first.",
                field="columns",
            )
        if any(not c for c in self.columns):
            raise ConfigValidationError("Column names can't be null or empty.", field="columns")
        duplicates = sorted({c for c in self.columns if self.columns.count(c) > 1})
        if duplicates:
            raise ConfigValidationError(f"Duplicate columns: {duplicates}", field="columns")

        column_set = set(self.columns)

        if not self.match_on:
            raise ConfigValidationError(
                "match_on list is empty when it's required for this operation. "
                "This is usually the primary key of your table but can also be more "
                "than one column depending on your business rules.",
                field="match_on",
            )
        self._check_subset(self.match_on, column_set, "match_on")
        self._check_subset(self.exclude_from_update, column_set, "exclude_from_update")
        self._check_subset(tuple(self.collations), column_set, "collations")
        self._check_subset(tuple(self.column_mappings), column_set, "column_mappings")

        mapped = [self.column_mappings.get(c, c) for c in self.columns]
        if len(set(mapped)) != len(mapped):
            raise ConfigValidationError(
                "Custom column mappings produce duplicate target column names.",
                field="column_mappings",
            )

        if self.identity_column is not None and self.identity_column not in column_set:
            raise ConfigValidationError(
                f"Identity column '{self.identity_column}' is not in the configured columns.",
                field="identity_column",
            )

        for collation in self.collations.values():
            if not COLLATION_PATTERN.match(collation):
                raise ConfigValidationError(f"Invalid collation name '{collation}'.", field="collations")

        for predicate in self.conditions:
            validate_predicate(predicate)
            if predicate.kind is None:
                raise ConfigValidationError(
                    f"Predicate on '{predicate.column}' has no kind; use update_when() or delete_when().",
                    field="conditions",
                )
            if predicate.column not in column_set:
                raise ConfigValidationError(
                    f"Predicate column '{predicate.column}' is not in the configured columns.",
                    field="conditions",
                )

        if not self.delete_when_not_matched and any(
            p.kind == PredicateKind.DELETE for p in self.conditions
        ):
            raise ConfigValidationError(
                "delete_when() is only usable when 'delete_when_not_matched' is set to true.",
                field="conditions",
            )

        if self.disable_all_indexes and self.disable_indexes:
            raise ConfigValidationError(
                "Can't set disable_all_indexes and also disable individual indexes.",
                field="disable_indexes",
            )

        return self

    @staticmethod
    def _check_subset(names: Tuple[str, ...], column_set: set, field_name: str) -> None:
        unknown = [n for n in names if n not in column_set]
        if unknown:
            raise ConfigValidationError(
                f"{field_name} references columns that could not be recognised: {unknown}. "
                "Call columns() or add_all_columns() for these columns first.",
                field=field_name,
            )

    @property
    def round_trips_identity(self) -> bool:
        return self.identity_column is not None and self.identity_direction == IdentityDirection.INPUT_OUTPUT

    def column_for(self, name: str) -> str:
        """Target column name for a record field."""
        return self.column_mappings.get(name, name)

    def resolve(self, param_prefix: str = UNIQUE_PARAM_IDENTIFIER) -> "MergePlan":
        """Apply column mappings once and compile predicates into bound parameters."""
        schema, table = parse_table_name(self.table, self.schema_name)

        update_conditions: List[PredicateCondition] = []
        delete_conditions: List[PredicateCondition] = []
        parameters: Dict[str, Any] = {}
        for sort_order, predicate in enumerate(self.conditions, 1):
            target_list = update_conditions if predicate.kind == PredicateKind.UPDATE else delete_conditions
            add_predicate(
                predicate,
                predicate.kind,
                target_list,
                parameters,
                sort_order,
                param_prefix,
                column_name=self.column_for(predicate.column),
            )

        return MergePlan(
            schema=schema,
            table=table,
            target=get_escaped_table_name(table, schema, self.database),
            fields=tuple(self.columns),
            columns=tuple(self.column_for(c) for c in self.columns),
            match_on=tuple(self.column_for(c) for c in self.match_on),
            exclude_from_update=frozenset(self.column_for(c) for c in self.exclude_from_update),
            identity_column=self.column_for(self.identity_column) if self.identity_column else None,
            identity_field=self.identity_column,
            identity_direction=self.identity_direction,
            delete_when_not_matched=self.delete_when_not_matched,
            collations={self.column_for(k): v for k, v in self.collations.items()},
            update_conditions=tuple(update_conditions),
            delete_conditions=tuple(delete_conditions),
            parameters=parameters,
            disable_indexes=tuple(self.disable_indexes),
            disable_all_indexes=self.disable_all_indexes,
        )


@dataclass(frozen=True)
class MergePlan:
    """A ``MergeConfig`` with column mappings applied, in target column names."""

    schema: str
    table: str
    target: str
    fields: Tuple[str, ...]
    columns: Tuple[str, ...]
    match_on: Tuple[str, ...]
    exclude_from_update: frozenset
    identity_column: Optional[str]
    identity_field: Optional[str]
    identity_direction: IdentityDirection
    delete_when_not_matched: bool
    collations: Dict[str, str] = field(default_factory=dict)
    update_conditions: Tuple[PredicateCondition, ...] = ()
    delete_conditions: Tuple[PredicateCondition, ...] = ()
    parameters: Dict[str, Any] = field(default_factory=dict)
    disable_indexes: Tuple[str, ...] = ()
    disable_all_indexes: bool = False

    @property
    def round_trips_identity(self) -> bool:
        return self.identity_column is not None and self.identity_direction == IdentityDirection.INPUT_OUTPUT

    @property
    def manages_indexes(self) -> bool:
        return self.disable_all_indexes or bool(self.disable_indexes)


class MergeBuilder:
    """
    Fluent builder for ``MergeConfig``.

    Example:
        >>> config = (
        ...     MergeBuilder("sales.orders")
        ...     .columns("Id", "Name", "Amount")
        ...     .match_on("Id")
        ...     .update_when(col("Amount") > 0)
        ...     .build()
        ... )
    """

    def __init__(self, table: str, schema: Optional[str] = None, database: Optional[str] = None):
        self._table = table
        self._schema = schema
        self._database = database
        self._columns: List[str] = []
        self._match_on: List[str] = []
        self._exclude_from_update: List[str] = []
        self._conditions: List[Predicate] = []
        self._delete_when_not_matched = False
        self._identity_column: Optional[str] = None
        self._identity_direction = IdentityDirection.INPUT
        self._collations: Dict[str, str] = {}
        self._column_mappings: Dict[str, str] = {}
        self._disable_indexes: List[str] = []
        self._disable_all_indexes = False
        self._all_columns = False
        self._command_timeout = 600
        self._bulk_copy = BulkCopySettings()

    @staticmethod
    def _require_name(name: Optional[str], method: str) -> str:
        if not name:
            raise ConfigValidationError(f"{method} column name can't be null.", field=method)
        return name

    def columns(self, *names: str) -> "MergeBuilder":
        for name in names:
            name = self._require_name(name, "columns")
            if name not in self._columns:
                self._columns.append(name)
        return self

    def add_all_columns(self, record_or_type: Any) -> "MergeBuilder":
        """Add every field of a record (or record type) as a column."""
        self._all_columns = True
        return self.columns(*records.field_names(record_or_type))

    def match_on(self, *names: str) -> "MergeBuilder":
        for name in names:
            self._match_on.append(self._require_name(name, "match_on"))
        return self

    def exclude_from_update(self, *names: str) -> "MergeBuilder":
        for name in names:
            name = self._require_name(name, "exclude_from_update")
            if name not in self._columns:
                raise ConfigValidationError(
                    f"Could not exclude column '{name}' from update because the column could not "
                    "be recognised. Call add_all_columns() or columns() for this column first.",
                    field="exclude_from_update",
                )
            self._exclude_from_update.append(name)
        return self

    def update_when(self, predicate: Predicate) -> "MergeBuilder":
        self._conditions.append(validate_predicate(predicate).for_kind(PredicateKind.UPDATE))
        return self

    def delete_when(self, predicate: Predicate) -> "MergeBuilder":
        self._conditions.append(validate_predicate(predicate).for_kind(PredicateKind.DELETE))
        return self

    def delete_when_not_matched(self, flag: bool = True) -> "MergeBuilder":
        self._delete_when_not_matched = flag
        return self

    def identity(
        self, name: str, direction: IdentityDirection = IdentityDirection.INPUT
    ) -> "MergeBuilder":
        self._identity_column = self._require_name(name, "identity")
        self._identity_direction = IdentityDirection(direction)
        return self

    def collation(self, name: str, collation: str) -> "MergeBuilder":
        self._collations[self._require_name(name, "collation")] = collation
        return self

    def map_column(self, field_name: str, column_name: str) -> "MergeBuilder":
        self._column_mappings[self._require_name(field_name, "map_column")] = self._require_name(
            column_name, "map_column"
        )
        return self

    def disable_indexes(self, *index_names: str) -> "MergeBuilder":
        self._disable_indexes.extend(index_names)
        return self

    def disable_all_indexes(self, flag: bool = True) -> "MergeBuilder":
        self._disable_all_indexes = flag
        return self

    def command_timeout(self, seconds: int) -> "MergeBuilder":
        self._command_timeout = seconds
        return self

    def bulk_copy(self, **settings: Any) -> "MergeBuilder":
        self._bulk_copy = BulkCopySettings(**settings)
        return self

    def build(self) -> MergeConfig:
        kwargs: Dict[str, Any] = {}
        if self._schema:
            kwargs["schema_name"] = self._schema
        return MergeConfig(
            table=self._table,
            database=self._database,
            columns=tuple(self._columns),
            match_on=tuple(self._match_on),
            exclude_from_update=tuple(self._exclude_from_update),
            conditions=tuple(self._conditions),
            delete_when_not_matched=self._delete_when_not_matched,
            identity_column=self._identity_column,
            identity_direction=self._identity_direction,
            collations=dict(self._collations),
            column_mappings=dict(self._column_mappings),
            disable_indexes=tuple(self._disable_indexes),
            disable_all_indexes=self._disable_all_indexes,
            all_columns=self._all_columns,
            command_timeout=self._command_timeout,
            bulk_copy=self._bulk_copy,
            **kwargs,
        )
