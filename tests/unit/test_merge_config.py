"""Tests for MergeConfig validation and the MergeBuilder API."""

from dataclasses import dataclass
from typing import Optional

import pytest

from bulkmerge.config import BulkCopySettings, IdentityDirection, MergeBuilder, MergeConfig
from bulkmerge.exceptions import ConfigValidationError
from bulkmerge.sql.predicates import PredicateKind, col


@dataclass
class Order:
    Id: Optional[int]
    Code: str
    Name: str
    Amount: float


def orders():
    builder = MergeBuilder("orders", schema="sales").columns("Id", "Code", "Name", "Amount").match_on("Code")
    return builder


class TestMergeConfigValidation:
    """Tests for configuration checks that run before any I/O."""

    def test_minimal_config(self):
        config = MergeConfig(table="orders", columns=("Id", "Name"), match_on=("Id",))
        assert config.schema_name == "dbo"
        assert config.command_timeout == 600
        assert config.identity_direction == IdentityDirection.INPUT

    def test_schema_alias(self):
        config = MergeConfig(table="orders", schema="sales", columns=("Id",), match_on=("Id",))
        assert config.schema_name == "sales"

    def test_empty_match_on_rejected(self):
        with pytest.raises(ConfigValidationError, match="match_on list is empty"):
            MergeConfig(table="orders", columns=("Id",))

    def test_empty_columns_rejected(self):
        with pytest.raises(ConfigValidationError, match="No columns configured"):
            MergeConfig(table="orders", columns=(), match_on=("Id",))

    def test_empty_table_rejected(self):
        with pytest.raises(ConfigValidationError, match="Table name"):
            MergeConfig(table="", columns=("Id",), match_on=("Id",))

    def test_match_on_outside_columns_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MergeConfig(table="orders", columns=("Id",), match_on=("Code",))
        assert exc_info.value.field == "match_on"

    def test_identity_outside_columns_rejected(self):
        with pytest.raises(ConfigValidationError, match="Identity column"):
            MergeConfig(table="orders", columns=("Code",), match_on=("Code",), identity_column="Id")

    def test_invalid_collation_rejected(self):
        with pytest.raises(ConfigValidationError, match="Invalid collation"):
            MergeConfig(
                table="orders", columns=("Code",), match_on=("Code",), collations={"Code": "x; DROP"}
            )

    def test_duplicate_mapped_names_rejected(self):
        with pytest.raises(ConfigValidationError, match="duplicate"):
            MergeConfig(
                table="orders",
                columns=("Code", "code"),
                match_on=("Code",),
                column_mappings={"code": "Code"},
            )

    def test_delete_predicate_requires_delete_when_not_matched(self):
        with pytest.raises(ConfigValidationError, match="delete_when\\(\\) is only usable"):
            MergeConfig(
                table="orders",
                columns=("Code", "Amount"),
                match_on=("Code",),
                conditions=((col("Amount") > 0).for_kind(PredicateKind.DELETE),),
            )

    def test_predicate_without_kind_rejected(self):
        with pytest.raises(ConfigValidationError, match="has no kind"):
            MergeConfig(
                table="orders", columns=("Code", "Amount"), match_on=("Code",), conditions=(col("Amount") > 0,)
            )

    def test_predicate_column_outside_columns_rejected(self):
        with pytest.raises(ConfigValidationError, match="Predicate column"):
            MergeConfig(
                table="orders",
                columns=("Code",),
                match_on=("Code",),
                conditions=((col("Amount") > 0).for_kind(PredicateKind.UPDATE),),
            )

    def test_disable_all_and_named_indexes_exclusive(self):
        with pytest.raises(ConfigValidationError, match="disable_all_indexes"):
            MergeConfig(
                table="orders",
                columns=("Code",),
                match_on=("Code",),
                disable_indexes=("IX_Code",),
                disable_all_indexes=True,
            )

    def test_config_is_frozen(self):
        config = MergeConfig(table="orders", columns=("Id",), match_on=("Id",))
        with pytest.raises(Exception):
            config.table = "other"


class TestMergeBuilder:
    """Tests for the fluent builder."""

    def test_builds_config(self):
        config = (
            orders()
            .exclude_from_update("Code")
            .identity("Id", IdentityDirection.INPUT_OUTPUT)
            .collation("Code", "Latin1_General_CS_AS")
            .command_timeout(30)
            .build()
        )
        assert config.table == "orders"
        assert config.schema_name == "sales"
        assert config.columns == ("Id", "Code", "Name", "Amount")
        assert config.exclude_from_update == ("Code",)
        assert config.identity_column == "Id"
        assert config.round_trips_identity is True
        assert config.collations == {"Code": "Latin1_General_CS_AS"}
        assert config.command_timeout == 30

    def test_columns_deduplicated(self):
        config = MergeBuilder("orders").columns("Id", "Id", "Name").match_on("Id").build()
        assert config.columns == ("Id", "Name")

    def test_add_all_columns_from_dataclass(self):
        config = MergeBuilder("orders").add_all_columns(Order).match_on("Code").build()
        assert config.columns == ("Id", "Code", "Name", "Amount")
        assert config.all_columns is True

    def test_add_all_columns_from_dict(self):
        config = MergeBuilder("orders").add_all_columns({"Code": "A", "Name": "x"}).match_on("Code").build()
        assert config.columns == ("Code", "Name")

    def test_null_column_name_rejected(self):
        with pytest.raises(ConfigValidationError, match="column name can't be null"):
            MergeBuilder("orders").columns(None)

    def test_exclude_unknown_column_rejected(self):
        """exclude_from_update must name a column that was already added."""
        with pytest.raises(ConfigValidationError, match="Could not exclude column 'Name'"):
            MergeBuilder("orders").columns("Id").exclude_from_update("Name")

    def test_update_and_delete_predicates_kinded(self):
        config = (
            orders()
            .update_when(col("Amount") > 0)
            .delete_when_not_matched()
            .delete_when(col("Name") == None)  # noqa: E711
            .build()
        )
        assert [p.kind for p in config.conditions] == [PredicateKind.UPDATE, PredicateKind.DELETE]

    def test_delete_when_without_flag_fails_on_build(self):
        builder = orders().delete_when(col("Amount") > 0)
        with pytest.raises(ConfigValidationError, match="delete_when_not_matched"):
            builder.build()

    def test_bulk_copy_settings(self):
        config = orders().bulk_copy(batch_size=500, notify_after=100, table_lock=True).build()
        assert config.bulk_copy == BulkCopySettings(batch_size=500, notify_after=100, table_lock=True)

    def test_bulk_copy_invalid_batch_size(self):
        with pytest.raises(Exception):
            orders().bulk_copy(batch_size=0)


class TestResolve:
    """Tests for turning a config into a MergePlan."""

    def test_target_escaped_and_qualified(self):
        plan = MergeBuilder("orders", schema="sales", database="Shop").columns("Id").match_on("Id").build().resolve()
        assert plan.target == "[Shop].[sales].[orders]"
        assert plan.schema == "sales"
        assert plan.table == "orders"

    def test_schema_in_table_name(self):
        plan = MergeBuilder("sales.orders").columns("Id").match_on("Id").build().resolve()
        assert plan.target == "[sales].[orders]"

    def test_column_mappings_applied_once(self):
        config = (
            MergeBuilder("orders")
            .columns("order_id", "code")
            .match_on("code")
            .identity("order_id", IdentityDirection.INPUT_OUTPUT)
            .map_column("order_id", "Id")
            .map_column("code", "Code")
            .update_when(col("code") != "x")
            .build()
        )
        plan = config.resolve()
        assert plan.fields == ("order_id", "code")
        assert plan.columns == ("Id", "Code")
        assert plan.match_on == ("Code",)
        assert plan.identity_column == "Id"
        assert plan.identity_field == "order_id"
        assert plan.update_conditions[0].column == "Code"
        # Resolving again must not double-map
        assert config.resolve().columns == ("Id", "Code")

    def test_predicate_parameters_numbered_by_declaration(self):
        plan = (
            orders()
            .update_when(col("Amount") > 0)
            .delete_when_not_matched()
            .delete_when(col("Name") == "gone")
            .build()
            .resolve()
        )
        assert plan.parameters == {"Condition_Update_1": 0, "Condition_Delete_2": "gone"}
        assert [c.param_name for c in plan.update_conditions] == ["Condition_Update_1"]
        assert [c.param_name for c in plan.delete_conditions] == ["Condition_Delete_2"]

    def test_manages_indexes(self):
        assert orders().disable_all_indexes().build().resolve().manages_indexes is True
        assert orders().disable_indexes("IX_A").build().resolve().manages_indexes is True
        assert orders().build().resolve().manages_indexes is False
