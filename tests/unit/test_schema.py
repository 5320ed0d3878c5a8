"""Tests for target schema probing."""

import asyncio

import pytest

from bulkmerge.exceptions import SchemaError
from bulkmerge.schema import (
    ColumnInfo,
    build_schema_query,
    format_sql_type,
    get_table_schema,
    get_table_schema_async,
    parse_schema_rows,
    resolve_columns,
)


class TestFormatSqlType:
    """Tests for building full SQL types from INFORMATION_SCHEMA metadata."""

    @pytest.mark.parametrize(
        "args, expected",
        [
            (("nvarchar", 255), "nvarchar(255)"),
            (("varchar", -1), "varchar(MAX)"),
            (("varbinary", None), "varbinary(MAX)"),
            (("decimal", None, 18, 4), "decimal(18,4)"),
            (("numeric", None, 10, 0), "numeric(10,0)"),
            (("datetime2", None, None, None, 3), "datetime2(3)"),
            (("int",), "int"),
            (("uniqueidentifier",), "uniqueidentifier"),
        ],
    )
    def test_format(self, args, expected):
        assert format_sql_type(*args) == expected


class TestSchemaQuery:
    def test_query_is_parameterized(self):
        sql, params = build_schema_query("sales", "orders")
        assert "INFORMATION_SCHEMA.COLUMNS" in sql
        assert "TABLE_SCHEMA = :schema_name" in sql
        assert "'orders'" not in sql
        assert params == {"object_name": "[sales].[orders]", "schema_name": "sales", "table_name": "orders"}

    def test_cross_database_query(self):
        sql, params = build_schema_query("dbo", "orders", "Shop")
        assert "FROM [Shop].INFORMATION_SCHEMA.COLUMNS" in sql
        assert params["object_name"] == "[Shop].[dbo].[orders]"

    def test_object_name_bound_without_text_escapes(self):
        _, params = build_schema_query("dbo", "Sales:2024")
        assert params["object_name"] == "[dbo].[Sales:2024]"


class TestParseSchemaRows:
    def test_parse(self, orders_schema):
        columns = parse_schema_rows(orders_schema)
        assert list(columns) == ["Id", "Code", "Name", "Amount"]
        assert columns["Id"].is_identity is True
        assert columns["Id"].is_nullable is False
        assert columns["Code"].full_type == "nvarchar(50)"
        assert columns["Amount"].full_type == "decimal(18,2)"


class TestGetTableSchema:
    def test_returns_columns(self, fake_db):
        db = fake_db()
        columns = get_table_schema(db.sync_connection(), "sales", "orders")
        assert set(columns) == {"Id", "Code", "Name", "Amount"}
        (sql, params), = db.executed
        assert params["table_name"] == "orders"

    def test_missing_table_raises(self, fake_db):
        db = fake_db(schema_rows=[])
        with pytest.raises(SchemaError, match="Table not found"):
            get_table_schema(db.sync_connection(), "sales", "missing")

    def test_async(self, fake_db, make_schema_row):
        db = fake_db(schema_rows=[make_schema_row("Id")])
        columns = asyncio.run(get_table_schema_async(db.async_connection(), "dbo", "orders"))
        assert list(columns) == ["Id"]


class TestResolveColumns:
    def test_case_insensitive(self):
        columns = {"Name": ColumnInfo("Name", "nvarchar", "nvarchar(10)")}
        (info,) = resolve_columns(columns, ["name"], "[dbo].[t]")
        assert info.name == "Name"

    def test_missing_columns_listed(self):
        columns = {"Name": ColumnInfo("Name", "nvarchar", "nvarchar(10)")}
        with pytest.raises(SchemaError) as exc_info:
            resolve_columns(columns, ["Name", "Nope", "Gone"], "[dbo].[t]")
        assert exc_info.value.missing_columns == ["Nope", "Gone"]
        assert "Nope" in str(exc_info.value)
