"""Tests for live table introspection."""

import pytest

from schemashift.core.schema_model import ForeignKeyDefinition, IndexDefinition, TableSchema

from tests.conftest import CUSTOMER_ROWS, CUSTOMER_TABLE


async def execute(engine, *statements):
    async with engine.begin() as conn:
        for sql in statements:
            await conn.exec_driver_sql(sql)


@pytest.fixture
async def order_table(engine, customer_table):
    await execute(
        engine,
        'CREATE TABLE "tabOrder" ('
        '"id" integer PRIMARY KEY AUTOINCREMENT, '
        '"customer" varchar(140) NOT NULL REFERENCES "tabCustomer" ("name") ON DELETE CASCADE, '
        '"code" varchar(20) UNIQUE, '
        '"status" text DEFAULT \'Draft\', '
        '"total" decimal(18,4))',
        'CREATE UNIQUE INDEX "uk_taborder_customer_status" ON "tabOrder" ("customer", "status") '
        "WHERE status != 'Cancelled'",
    )
    return "tabOrder"


class TestTableSchema:
    """Tests for get_table_schema."""

    async def test_customer_columns(self, customer_table, inspector):
        schema = await inspector.get_table_schema(CUSTOMER_TABLE)

        assert schema.exists is True
        assert schema.column_names == ["name", "email", "customer_name", "credit_limit"]
        assert schema.primary_key == ["name"]

        name = schema.column("name")
        assert name.nullable is False
        assert name.length == 140

        credit_limit = schema.column("credit_limit")
        assert credit_limit.type == "decimal(18,2)"
        assert credit_limit.precision == 2
        assert credit_limit.default == 0
        assert schema.indexes == (IndexDefinition("idx_tabcustomer_email", ("email",)),)

    async def test_missing_table(self, inspector):
        schema = await inspector.get_table_schema("tabNothing")

        assert schema.exists is False
        assert schema.columns == ()

    async def test_constraints_and_partial_index(self, order_table, inspector):
        schema = await inspector.get_table_schema(order_table)

        assert schema.column("id").auto_increment is True
        assert schema.column("code").unique is True
        assert schema.column("status").default == "Draft"
        assert schema.column("customer").foreign_key == ForeignKeyDefinition(
            referenced_table="tabCustomer", referenced_column="name", on_delete="CASCADE",
        )
        # The UNIQUE constraint's automatic index is not reported as an index
        assert [i.name for i in schema.indexes] == ["uk_taborder_customer_status"]
        index = schema.indexes[0]
        assert index.unique is True
        assert index.columns == ("customer", "status")
        assert index.where == "status != 'Cancelled'"
        assert schema.unique_constraints == ()

    async def test_multi_column_unique_constraint(self, engine, inspector):
        await execute(
            engine,
            'CREATE TABLE "tabPair" ("name" varchar(140) PRIMARY KEY NOT NULL, '
            '"a" varchar(50), "b" varchar(50), "note" varchar(200), UNIQUE ("a", "b"))',
        )

        schema = await inspector.get_table_schema("tabPair")

        assert schema.unique_constraints == (("a", "b"),)
        assert schema.column("a").unique is False
        assert schema.indexes == ()
        assert TableSchema.from_dict(schema.to_dict()).unique_constraints == (("a", "b"),)


class TestCounts:
    """Tests for the row counting helpers used in risk estimates."""

    async def test_list_and_exists(self, order_table, inspector):
        assert await inspector.list_tables() == ["tabCustomer", "tabOrder"]
        assert await inspector.table_exists("tabOrder") is True
        assert await inspector.table_exists("taborder_missing") is False

    async def test_counts(self, engine, customer_table, inspector):
        await execute(engine, 'UPDATE "tabCustomer" SET customer_name = NULL WHERE name = \'CUST-0003\'')

        assert await inspector.count_rows(CUSTOMER_TABLE) == len(CUSTOMER_ROWS)
        assert await inspector.count_rows("tabNothing") == 0
        assert await inspector.count_not_null(CUSTOMER_TABLE, "customer_name") == 2
        assert await inspector.count_longer_than(CUSTOMER_TABLE, "email", 50) == 1
        assert await inspector.count_rounded(CUSTOMER_TABLE, "credit_limit", 0) == 1

    async def test_server_version(self, engine, inspector):
        version = await inspector.get_server_version()

        assert version.count(".") == 2
