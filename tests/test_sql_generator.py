"""Tests for SQL generation."""

import pytest

from schemashift.core.comparator import SchemaComparator
from schemashift.core.errors import SQLGenerationError
from schemashift.core.schema_model import (
    ColumnChange,
    ColumnDefinition,
    ForeignKeyDefinition,
    IndexDefinition,
    SchemaDiff,
    TableSchema,
)
from schemashift.core.schema_provider import DeclaredField, DeclaredIndex, DeclaredSchema
from schemashift.core.sql_generator import (
    SQLGenerator,
    StatementKind,
    column_sql,
    conversion_expression,
    create_index_sql,
    create_table_sql,
)

TABLE = "tabItem"

PK = ColumnDefinition("name", "varchar(140)", nullable=False, primary_key=True)

PAIR_COLUMNS = [
    ColumnDefinition("a", "varchar(50)"),
    ColumnDefinition("b", "varchar(50)"),
    ColumnDefinition("note", "varchar(200)"),
]


def plan(fields, columns, indexes=(), declared_indexes=(), generator=None, unique_constraints=()):
    """Diff a declaration against a live snapshot and generate SQL for it."""
    comparator = SchemaComparator(inspector=None, schema_provider=None)
    live = TableSchema(
        name=TABLE,
        columns=(PK,) + tuple(columns),
        indexes=tuple(indexes),
        unique_constraints=tuple(unique_constraints),
    )
    diff = comparator.diff(DeclaredSchema(TABLE, list(fields), list(declared_indexes)), live)
    generator = generator or SQLGenerator(supports_drop_column=True)
    return generator.generate(diff, TABLE)


def kinds(statements):
    return [s.kind for s in statements]


class TestDDLBuilders:
    """Tests for the DDL helper functions."""

    def test_column_sql(self):
        column = ColumnDefinition("flag", "integer", nullable=False, default=0, unique=True)
        assert column_sql(column) == '"flag" integer NOT NULL UNIQUE DEFAULT 0'

    def test_column_sql_foreign_key(self):
        column = ColumnDefinition(
            "customer", "varchar(140)",
            foreign_key=ForeignKeyDefinition("tabCustomer", "name", on_delete="CASCADE"),
        )
        assert column_sql(column) == (
            '"customer" varchar(140) REFERENCES "tabCustomer"("name") ON DELETE CASCADE ON UPDATE NO ACTION'
        )

    def test_composite_primary_key(self):
        sql = create_table_sql("t", [
            ColumnDefinition("a", "integer", nullable=False, primary_key=True),
            ColumnDefinition("b", "integer", nullable=False, primary_key=True),
        ])
        assert sql == 'CREATE TABLE "t" ("a" integer NOT NULL, "b" integer NOT NULL, PRIMARY KEY ("a", "b"))'

    def test_table_unique_constraint(self):
        sql = create_table_sql(
            "t",
            [ColumnDefinition("a", "text"), ColumnDefinition("b", "text")],
            [("a", "b")],
        )
        assert sql == 'CREATE TABLE "t" ("a" text, "b" text, UNIQUE ("a", "b"))'

    def test_create_table_without_columns(self):
        with pytest.raises(SQLGenerationError, match="without columns"):
            create_table_sql("t", [])

    def test_partial_unique_index(self):
        index = IndexDefinition("uk_t_a", ("a",), unique=True, where="a IS NOT NULL")
        assert create_index_sql("t", index) == 'CREATE UNIQUE INDEX "uk_t_a" ON "t" ("a") WHERE a IS NOT NULL'

    def test_conversion_expressions(self):
        """Copy expressions truncate, round, cast and fill as needed."""
        text = ColumnDefinition("v", "varchar(255)")
        assert conversion_expression(text, ColumnDefinition("v", "varchar(50)")) == 'substr("v", 1, 50)'
        assert conversion_expression(text, ColumnDefinition("v", "integer")) == 'CAST("v" AS INTEGER)'
        assert conversion_expression(
            ColumnDefinition("v", "decimal(18,4)"), ColumnDefinition("v", "decimal(18,2)")
        ) == 'round("v", 2)'
        assert conversion_expression(
            ColumnDefinition("v", "text"), ColumnDefinition("v", "text", nullable=False)
        ) == "COALESCE(\"v\", '')"
        assert conversion_expression(text, ColumnDefinition("v", "text")) == '"v"'


class TestInPlaceChanges:
    """Tests for changes SQLite can make without a rebuild."""

    def test_add_column(self):
        result = plan(
            [DeclaredField("email"), DeclaredField("phone")],
            [ColumnDefinition("email", "text")],
        )

        assert result.forward_sql == ['ALTER TABLE "tabItem" ADD COLUMN "phone" text']
        assert result.rollback_sql == ['ALTER TABLE "tabItem" DROP COLUMN "phone"']
        assert result.destructive is False
        assert result.requires_backup is False
        assert result.rebuild is False

    def test_drop_column_is_destructive(self):
        result = plan([DeclaredField("email")], [ColumnDefinition("email", "text"), ColumnDefinition("fax", "text")])

        assert result.forward_sql == ['ALTER TABLE "tabItem" DROP COLUMN "fax"']
        assert result.rollback_sql == ['ALTER TABLE "tabItem" ADD COLUMN "fax" text']
        assert result.destructive is True
        assert result.requires_backup is True
        assert "Removing column 'fax' may result in data loss" in result.warnings
        assert any("cannot restore its data" in w for w in result.warnings)

    def test_statement_order(self):
        """Renames, index drops, column adds, then index creation."""
        result = plan(
            [DeclaredField("customer_mail", length=255), DeclaredField("code"), DeclaredField("phone")],
            [ColumnDefinition("customer_email", "varchar(255)"), ColumnDefinition("code", "text")],
            indexes=[IndexDefinition("ix_code", ("code",))],
            declared_indexes=[DeclaredIndex(columns=("phone",))],
        )

        assert kinds(result.forward) == [
            StatementKind.RENAME_COLUMN,
            StatementKind.DROP_INDEX,
            StatementKind.ADD_COLUMN,
            StatementKind.CREATE_INDEX,
        ]
        assert kinds(result.rollback) == [
            StatementKind.DROP_INDEX,
            StatementKind.DROP_COLUMN,
            StatementKind.CREATE_INDEX,
            StatementKind.RENAME_COLUMN,
        ]
        assert result.forward_sql[0] == 'ALTER TABLE "tabItem" RENAME COLUMN "customer_email" TO "customer_mail"'
        assert result.rollback_sql[-1] == 'ALTER TABLE "tabItem" RENAME COLUMN "customer_mail" TO "customer_email"'
        assert result.rollback_sql[2] == 'CREATE INDEX "ix_code" ON "tabItem" ("code")'
        assert result.destructive is False

    def test_unique_index_warning(self):
        result = plan(
            [DeclaredField("email")],
            [ColumnDefinition("email", "text")],
            declared_indexes=[DeclaredIndex(columns=("email",), unique=True)],
        )

        assert result.forward_sql == ['CREATE UNIQUE INDEX "uk_tabitem_email" ON "tabItem" ("email")']
        assert any("may fail on existing duplicates" in w for w in result.warnings)

    def test_estimated_time(self):
        result = plan([DeclaredField("email"), DeclaredField("phone")], [ColumnDefinition("email", "text")])
        assert result.estimated_time == 0.5


class TestRebuild:
    """Tests for shadow table rebuilds."""

    def test_length_narrowing_rebuild(self):
        result = plan(
            [DeclaredField("email", length=50)],
            [ColumnDefinition("email", "varchar(255)")],
            indexes=[IndexDefinition("idx_tabitem_email", ("email",))],
            declared_indexes=[DeclaredIndex(columns=("email",))],
        )

        assert result.rebuild is True
        assert result.destructive is True
        assert result.requires_backup is True
        assert kinds(result.forward) == [
            StatementKind.CREATE_TABLE,
            StatementKind.COPY_DATA,
            StatementKind.DROP_TABLE,
            StatementKind.RENAME_TABLE,
            StatementKind.CREATE_INDEX,
        ]
        assert result.forward_sql[0] == (
            'CREATE TABLE "tabItem__rebuild" ("name" varchar(140) PRIMARY KEY NOT NULL, "email" varchar(50))'
        )
        assert result.forward_sql[1] == (
            'INSERT INTO "tabItem__rebuild" ("name", "email") SELECT "name", substr("email", 1, 50) FROM "tabItem"'
        )
        assert result.forward[1].destructive is True
        assert result.forward_sql[3] == 'ALTER TABLE "tabItem__rebuild" RENAME TO "tabItem"'
        assert result.forward_sql[4] == 'CREATE INDEX "idx_tabitem_email" ON "tabItem" ("email")'

    def test_rollback_restores_previous_structure(self):
        result = plan(
            [DeclaredField("email", length=50)],
            [ColumnDefinition("email", "varchar(255)")],
        )

        assert result.rollback_sql[0] == (
            'CREATE TABLE "tabItem__rebuild" ("name" varchar(140) PRIMARY KEY NOT NULL, "email" varchar(255))'
        )
        assert result.rollback_sql[1] == (
            'INSERT INTO "tabItem__rebuild" ("name", "email") SELECT "name", "email" FROM "tabItem"'
        )
        assert any("cannot recover values truncated" in w for w in result.warnings)
        assert "Table rebuild required for 'tabItem'" in result.warnings

    def test_widening_still_needs_backup(self):
        """A rebuild always drops the original table."""
        result = plan([DeclaredField("email", length=255)], [ColumnDefinition("email", "varchar(50)")])

        assert result.rebuild is True
        assert result.requires_backup is True
        assert result.forward[1].destructive is False

    def test_required_field_fills_nulls(self):
        result = plan([DeclaredField("email", required=True)], [ColumnDefinition("email", "text")])

        assert "COALESCE(\"email\", '')" in result.forward_sql[1]
        assert "Column 'email' requires data migration" in result.warnings

    def test_precision_narrowing_rounds(self):
        result = plan(
            [DeclaredField("credit", "Currency", precision=2)],
            [ColumnDefinition("credit", "decimal(18,4)")],
        )

        assert 'round("credit", 2)' in result.forward_sql[1]
        assert result.destructive is True

    def test_type_conversion(self):
        result = plan([DeclaredField("qty", "Int")], [ColumnDefinition("qty", "text")])

        assert 'CAST("qty" AS INTEGER)' in result.forward_sql[1]
        assert "Column 'qty' type conversion from 'text' to 'integer'" in result.warnings

    def test_adds_rebuild_without_drop_column_support(self):
        """Without DROP COLUMN an add could not be reversed in place."""
        result = plan(
            [DeclaredField("email"), DeclaredField("phone")],
            [ColumnDefinition("email", "text")],
            generator=SQLGenerator(supports_drop_column=False),
        )

        assert result.rebuild is True
        assert result.forward_sql[1] == (
            'INSERT INTO "tabItem__rebuild" ("name", "email", "phone") SELECT "name", "email", NULL FROM "tabItem"'
        )

    def test_rebuild_keeps_multi_column_unique(self):
        result = plan(
            [DeclaredField("a", length=50), DeclaredField("b", length=50), DeclaredField("note", length=100)],
            PAIR_COLUMNS,
            unique_constraints=[("a", "b")],
        )

        assert result.rebuild is True
        assert result.forward_sql[0] == (
            'CREATE TABLE "tabItem__rebuild" ("name" varchar(140) PRIMARY KEY NOT NULL, '
            '"a" varchar(50), "b" varchar(50), "note" varchar(100), UNIQUE ("a", "b"))'
        )
        assert result.rollback_sql[0] == (
            'CREATE TABLE "tabItem__rebuild" ("name" varchar(140) PRIMARY KEY NOT NULL, '
            '"a" varchar(50), "b" varchar(50), "note" varchar(200), UNIQUE ("a", "b"))'
        )

    def test_unique_constraint_follows_renamed_column(self):
        result = plan(
            [
                DeclaredField("pair_a", length=50, old_fieldname="a"),
                DeclaredField("b", length=50),
                DeclaredField("note", length=100),
            ],
            PAIR_COLUMNS,
            unique_constraints=[("a", "b")],
        )

        assert result.forward_sql[0] == 'ALTER TABLE "tabItem" RENAME COLUMN "a" TO "pair_a"'
        assert result.forward_sql[1].endswith('"note" varchar(100), UNIQUE ("pair_a", "b"))')
        assert result.rollback_sql[0].endswith('"note" varchar(200), UNIQUE ("pair_a", "b"))')
        assert result.rollback_sql[-1] == 'ALTER TABLE "tabItem" RENAME COLUMN "pair_a" TO "a"'

    def test_dropping_constraint_column_warns(self):
        """A column in a table UNIQUE cannot be dropped in place, and the constraint goes with it."""
        result = plan(
            [DeclaredField("a", length=50), DeclaredField("note", length=200)],
            PAIR_COLUMNS,
            unique_constraints=[("a", "b")],
        )

        assert result.rebuild is True
        assert "UNIQUE" not in result.forward_sql[0]
        assert result.rollback_sql[0].endswith('UNIQUE ("a", "b"))')
        assert "Unique constraint on (a, b) is dropped with its columns during rebuild" in result.warnings
        assert "Rollback re-creates column 'b' but cannot restore its data" in result.warnings

    def test_rebuild_drop_warns_about_rollback(self):
        """Dropping a UNIQUE column needs a rebuild; rollback brings it back empty."""
        result = plan(
            [DeclaredField("email")],
            [ColumnDefinition("email", "text"), ColumnDefinition("legacy_code", "text", unique=True)],
        )

        assert result.rebuild is True
        assert kinds(result.forward)[0] == StatementKind.CREATE_TABLE
        assert "Removing column 'legacy_code' may result in data loss" in result.warnings
        assert "Rollback re-creates column 'legacy_code' but cannot restore its data" in result.warnings

    def test_rebuild_needs_baseline(self):
        change = ColumnDefinition("email", "varchar(50)")
        diff = SchemaDiff(removed_columns=[ColumnChange("email", change, destructive=True)])

        with pytest.raises(SQLGenerationError, match="live snapshot"):
            SQLGenerator(supports_drop_column=False).generate(diff, TABLE)


class TestCreateTable:
    """Tests for tables that do not exist yet."""

    def test_create_table_with_default_primary_key(self):
        comparator = SchemaComparator(inspector=None, schema_provider=None)
        declared = DeclaredSchema(
            TABLE,
            [DeclaredField("email", length=255)],
            [DeclaredIndex(columns=("email",))],
        )
        diff = comparator.diff(declared, TableSchema(name=TABLE, exists=False))

        result = SQLGenerator().generate(diff, TABLE)

        assert result.forward_sql == [
            'CREATE TABLE "tabItem" ("name" varchar(140) PRIMARY KEY NOT NULL, "email" varchar(255))',
            'CREATE INDEX "idx_tabitem_email" ON "tabItem" ("email")',
        ]
        assert result.rollback_sql == ['DROP TABLE IF EXISTS "tabItem"']
        assert result.destructive is False
        assert "Table 'tabItem' does not exist and will be created" in result.warnings
