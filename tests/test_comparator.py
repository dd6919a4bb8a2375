"""Tests for schema comparison."""

import pytest

from schemashift.core.comparator import ComparisonOptions, SchemaComparator, generate_index_name
from schemashift.core.errors import UnknownTableError
from schemashift.core.rename_detection import NoRenameStrategy, SimilarityRenameStrategy
from schemashift.core.schema_model import ColumnChange, ColumnDefinition, IndexDefinition, TableSchema
from schemashift.core.schema_provider import DeclaredField, DeclaredIndex, DeclaredSchema

from tests.conftest import CUSTOMER_TABLE, customer_schema

TABLE = "tabItem"

PK = ColumnDefinition("name", "varchar(140)", nullable=False, primary_key=True)


def live(*columns: ColumnDefinition, indexes=()) -> TableSchema:
    return TableSchema(name=TABLE, columns=(PK,) + columns, indexes=tuple(indexes))


def declared(*fields: DeclaredField, indexes=()) -> DeclaredSchema:
    return DeclaredSchema(table=TABLE, fields=list(fields), indexes=list(indexes))


@pytest.fixture
def comparator() -> SchemaComparator:
    return SchemaComparator(inspector=None, schema_provider=None)


class TestColumnDiff:
    """Tests for column level differences."""

    def test_added_column(self, comparator):
        """A declared field missing from the table is added."""
        diff = comparator.diff(
            declared(DeclaredField("email", length=255), DeclaredField("phone")),
            live(ColumnDefinition("email", "varchar(255)")),
        )

        assert [c.fieldname for c in diff.added_columns] == ["phone"]
        assert diff.added_columns[0].column.type == "text"
        assert not diff.removed_columns
        assert not diff.modified_columns

    def test_removed_columns_sorted_and_protected(self, comparator):
        """Removals are ordered by name; primary key and system columns are never removed."""
        diff = comparator.diff(
            declared(DeclaredField("email")),
            live(
                ColumnDefinition("email", "text"),
                ColumnDefinition("zeta", "integer"),
                ColumnDefinition("creation", "text"),
                ColumnDefinition("alpha", "integer"),
            ),
        )

        assert [c.fieldname for c in diff.removed_columns] == ["alpha", "zeta"]
        assert all(c.destructive for c in diff.removed_columns)

    def test_layout_fields_ignored(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("details", "Section Break"), DeclaredField("email")),
            live(ColumnDefinition("email", "text")),
        )

        assert not diff.has_changes()

    def test_length_narrowing_is_destructive(self, comparator):
        """Narrowing 255 -> 50 can truncate values."""
        diff = comparator.diff(
            declared(DeclaredField("email", length=50)),
            live(ColumnDefinition("email", "varchar(255)")),
        )

        assert len(diff.modified_columns) == 1
        change = diff.modified_columns[0]
        assert change.fieldname == "email"
        assert change.changes["length"].to_dict() == {"from": 255, "to": 50}
        assert "type" not in change.changes
        assert change.destructive is True
        assert change.requires_data_migration is True
        assert change.column.type == "varchar(50)"
        assert change.previous.type == "varchar(255)"

    def test_length_widening_is_safe(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("email", length=255)),
            live(ColumnDefinition("email", "varchar(50)")),
        )

        change = diff.modified_columns[0]
        assert change.changes["length"].to_dict() == {"from": 50, "to": 255}
        assert change.destructive is False

    def test_unbounded_declaration_keeps_live_length(self, comparator):
        """A field without a length does not shrink or widen an existing varchar."""
        diff = comparator.diff(
            declared(DeclaredField("email")),
            live(ColumnDefinition("email", "varchar(255)")),
        )

        assert not diff.has_changes()

    def test_incompatible_type_change(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("qty", "Int")),
            live(ColumnDefinition("qty", "text")),
        )

        change = diff.modified_columns[0]
        assert change.changes["type"].to_dict() == {"from": "text", "to": "integer"}
        assert change.requires_data_migration is True
        assert change.destructive is True

    def test_lossless_type_change(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("qty", "Float")),
            live(ColumnDefinition("qty", "integer")),
        )

        change = diff.modified_columns[0]
        assert "type" in change.changes
        assert change.destructive is False

    def test_required_field(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("email", required=True)),
            live(ColumnDefinition("email", "text")),
        )

        change = diff.modified_columns[0]
        assert change.changes["nullable"].to_dict() == {"from": True, "to": False}
        assert change.requires_data_migration is True

    def test_equivalent_default_is_kept(self, comparator):
        """A live default of 0 matches an unset declaration and stays on the target column."""
        diff = comparator.diff(
            declared(DeclaredField("credit_limit", "Currency", precision=4)),
            live(ColumnDefinition("credit_limit", "decimal(18,2)", default=0)),
        )

        change = diff.modified_columns[0]
        assert "default" not in change.changes
        assert change.column.default == 0

    def test_ignore_options(self, comparator):
        options = ComparisonOptions(ignore_length_differences=True)
        diff = comparator.diff(
            declared(DeclaredField("email", length=50)),
            live(ColumnDefinition("email", "varchar(255)")),
            options,
        )

        assert not diff.modified_columns

    def test_case_insensitive_matching(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("Email")),
            live(ColumnDefinition("email", "text")),
            ComparisonOptions(case_sensitive=False),
        )

        assert not diff.has_changes()

    def test_matching_is_case_sensitive_by_default(self, comparator):
        diff = comparator.diff(declared(DeclaredField("Email")), live(ColumnDefinition("email", "text")))

        assert ComparisonOptions().case_sensitive is True
        assert diff.has_changes()
        assert [(r.from_name, r.to_name) for r in diff.renamed_columns] == [("email", "Email")]


class TestRenameDetection:
    """Tests for rename detection."""

    def test_similar_name_same_shape_is_rename(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("customer_mail", length=255)),
            live(ColumnDefinition("customer_email", "varchar(255)")),
        )

        assert not diff.added_columns
        assert not diff.removed_columns
        assert len(diff.renamed_columns) == 1
        rename = diff.renamed_columns[0]
        assert (rename.from_name, rename.to_name) == ("customer_email", "customer_mail")
        assert rename.similarity >= 0.7

    def test_different_shape_is_not_rename(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("customer_mail", length=100)),
            live(ColumnDefinition("customer_email", "varchar(255)")),
        )

        assert not diff.renamed_columns
        assert [c.fieldname for c in diff.added_columns] == ["customer_mail"]
        assert [c.fieldname for c in diff.removed_columns] == ["customer_email"]

    def test_dissimilar_names_are_not_renamed(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("website", length=20)),
            live(ColumnDefinition("fax", "varchar(20)")),
        )

        assert not diff.renamed_columns

    def test_ambiguous_candidates_are_skipped(self):
        """Two equally similar removed columns leave the added one unpaired."""
        strategy = SimilarityRenameStrategy(threshold=0.7)
        column = ColumnDefinition("x", "text")
        removed = [ColumnChange("note_a", column.renamed("note_a")), ColumnChange("note_b", column.renamed("note_b"))]
        added = [ColumnChange("note_c", column.renamed("note_c"))]

        assert strategy.detect(removed, added) == []

    def test_best_pairs_win(self):
        strategy = SimilarityRenameStrategy(threshold=0.5)
        column = ColumnDefinition("x", "text")
        removed = [ColumnChange("first_name", column), ColumnChange("last_name", column)]
        added = [ColumnChange("lastname", column), ColumnChange("firstname", column)]

        renames = {(r.from_name, r.to_name) for r in strategy.detect(removed, added)}
        assert renames == {("first_name", "firstname"), ("last_name", "lastname")}

    def test_strategy_is_pluggable(self):
        comparator = SchemaComparator(inspector=None, schema_provider=None, rename_strategy=NoRenameStrategy())
        diff = comparator.diff(
            declared(DeclaredField("customer_mail", length=255)),
            live(ColumnDefinition("customer_email", "varchar(255)")),
        )

        assert not diff.renamed_columns
        assert len(diff.added_columns) == 1
        assert len(diff.removed_columns) == 1

    def test_categories_are_disjoint(self, comparator):
        """No field name appears in more than one change category."""
        diff = comparator.diff(
            declared(
                DeclaredField("customer_mail", length=255),
                DeclaredField("qty", "Int"),
                DeclaredField("phone"),
                DeclaredField("note", length=10),
            ),
            live(
                ColumnDefinition("customer_email", "varchar(255)"),
                ColumnDefinition("qty", "text"),
                ColumnDefinition("note", "varchar(200)"),
                ColumnDefinition("obsolete", "integer"),
            ),
        )

        assert diff.overlapping_fields() == set()
        names = diff.field_names()
        assert names["added"] == ["phone"]
        assert names["removed"] == ["obsolete"]
        assert sorted(names["modified"]) == ["note", "qty"]
        assert names["renamed"] == ["customer_email", "customer_mail"]


class TestDeclaredRenames:
    """Tests for renames declared through old_fieldname."""

    def test_old_fieldname_settles_an_ambiguous_pair(self, comparator):
        live_table = live(ColumnDefinition("note_a", "text"), ColumnDefinition("note_b", "text"))

        guessed = comparator.diff(declared(DeclaredField("note_c")), live_table)
        assert guessed.renamed_columns == []
        assert [c.fieldname for c in guessed.added_columns] == ["note_c"]

        diff = comparator.diff(declared(DeclaredField("note_c", old_fieldname="note_a")), live_table)

        assert [(r.from_name, r.to_name) for r in diff.renamed_columns] == [("note_a", "note_c")]
        assert diff.added_columns == []
        assert [c.fieldname for c in diff.removed_columns] == ["note_b"]
        assert diff.overlapping_fields() == set()

    def test_declared_rename_ignores_similarity(self, comparator):
        """Dissimilar names still pair; the type change follows once renamed."""
        schema = declared(DeclaredField("quantity_ordered", "Int", old_fieldname="qty"))

        diff = comparator.diff(schema, live(ColumnDefinition("qty", "text")))

        assert [(r.from_name, r.to_name) for r in diff.renamed_columns] == [("qty", "quantity_ordered")]
        assert diff.removed_columns == []
        assert diff.modified_columns == []
        assert diff.overlapping_fields() == set()

        after = comparator.diff(schema, live(ColumnDefinition("quantity_ordered", "text")))

        assert after.renamed_columns == []
        assert [c.fieldname for c in after.modified_columns] == ["quantity_ordered"]
        assert "type" in after.modified_columns[0].changes

    def test_old_name_still_declared_is_not_renamed(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("note_a"), DeclaredField("note_c", old_fieldname="note_a")),
            live(ColumnDefinition("note_a", "text")),
        )

        assert diff.renamed_columns == []
        assert [c.fieldname for c in diff.added_columns] == ["note_c"]

    def test_primary_key_is_never_renamed(self, comparator):
        diff = comparator.diff(
            declared(DeclaredField("code", old_fieldname="name")),
            live(),
        )

        assert diff.renamed_columns == []
        assert [c.fieldname for c in diff.added_columns] == ["code"]

    def test_old_fieldname_from_dict(self):
        parsed = DeclaredField.from_dict({"fieldname": "note_c", "old_fieldname": "note_a"})

        assert parsed.old_fieldname == "note_a"
        assert DeclaredField.from_dict({"fieldname": "note_c"}).old_fieldname is None


class TestIndexDiff:
    """Tests for index differences."""

    def test_generated_index_name(self):
        assert generate_index_name("tabSales Invoice", ["customer"]) == "idx_tabsales_invoice_customer"
        assert generate_index_name("t", ["a", "b"], unique=True) == "uk_t_a_b"
        assert len(generate_index_name("t" * 80, ["c"])) == 64

    def test_added_and_removed_indexes(self, comparator):
        diff = comparator.diff(
            declared(
                DeclaredField("email"),
                DeclaredField("phone"),
                indexes=[DeclaredIndex(columns=("phone",))],
            ),
            live(
                ColumnDefinition("email", "text"),
                ColumnDefinition("phone", "text"),
                indexes=[IndexDefinition("idx_item_email", ("email",))],
            ),
        )

        assert [i.name for i in diff.added_indexes] == ["idx_tabitem_phone"]
        assert [i.name for i in diff.removed_indexes] == ["idx_item_email"]

    def test_uniqueness_and_order_matter(self, comparator):
        diff = comparator.diff(
            declared(
                DeclaredField("a"),
                DeclaredField("b"),
                indexes=[DeclaredIndex(columns=("b", "a")), DeclaredIndex(columns=("a",), unique=True)],
            ),
            live(
                ColumnDefinition("a", "text"),
                ColumnDefinition("b", "text"),
                indexes=[IndexDefinition("ix_ab", ("a", "b")), IndexDefinition("ix_a", ("a",))],
            ),
        )

        assert sorted(i.name for i in diff.added_indexes) == ["idx_tabitem_b_a", "uk_tabitem_a"]
        assert sorted(i.name for i in diff.removed_indexes) == ["ix_a", "ix_ab"]

    def test_index_follows_renamed_column(self, comparator):
        diff = comparator.diff(
            declared(
                DeclaredField("customer_mail", length=255),
                indexes=[DeclaredIndex(columns=("customer_mail",))],
            ),
            live(
                ColumnDefinition("customer_email", "varchar(255)"),
                indexes=[IndexDefinition("idx_email", ("customer_email",))],
            ),
        )

        assert len(diff.renamed_columns) == 1
        assert not diff.added_indexes
        assert not diff.removed_indexes

    def test_partial_index_predicate(self, comparator):
        diff = comparator.diff(
            declared(
                DeclaredField("status"),
                indexes=[DeclaredIndex(columns=("status",), where="status  =  'open'")],
            ),
            live(
                ColumnDefinition("status", "text"),
                indexes=[IndexDefinition("ix_status", ("status",), where="status = 'open'")],
            ),
        )

        assert not diff.added_indexes
        assert not diff.removed_indexes


class TestCompareLive:
    """Tests against a real table."""

    async def test_matching_table_has_no_changes(self, customer_table, inspector, provider):
        comparator = SchemaComparator(inspector, provider)

        diff = await comparator.compare(CUSTOMER_TABLE)

        assert not diff.has_changes()
        assert diff.baseline.exists

    async def test_new_field_is_added(self, customer_table, inspector, provider):
        provider.register(customer_schema(DeclaredField("phone")))
        comparator = SchemaComparator(inspector, provider)

        diff = await comparator.compare(CUSTOMER_TABLE)

        assert [c.fieldname for c in diff.added_columns] == ["phone"]
        assert diff.summary()["added_columns"] == 1

    async def test_missing_table_adds_everything(self, inspector, provider):
        comparator = SchemaComparator(inspector, provider)

        diff = await comparator.compare(CUSTOMER_TABLE)

        assert not diff.baseline.exists
        assert [c.fieldname for c in diff.added_columns] == ["email", "customer_name", "credit_limit"]
        assert not diff.removed_columns

    async def test_unknown_table(self, inspector, provider):
        comparator = SchemaComparator(inspector, provider)

        with pytest.raises(UnknownTableError):
            await comparator.compare("tabNothing")
