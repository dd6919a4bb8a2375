"""Tests for field kind to storage type mapping."""

import pytest

from schemashift.core.type_mapper import (
    defaults_equal,
    extract_length,
    extract_precision,
    is_layout_field,
    is_length_narrowing,
    is_lossless_conversion,
    is_precision_narrowing,
    is_type_change_destructive,
    map_field_type,
    normalize_default,
    quote_identifier,
    sql_literal,
    type_family,
    types_equivalent,
    zero_value,
)


class TestMapFieldType:
    """Tests for map_field_type."""

    @pytest.mark.parametrize("fieldtype,expected", [
        ("Data", "text"),
        ("Int", "integer"),
        ("Check", "integer"),
        ("Currency", "real"),
        ("Date", "text"),
        ("Unknown Kind", "text"),
    ])
    def test_base_types(self, fieldtype, expected):
        assert map_field_type(fieldtype) == expected

    def test_length_applies_to_text(self):
        """Length turns text into varchar(N)."""
        assert map_field_type("Data", length=140) == "varchar(140)"
        assert map_field_type("Int", length=11) == "integer"

    def test_precision_applies_to_real(self):
        assert map_field_type("Currency", precision=2) == "decimal(18,2)"
        assert map_field_type("Data", precision=2) == "text"

    def test_custom_mapping_wins(self):
        assert map_field_type("Data", custom={"Data": "clob"}) == "clob"

    def test_raw_storage_type_passes_through(self):
        assert map_field_type("varchar(20)") == "varchar(20)"

    def test_layout_fields(self):
        assert is_layout_field("Section Break")
        assert is_layout_field("Column Break")
        assert not is_layout_field("Data")


class TestTypeFamilies:
    """Tests for type families and conversions."""

    def test_families(self):
        assert type_family("varchar(255)") == "text"
        assert type_family("decimal(18,2)") == "real"
        assert type_family("BIGINT") == "integer"
        assert type_family("datetime") == "datetime"

    def test_affinity_fallback(self):
        """Unknown names follow SQLite's affinity rules."""
        assert type_family("mediumint") == "integer"
        assert type_family("longvarchar") == "text"

    def test_equivalence_ignores_length(self):
        assert types_equivalent("varchar(50)", "text")
        assert not types_equivalent("text", "integer")

    def test_lossless_conversions(self):
        assert is_lossless_conversion("integer", "real")
        assert is_lossless_conversion("integer", "varchar(10)")
        assert not is_lossless_conversion("text", "integer")
        assert not is_lossless_conversion("real", "integer")

    def test_extract_length_and_precision(self):
        assert extract_length("varchar(140)") == 140
        assert extract_length("text") is None
        assert extract_precision("decimal(18,2)") == 2
        assert extract_precision("decimal(6)") == 6
        assert extract_precision("real") is None

    def test_narrowing(self):
        """Unbounded counts as wider than any bound."""
        assert is_length_narrowing(255, 50)
        assert is_length_narrowing(None, 50)
        assert not is_length_narrowing(50, 255)
        assert not is_length_narrowing(50, None)
        assert is_precision_narrowing(4, 2)
        assert not is_precision_narrowing(2, 4)

    def test_destructive_type_change(self):
        assert is_type_change_destructive("varchar(255)", "varchar(50)")
        assert is_type_change_destructive("text", "integer")
        assert is_type_change_destructive("decimal(18,4)", "decimal(18,2)")
        assert not is_type_change_destructive("integer", "text")
        assert not is_type_change_destructive("varchar(50)", "varchar(255)")


class TestDefaults:
    """Tests for default value handling."""

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        ("'abc'", "abc"),
        ("'it''s'", "it's"),
        ("0", 0),
        ("1.5", 1.5),
        ("current_timestamp", "CURRENT_TIMESTAMP"),
        ("NULL", None),
        (True, 1),
    ])
    def test_normalize_default(self, raw, expected):
        assert normalize_default(raw) == expected

    def test_zero_equals_unset(self):
        """Checkbox columns default to 0 whether or not it is declared."""
        assert defaults_equal(None, "0")
        assert defaults_equal(0, None)
        assert not defaults_equal(None, "x")
        assert defaults_equal("'x'", "x")

    def test_sql_literal(self):
        assert sql_literal("it's") == "'it''s'"
        assert sql_literal(5) == "5"
        assert sql_literal("CURRENT_TIMESTAMP") == "CURRENT_TIMESTAMP"
        assert sql_literal(None) == "NULL"

    def test_zero_value(self):
        assert zero_value("integer") == "0"
        assert zero_value("decimal(18,2)") == "0.0"
        assert zero_value("varchar(10)") == "''"

    def test_quote_identifier_escapes_quotes(self):
        assert quote_identifier('we"ird') == '"we""ird"'
        assert quote_identifier("tabSales Invoice") == '"tabSales Invoice"'
