"""Field kind to SQLite storage type mapping.

Declared schemas speak in field kinds ("Data", "Currency", "Check", ...);
the live table speaks in storage types ("varchar(140)", "decimal(18,2)").
Everything that needs to reason about both sides goes through here.
"""

import re
from typing import Any

# Field kind -> base storage type
FIELDTYPE_STORAGE: dict[str, str] = {
    # Text
    "Data": "text",
    "Small Text": "text",
    "Long Text": "text",
    "Text": "text",
    "Text Editor": "text",
    "Code": "text",
    "Markdown Editor": "text",
    "HTML Editor": "text",
    "Select": "text",
    "Link": "text",
    "Dynamic Link": "text",
    "Password": "text",
    "Read Only": "text",
    "Color": "text",
    "Attach": "text",
    "Attach Image": "text",
    "Signature": "text",
    "Geolocation": "text",
    "Duration": "text",
    "Image": "text",
    "HTML": "text",
    # Dates are stored as ISO strings
    "Date": "text",
    "Datetime": "text",
    "Time": "text",
    # Whole numbers
    "Int": "integer",
    "Check": "integer",
    "Rating": "integer",
    # Fractional numbers
    "Float": "real",
    "Currency": "real",
    "Percent": "real",
}

# Kinds that only shape the form and never own a column
LAYOUT_FIELDTYPES = frozenset({
    "Section Break",
    "Column Break",
    "Tab Break",
    "Fold",
    "Button",
})

# Storage type name -> family used for equivalence checks
TYPE_FAMILIES: dict[str, str] = {
    "text": "text",
    "varchar": "text",
    "nvarchar": "text",
    "char": "text",
    "character": "text",
    "clob": "text",
    "string": "text",
    "integer": "integer",
    "int": "integer",
    "bigint": "integer",
    "smallint": "integer",
    "tinyint": "integer",
    "boolean": "integer",
    "real": "real",
    "float": "real",
    "double": "real",
    "decimal": "real",
    "numeric": "real",
    "blob": "blob",
    "date": "datetime",
    "datetime": "datetime",
    "timestamp": "datetime",
}

# Families a value can move between without losing information
_LOSSLESS_CONVERSIONS = {
    ("integer", "real"),
    ("integer", "text"),
    ("real", "text"),
    ("datetime", "text"),
    ("text", "blob"),
}

SQL_KEYWORD_DEFAULTS = frozenset({"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "NULL"})

_BASE_TYPE_RE = re.compile(r"^\s*([A-Za-z]+)")
_LENGTH_RE = re.compile(r"^\s*(?:n?varchar|char|character|text)\s*\(\s*(\d+)\s*\)", re.IGNORECASE)
_PRECISION_RE = re.compile(
    r"^\s*(?:decimal|numeric|real|float|double)\s*\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\)",
    re.IGNORECASE,
)


def is_layout_field(fieldtype: str | None) -> bool:
    return fieldtype in LAYOUT_FIELDTYPES


def base_type(storage_type: str | None) -> str:
    """Lower-cased leading type word, e.g. ``varchar(50)`` -> ``varchar``."""
    if not storage_type:
        return ""
    match = _BASE_TYPE_RE.match(storage_type)
    return match.group(1).lower() if match else storage_type.strip().lower()


def type_family(storage_type: str | None) -> str:
    base = base_type(storage_type)
    if base in TYPE_FAMILIES:
        return TYPE_FAMILIES[base]
    # SQLite affinity rules for anything unrecognised
    if "int" in base:
        return "integer"
    if any(token in base for token in ("char", "clob", "text")):
        return "text"
    if any(token in base for token in ("real", "floa", "doub")):
        return "real"
    return "text" if not base else base


def extract_length(storage_type: str | None) -> int | None:
    if not storage_type:
        return None
    match = _LENGTH_RE.match(storage_type)
    return int(match.group(1)) if match else None


def extract_precision(storage_type: str | None) -> int | None:
    """Decimal places carried by a numeric type.

    ``decimal(18,2)`` carries 2; a single argument is read as the precision
    itself, matching how older tables were declared.
    """
    if not storage_type:
        return None
    match = _PRECISION_RE.match(storage_type)
    if not match:
        return None
    if match.group(2) is not None:
        return int(match.group(2))
    return int(match.group(1))


def map_field_type(
    fieldtype: str,
    length: int | None = None,
    precision: int | None = None,
    custom: dict[str, str] | None = None,
) -> str:
    """Storage type for a declared field kind."""
    if custom and fieldtype in custom:
        storage = custom[fieldtype]
    elif fieldtype in FIELDTYPE_STORAGE:
        storage = FIELDTYPE_STORAGE[fieldtype]
    elif base_type(fieldtype) in TYPE_FAMILIES:
        # Raw storage type names are accepted as-is
        storage = fieldtype.strip().lower()
    else:
        storage = "text"

    family = type_family(storage)
    if "(" not in storage:
        if length and family == "text":
            return f"varchar({int(length)})"
        if precision is not None and family == "real":
            return f"decimal(18,{int(precision)})"
    return storage


def types_equivalent(left: str | None, right: str | None) -> bool:
    return type_family(left) == type_family(right)


def is_lossless_conversion(from_type: str | None, to_type: str | None) -> bool:
    src, dst = type_family(from_type), type_family(to_type)
    return src == dst or (src, dst) in _LOSSLESS_CONVERSIONS


def is_length_narrowing(from_length: int | None, to_length: int | None) -> bool:
    """Unbounded counts as wider than any bound."""
    if to_length is None:
        return False
    return from_length is None or to_length < from_length


def is_precision_narrowing(from_precision: int | None, to_precision: int | None) -> bool:
    if to_precision is None:
        return False
    return from_precision is None or to_precision < from_precision


def is_type_change_destructive(from_type: str | None, to_type: str | None) -> bool:
    if not is_lossless_conversion(from_type, to_type):
        return True
    if type_family(from_type) == type_family(to_type) == "text":
        return is_length_narrowing(extract_length(from_type), extract_length(to_type))
    if type_family(from_type) == type_family(to_type) == "real":
        return is_precision_narrowing(extract_precision(from_type), extract_precision(to_type))
    return False


def normalize_default(value: Any) -> Any:
    """Canonical default value for comparison and re-emission.

    Live defaults arrive as SQL literal text (``'abc'``, ``0``,
    ``CURRENT_TIMESTAMP``); declared defaults arrive as Python values.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1].replace(text[0] * 2, text[0])
    if text.upper() in SQL_KEYWORD_DEFAULTS:
        return None if text.upper() == "NULL" else text.upper()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    if re.fullmatch(r"-?\d+\.\d*", text):
        return float(text)
    return text


def defaults_equal(left: Any, right: Any) -> bool:
    a, b = normalize_default(left), normalize_default(right)
    # An unset default and zero are treated alike (checkbox columns)
    if (a is None and b in (0, "0")) or (b is None and a in (0, "0")):
        return True
    if a is None or b is None:
        return a is None and b is None
    return str(a).strip() == str(b).strip()


def sql_literal(value: Any) -> str:
    """Render a default value as an SQL literal."""
    value = normalize_default(value)
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)):
        return repr(value)
    if value in SQL_KEYWORD_DEFAULTS:
        return value
    if value.startswith("(") and value.endswith(")"):
        return value
    return "'" + value.replace("'", "''") + "'"


def zero_value(storage_type: str | None) -> str:
    """Literal used to back-fill a not-null column that has no default."""
    family = type_family(storage_type)
    if family == "integer":
        return "0"
    if family == "real":
        return "0.0"
    if family == "blob":
        return "X''"
    return "''"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'
