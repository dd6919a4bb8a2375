"""Declared schemas: what the application says each table should look like."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from schemashift.core.errors import SchemaComparisonError, UnknownTableError


@dataclass(frozen=True)
class DeclaredField:
    fieldname: str
    fieldtype: str = "Data"
    length: int | None = None
    precision: int | None = None
    required: bool = False
    unique: bool = False
    default: Any = None
    # Previous name of this field; pairs it with that live column as a rename
    old_fieldname: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "DeclaredField":
        return cls(
            fieldname=data["fieldname"],
            fieldtype=data.get("fieldtype", "Data"),
            length=data.get("length"),
            precision=data.get("precision"),
            required=bool(data.get("required", data.get("reqd", False))),
            unique=bool(data.get("unique", False)),
            default=data.get("default"),
            old_fieldname=data.get("old_fieldname"),
        )


@dataclass(frozen=True)
class DeclaredIndex:
    columns: tuple[str, ...]
    name: str | None = None
    unique: bool = False
    type: str | None = None
    where: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "DeclaredIndex":
        columns = data["columns"]
        if isinstance(columns, str):
            columns = [c.strip() for c in columns.split(",")]
        return cls(
            columns=tuple(columns),
            name=data.get("name"),
            unique=bool(data.get("unique", False)),
            type=data.get("type"),
            where=data.get("where"),
        )


@dataclass
class DeclaredSchema:
    table: str
    fields: list[DeclaredField] = field(default_factory=list)
    indexes: list[DeclaredIndex] = field(default_factory=list)

    @classmethod
    def from_dict(cls, table: str, data: dict) -> "DeclaredSchema":
        return cls(
            table=table,
            fields=[DeclaredField.from_dict(f) for f in data.get("fields", [])],
            indexes=[DeclaredIndex.from_dict(i) for i in data.get("indexes", [])],
        )


class SchemaProvider(Protocol):
    async def get_declared_schema(self, table: str) -> DeclaredSchema:
        ...


class StaticSchemaProvider:
    """Serves schemas held in memory."""

    def __init__(self, schemas: dict[str, DeclaredSchema] | None = None):
        self._schemas: dict[str, DeclaredSchema] = dict(schemas or {})

    def register(self, schema: DeclaredSchema) -> None:
        self._schemas[schema.table] = schema

    def tables(self) -> list[str]:
        return list(self._schemas)

    async def get_declared_schema(self, table: str) -> DeclaredSchema:
        try:
            return self._schemas[table]
        except KeyError:
            raise UnknownTableError(table) from None


class YamlSchemaProvider(StaticSchemaProvider):
    """Loads schemas from a YAML document.

    Expected layout::

        tables:
          tabCustomer:
            fields:
              - {fieldname: email, fieldtype: Data, length: 140, unique: true}
            indexes:
              - {columns: [email]}
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        try:
            document = yaml.safe_load(self.path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise SchemaComparisonError(f"Cannot load schema file {self.path}: {e}") from e

        tables = document.get("tables", {})
        if not isinstance(tables, dict):
            raise SchemaComparisonError(f"Schema file {self.path} has no 'tables' mapping")

        super().__init__({
            name: DeclaredSchema.from_dict(name, spec or {}) for name, spec in tables.items()
        })
