"""Value types shared across the migration engine."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from schemashift.core.type_mapper import (
    extract_length,
    extract_precision,
    normalize_default,
    type_family,
)

# Attributes a FieldChange may carry
CHANGE_ATTRIBUTES = ("type", "length", "required", "unique", "default", "precision", "nullable")


class MigrationStatus(str, Enum):
    """Lifecycle of a recorded migration attempt."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"

    def can_transition_to(self, target: "MigrationStatus") -> bool:
        return MigrationStatus(target) in STATUS_TRANSITIONS[self]


STATUS_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.RUNNING: frozenset({MigrationStatus.APPLIED, MigrationStatus.FAILED}),
    MigrationStatus.APPLIED: frozenset({MigrationStatus.ROLLED_BACK}),
    MigrationStatus.FAILED: frozenset(),
    MigrationStatus.ROLLED_BACK: frozenset(),
}


@dataclass(frozen=True)
class ForeignKeyDefinition:
    referenced_table: str
    referenced_column: str
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"

    def to_dict(self) -> dict:
        return {
            "referenced_table": self.referenced_table,
            "referenced_column": self.referenced_column,
            "on_delete": self.on_delete,
            "on_update": self.on_update,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ForeignKeyDefinition":
        return cls(**data)


@dataclass(frozen=True)
class ColumnDefinition:
    """One column as it exists (or should exist) in storage."""
    name: str
    type: str
    nullable: bool = True
    default: Any = None
    primary_key: bool = False
    auto_increment: bool = False
    unique: bool = False
    length: int | None = None
    precision: int | None = None
    foreign_key: ForeignKeyDefinition | None = None
    check: str | None = None

    def __post_init__(self):
        # Length and precision always agree with the storage type string
        if self.length is None:
            object.__setattr__(self, "length", extract_length(self.type))
        if self.precision is None:
            object.__setattr__(self, "precision", extract_precision(self.type))

    @property
    def family(self) -> str:
        return type_family(self.type)

    def signature(self) -> tuple:
        """Shape of the column ignoring its name (used for rename matching)."""
        default = normalize_default(self.default)
        return (
            self.family,
            self.length,
            self.precision,
            self.nullable,
            self.unique,
            None if default is None else str(default),
        )

    def renamed(self, name: str) -> "ColumnDefinition":
        return replace(self, name=name)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "nullable": self.nullable,
            "default": self.default,
            "primary_key": self.primary_key,
            "auto_increment": self.auto_increment,
            "unique": self.unique,
            "length": self.length,
            "precision": self.precision,
            "foreign_key": self.foreign_key.to_dict() if self.foreign_key else None,
            "check": self.check,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnDefinition":
        data = dict(data)
        fk = data.pop("foreign_key", None)
        return cls(**data, foreign_key=ForeignKeyDefinition.from_dict(fk) if fk else None)


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    columns: tuple[str, ...]
    unique: bool = False
    type: str = "btree"
    where: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def with_columns(self, columns) -> "IndexDefinition":
        return replace(self, columns=tuple(columns))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "unique": self.unique,
            "type": self.type,
            "where": self.where,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexDefinition":
        return cls(**data)


@dataclass(frozen=True)
class TableSchema:
    """Snapshot of a live table."""
    name: str
    columns: tuple[ColumnDefinition, ...] = ()
    indexes: tuple[IndexDefinition, ...] = ()
    exists: bool = True
    # Table-level UNIQUE constraints spanning more than one column
    unique_constraints: tuple[tuple[str, ...], ...] = ()

    def column(self, name: str) -> ColumnDefinition | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.primary_key]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "indexes": [i.to_dict() for i in self.indexes],
            "exists": self.exists,
            "unique_constraints": [list(c) for c in self.unique_constraints],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TableSchema":
        return cls(
            name=data["name"],
            columns=tuple(ColumnDefinition.from_dict(c) for c in data.get("columns", [])),
            indexes=tuple(IndexDefinition.from_dict(i) for i in data.get("indexes", [])),
            exists=data.get("exists", True),
            unique_constraints=tuple(tuple(c) for c in data.get("unique_constraints", [])),
        )


@dataclass(frozen=True)
class AttributeChange:
    from_value: Any
    to_value: Any

    def to_dict(self) -> dict:
        return {"from": self.from_value, "to": self.to_value}


@dataclass
class FieldChange:
    """Attribute-level differences for one column present on both sides."""
    fieldname: str
    changes: dict[str, AttributeChange]
    requires_data_migration: bool = False
    destructive: bool = False
    column: ColumnDefinition | None = None     # target definition
    previous: ColumnDefinition | None = None   # live definition

    def to_dict(self) -> dict:
        return {
            "fieldname": self.fieldname,
            "changes": {k: v.to_dict() for k, v in self.changes.items()},
            "requires_data_migration": self.requires_data_migration,
            "destructive": self.destructive,
            "column": self.column.to_dict() if self.column else None,
            "previous": self.previous.to_dict() if self.previous else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldChange":
        return cls(
            fieldname=data["fieldname"],
            changes={
                k: AttributeChange(v["from"], v["to"]) for k, v in data.get("changes", {}).items()
            },
            requires_data_migration=data.get("requires_data_migration", False),
            destructive=data.get("destructive", False),
            column=ColumnDefinition.from_dict(data["column"]) if data.get("column") else None,
            previous=ColumnDefinition.from_dict(data["previous"]) if data.get("previous") else None,
        )


@dataclass
class ColumnChange:
    """A column that exists on one side only."""
    fieldname: str
    column: ColumnDefinition
    destructive: bool = False

    def to_dict(self) -> dict:
        return {"fieldname": self.fieldname, "column": self.column.to_dict(), "destructive": self.destructive}

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnChange":
        return cls(
            fieldname=data["fieldname"],
            column=ColumnDefinition.from_dict(data["column"]),
            destructive=data.get("destructive", False),
        )


@dataclass
class ColumnRename:
    from_name: str
    to_name: str
    column: ColumnDefinition
    similarity: float = 1.0

    def to_dict(self) -> dict:
        return {
            "from_name": self.from_name,
            "to_name": self.to_name,
            "column": self.column.to_dict(),
            "similarity": self.similarity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnRename":
        return cls(
            from_name=data["from_name"],
            to_name=data["to_name"],
            column=ColumnDefinition.from_dict(data["column"]),
            similarity=data.get("similarity", 1.0),
        )


@dataclass
class IndexChange:
    name: str
    index: IndexDefinition
    destructive: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "index": self.index.to_dict(), "destructive": self.destructive}

    @classmethod
    def from_dict(cls, data: dict) -> "IndexChange":
        return cls(
            name=data["name"],
            index=IndexDefinition.from_dict(data["index"]),
            destructive=data.get("destructive", False),
        )


@dataclass
class SchemaDiff:
    """Everything that separates the declared schema from the live table.

    A field name appears in at most one of added, removed, modified and
    renamed (renames are keyed by both their old and new name).
    """
    added_columns: list[ColumnChange] = field(default_factory=list)
    removed_columns: list[ColumnChange] = field(default_factory=list)
    modified_columns: list[FieldChange] = field(default_factory=list)
    added_indexes: list[IndexChange] = field(default_factory=list)
    removed_indexes: list[IndexChange] = field(default_factory=list)
    renamed_columns: list[ColumnRename] = field(default_factory=list)
    baseline: TableSchema | None = None

    def has_changes(self) -> bool:
        return any((
            self.added_columns,
            self.removed_columns,
            self.modified_columns,
            self.added_indexes,
            self.removed_indexes,
            self.renamed_columns,
        ))

    @property
    def is_destructive(self) -> bool:
        return bool(self.removed_columns) or any(c.destructive for c in self.modified_columns)

    def field_names(self) -> dict[str, list[str]]:
        """Field names per change category."""
        return {
            "added": [c.fieldname for c in self.added_columns],
            "removed": [c.fieldname for c in self.removed_columns],
            "modified": [c.fieldname for c in self.modified_columns],
            "renamed": [n for r in self.renamed_columns for n in (r.from_name, r.to_name)],
        }

    def overlapping_fields(self) -> set[str]:
        """Names listed in more than one category (should always be empty)."""
        seen: dict[str, str] = {}
        overlap = set()
        for category, names in self.field_names().items():
            for name in set(names):
                if name in seen and seen[name] != category:
                    overlap.add(name)
                seen.setdefault(name, category)
        return overlap

    def summary(self) -> dict[str, int]:
        return {
            "added_columns": len(self.added_columns),
            "removed_columns": len(self.removed_columns),
            "modified_columns": len(self.modified_columns),
            "added_indexes": len(self.added_indexes),
            "removed_indexes": len(self.removed_indexes),
            "renamed_columns": len(self.renamed_columns),
        }

    def to_dict(self) -> dict:
        return {
            "added_columns": [c.to_dict() for c in self.added_columns],
            "removed_columns": [c.to_dict() for c in self.removed_columns],
            "modified_columns": [c.to_dict() for c in self.modified_columns],
            "added_indexes": [i.to_dict() for i in self.added_indexes],
            "removed_indexes": [i.to_dict() for i in self.removed_indexes],
            "renamed_columns": [r.to_dict() for r in self.renamed_columns],
            "baseline": self.baseline.to_dict() if self.baseline else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SchemaDiff":
        return cls(
            added_columns=[ColumnChange.from_dict(c) for c in data.get("added_columns", [])],
            removed_columns=[ColumnChange.from_dict(c) for c in data.get("removed_columns", [])],
            modified_columns=[FieldChange.from_dict(c) for c in data.get("modified_columns", [])],
            added_indexes=[IndexChange.from_dict(i) for i in data.get("added_indexes", [])],
            removed_indexes=[IndexChange.from_dict(i) for i in data.get("removed_indexes", [])],
            renamed_columns=[ColumnRename.from_dict(r) for r in data.get("renamed_columns", [])],
            baseline=TableSchema.from_dict(data["baseline"]) if data.get("baseline") else None,
        )


@dataclass
class Migration:
    """A generated migration; ephemeral until applied."""
    id: str
    table_name: str
    diff: SchemaDiff
    sql: list[str]
    rollback_sql: list[str]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = "1.0.0"
    destructive: bool = False
    requires_backup: bool = False
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AppliedMigration(Migration):
    """A persisted migration attempt."""
    applied_at: datetime | None = None
    execution_time: float = 0.0
    affected_rows: int | None = None
    backup_path: str | None = None
    applied_by: str = "system"
    status: MigrationStatus = MigrationStatus.PENDING
    error: str | None = None
    rollback_info: dict[str, Any] | None = None
    environment: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1

    @classmethod
    def from_migration(cls, migration: Migration, **kwargs) -> "AppliedMigration":
        return cls(
            id=migration.id,
            table_name=migration.table_name,
            diff=migration.diff,
            sql=list(migration.sql),
            rollback_sql=list(migration.rollback_sql),
            timestamp=migration.timestamp,
            version=migration.version,
            destructive=migration.destructive,
            requires_backup=migration.requires_backup,
            description=migration.description,
            metadata=dict(migration.metadata),
            **kwargs,
        )


@dataclass
class MigrationStats:
    total: int = 0
    applied: int = 0
    failed: int = 0
    rolled_back: int = 0
    pending: int = 0
    destructive: int = 0
    last_migration_date: datetime | None = None
    total_execution_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "applied": self.applied,
            "failed": self.failed,
            "rolled_back": self.rolled_back,
            "pending": self.pending,
            "destructive": self.destructive,
            "last_migration_date": self.last_migration_date.isoformat() if self.last_migration_date else None,
            "total_execution_time": round(self.total_execution_time, 4),
        }


@dataclass
class MigrationHistory:
    """Aggregate view built on demand from the history table."""
    migrations: list[AppliedMigration]
    last_migration: AppliedMigration | None
    pending_migrations: list[AppliedMigration]
    failed_migrations: list[AppliedMigration]
    stats: MigrationStats
