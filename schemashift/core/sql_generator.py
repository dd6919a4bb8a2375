"""SQL generation from a SchemaDiff.

SQLite can rename, add and (since 3.35) drop plain columns in place, but
cannot change a column's type, nullability, uniqueness or default. Those
changes go through a rebuild: create a shadow table with the target
schema, copy the rows across with conversion expressions, drop the
original and rename the shadow into place.

Every forward step is generated together with its exact inverse, so the
rollback list is the inverses of the forward steps in reverse order and
is returned ready to execute.
"""

import sqlite3
from dataclasses import dataclass, field
from enum import Enum

from schemashift.core.errors import SQLGenerationError
from schemashift.core.logging import get_logger
from schemashift.core.schema_model import (
    ColumnDefinition,
    IndexDefinition,
    SchemaDiff,
    TableSchema,
)
from schemashift.core.type_mapper import (
    SQL_KEYWORD_DEFAULTS,
    is_length_narrowing,
    is_precision_narrowing,
    is_type_change_destructive,
    normalize_default,
    quote_identifier,
    sql_literal,
    type_family,
    zero_value,
)

logger = get_logger(__name__)

SHADOW_SUFFIX = "__rebuild"

# Primary key added to tables created from scratch when none is declared
DEFAULT_PRIMARY_KEY = ColumnDefinition(name="name", type="varchar(140)", nullable=False, primary_key=True)

_CAST_TARGETS = {
    "integer": "INTEGER",
    "real": "REAL",
    "text": "TEXT",
    "datetime": "TEXT",
    "blob": "BLOB",
}


class StatementKind(str, Enum):
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    RENAME_TABLE = "rename_table"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    RENAME_COLUMN = "rename_column"
    CREATE_INDEX = "create_index"
    DROP_INDEX = "drop_index"
    COPY_DATA = "copy_data"


# Relative cost of each statement kind, in seconds for a small table
STATEMENT_WEIGHTS = {
    StatementKind.COPY_DATA: 5.0,
    StatementKind.CREATE_INDEX: 2.0,
    StatementKind.CREATE_TABLE: 1.0,
    StatementKind.ADD_COLUMN: 0.5,
    StatementKind.DROP_COLUMN: 0.5,
    StatementKind.RENAME_COLUMN: 0.5,
    StatementKind.DROP_TABLE: 0.5,
    StatementKind.DROP_INDEX: 0.2,
    StatementKind.RENAME_TABLE: 0.2,
}


@dataclass
class SQLStatement:
    sql: str
    kind: StatementKind
    table: str
    destructive: bool = False
    comment: str = ""

    def to_dict(self) -> dict:
        return {
            "sql": self.sql,
            "kind": self.kind.value,
            "table": self.table,
            "destructive": self.destructive,
            "comment": self.comment,
        }


@dataclass
class MigrationSQL:
    """Forward and rollback batches for one table."""
    table: str
    forward: list[SQLStatement] = field(default_factory=list)
    rollback: list[SQLStatement] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_time: float = 0.0
    rebuild: bool = False

    @property
    def destructive(self) -> bool:
        return any(s.destructive for s in self.forward)

    @property
    def requires_backup(self) -> bool:
        return self.rebuild or self.destructive

    @property
    def forward_sql(self) -> list[str]:
        return [s.sql for s in self.forward]

    @property
    def rollback_sql(self) -> list[str]:
        return [s.sql for s in self.rollback]

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "forward": [s.to_dict() for s in self.forward],
            "rollback": [s.to_dict() for s in self.rollback],
            "warnings": list(self.warnings),
            "estimated_time": self.estimated_time,
            "destructive": self.destructive,
            "requires_backup": self.requires_backup,
            "rebuild": self.rebuild,
        }


# =============================================================================
# DDL builders (shared with backup restore)
# =============================================================================

def column_sql(column: ColumnDefinition, inline_primary_key: bool = True) -> str:
    parts = [quote_identifier(column.name)]
    if column.type:
        parts.append(column.type)
    if column.primary_key and inline_primary_key:
        parts.append("PRIMARY KEY")
        if column.auto_increment and type_family(column.type) == "integer":
            parts.append("AUTOINCREMENT")
    if not column.nullable:
        parts.append("NOT NULL")
    if column.unique and not column.primary_key:
        parts.append("UNIQUE")
    if column.default is not None:
        parts.append(f"DEFAULT {sql_literal(column.default)}")
    if column.check:
        parts.append(f"CHECK ({column.check})")
    if column.foreign_key:
        fk = column.foreign_key
        parts.append(
            f"REFERENCES {quote_identifier(fk.referenced_table)}({quote_identifier(fk.referenced_column)})"
            f" ON DELETE {fk.on_delete} ON UPDATE {fk.on_update}"
        )
    return " ".join(parts)


def create_table_sql(table: str, columns, unique_constraints=()) -> str:
    columns = list(columns)
    if not columns:
        raise SQLGenerationError(f"Cannot create table '{table}' without columns", table=table)
    pk_columns = [c.name for c in columns if c.primary_key]
    inline = len(pk_columns) == 1
    definitions = [column_sql(c, inline_primary_key=inline) for c in columns]
    if len(pk_columns) > 1:
        definitions.append(f"PRIMARY KEY ({', '.join(quote_identifier(c) for c in pk_columns)})")
    for constraint in unique_constraints:
        definitions.append(f"UNIQUE ({', '.join(quote_identifier(c) for c in constraint)})")
    return f"CREATE TABLE {quote_identifier(table)} ({', '.join(definitions)})"


def create_index_sql(table: str, index: IndexDefinition) -> str:
    unique = "UNIQUE " if index.unique else ""
    columns = ", ".join(quote_identifier(c) for c in index.columns)
    sql = f"CREATE {unique}INDEX {quote_identifier(index.name)} ON {quote_identifier(table)} ({columns})"
    if index.where:
        sql += f" WHERE {index.where}"
    return sql


def drop_index_sql(name: str) -> str:
    return f"DROP INDEX IF EXISTS {quote_identifier(name)}"


def conversion_expression(source: ColumnDefinition, target: ColumnDefinition) -> str:
    """SELECT expression that turns a source value into the target column's shape."""
    expr = quote_identifier(source.name)
    src_family, dst_family = type_family(source.type), type_family(target.type)

    if src_family != dst_family:
        expr = f"CAST({expr} AS {_CAST_TARGETS.get(dst_family, 'TEXT')})"

    if dst_family == "text" and target.length:
        source_length = source.length if src_family == "text" else None
        if is_length_narrowing(source_length, target.length):
            expr = f"substr({expr}, 1, {int(target.length)})"

    if dst_family == "real" and target.precision is not None:
        source_precision = source.precision if src_family == "real" else None
        if is_precision_narrowing(source_precision, target.precision):
            expr = f"round({expr}, {int(target.precision)})"

    if not target.nullable and source.nullable:
        expr = f"COALESCE({expr}, {_fill_value(target)})"

    return expr


def _fill_value(column: ColumnDefinition) -> str:
    if column.default is not None:
        return sql_literal(column.default)
    return zero_value(column.type)


def _new_column_value(column: ColumnDefinition) -> str:
    if column.default is not None:
        return sql_literal(column.default)
    if column.nullable:
        return "NULL"
    return zero_value(column.type)


@dataclass
class _Step:
    forward: list[SQLStatement]
    rollback: list[SQLStatement]


class SQLGenerator:
    """Turns a SchemaDiff into ordered, reversible SQL for SQLite."""

    def __init__(self, supports_drop_column: bool | None = None, shadow_suffix: str = SHADOW_SUFFIX):
        if supports_drop_column is None:
            supports_drop_column = sqlite3.sqlite_version_info >= (3, 35, 0)
        self.supports_drop_column = supports_drop_column
        self.shadow_suffix = shadow_suffix

    def generate(self, diff: SchemaDiff, table: str, baseline: TableSchema | None = None) -> MigrationSQL:
        baseline = baseline or diff.baseline
        if baseline is not None and not baseline.exists:
            return self._generate_create(diff, table)

        result = MigrationSQL(table=table)
        steps: list[_Step] = []
        columns: list[ColumnDefinition] = list(baseline.columns) if baseline else []
        indexes: dict[str, IndexDefinition] = {i.name: i for i in baseline.indexes} if baseline else {}
        constraints: list[tuple[str, ...]] = list(baseline.unique_constraints) if baseline else []
        rename_map: dict[str, str] = {}
        quoted = quote_identifier(table)

        # 1. Renames happen first so every later step sees final names
        for rename in diff.renamed_columns:
            steps.append(_Step(
                forward=[self._stmt(
                    StatementKind.RENAME_COLUMN, table,
                    f"ALTER TABLE {quoted} RENAME COLUMN {quote_identifier(rename.from_name)} "
                    f"TO {quote_identifier(rename.to_name)}",
                    comment=f"Rename column '{rename.from_name}' to '{rename.to_name}'",
                )],
                rollback=[self._stmt(
                    StatementKind.RENAME_COLUMN, table,
                    f"ALTER TABLE {quoted} RENAME COLUMN {quote_identifier(rename.to_name)} "
                    f"TO {quote_identifier(rename.from_name)}",
                    comment=f"Restore column name '{rename.from_name}'",
                )],
            ))
            rename_map[rename.from_name] = rename.to_name
            columns = [c.renamed(rename.to_name) if c.name == rename.from_name else c for c in columns]
            indexes = {
                name: idx.with_columns(rename_map.get(c, c) for c in idx.columns)
                for name, idx in indexes.items()
            }
            constraints = [tuple(rename_map.get(c, c) for c in cons) for cons in constraints]

        # 2. Drop indexes before any of their columns can disappear
        for change in diff.removed_indexes:
            current = indexes.pop(change.name, None) or change.index.with_columns(
                rename_map.get(c, c) for c in change.index.columns
            )
            steps.append(_Step(
                forward=[self._stmt(
                    StatementKind.DROP_INDEX, table, drop_index_sql(change.name),
                    comment=f"Drop index '{change.name}'",
                )],
                rollback=[self._stmt(
                    StatementKind.CREATE_INDEX, table, create_index_sql(table, current),
                    comment=f"Recreate index '{change.name}'",
                )],
            ))

        # 3. Decide what can be done in place
        indexed_columns = {c for idx in indexes.values() for c in idx.columns}
        indexed_columns.update(c for cons in constraints for c in cons)
        in_place_drops, rebuild_drops = [], []
        for change in diff.removed_columns:
            column = next((c for c in columns if c.name == change.fieldname), change.column)
            if self._can_drop_in_place(column, indexed_columns):
                in_place_drops.append(column)
            else:
                rebuild_drops.append(column)
            result.warnings.append(f"Removing column '{change.fieldname}' may result in data loss")
            result.warnings.append(
                f"Rollback re-creates column '{column.name}' but cannot restore its data"
            )

        in_place_adds, rebuild_adds = [], []
        for change in diff.added_columns:
            if self._can_add_in_place(change.column):
                in_place_adds.append(change.column)
            else:
                rebuild_adds.append(change.column)

        for column in in_place_drops:
            steps.append(_Step(
                forward=[self._stmt(
                    StatementKind.DROP_COLUMN, table,
                    f"ALTER TABLE {quoted} DROP COLUMN {quote_identifier(column.name)}",
                    destructive=True,
                    comment=f"Drop column '{column.name}'",
                )],
                rollback=[self._stmt(
                    StatementKind.ADD_COLUMN, table,
                    f"ALTER TABLE {quoted} ADD COLUMN {column_sql(column, inline_primary_key=False)}",
                    comment=f"Re-add column '{column.name}'",
                )],
            ))
            columns = [c for c in columns if c.name != column.name]

        # 4. Add columns before any index that covers them
        for column in in_place_adds:
            steps.append(_Step(
                forward=[self._stmt(
                    StatementKind.ADD_COLUMN, table,
                    f"ALTER TABLE {quoted} ADD COLUMN {column_sql(column, inline_primary_key=False)}",
                    comment=f"Add column '{column.name}'",
                )],
                rollback=[self._stmt(
                    StatementKind.DROP_COLUMN, table,
                    f"ALTER TABLE {quoted} DROP COLUMN {quote_identifier(column.name)}",
                    destructive=True,
                    comment=f"Remove column '{column.name}'",
                )],
            ))
            columns.append(column)

        # 5. Everything SQLite cannot alter in place
        if diff.modified_columns or rebuild_drops or rebuild_adds:
            if baseline is None:
                raise SQLGenerationError(
                    f"A live snapshot of '{table}' is required to rebuild it",
                    table=table,
                )
            before = list(columns)
            columns = self._rebuild_target(before, diff, rebuild_drops, rebuild_adds, result.warnings)
            target_names = {c.name for c in columns}
            surviving = [idx for idx in indexes.values() if set(idx.columns) <= target_names]
            for lost in (idx for idx in indexes.values() if idx not in surviving):
                result.warnings.append(f"Index '{lost.name}' is dropped with its columns during rebuild")
            kept = [cons for cons in constraints if set(cons) <= target_names]
            for lost in (cons for cons in constraints if cons not in kept):
                result.warnings.append(
                    f"Unique constraint on ({', '.join(lost)}) is dropped with its columns during rebuild"
                )

            steps.append(_Step(
                forward=self._rebuild_statements(table, before, columns, surviving, kept),
                rollback=self._rebuild_statements(table, columns, before, list(indexes.values()), constraints),
            ))
            indexes = {idx.name: idx for idx in surviving}
            constraints = kept
            result.rebuild = True
            result.warnings.append(f"Table rebuild required for '{table}'")

        # 6. New indexes last
        for change in diff.added_indexes:
            steps.append(_Step(
                forward=[self._stmt(
                    StatementKind.CREATE_INDEX, table, create_index_sql(table, change.index),
                    comment=f"Create index '{change.name}'",
                )],
                rollback=[self._stmt(
                    StatementKind.DROP_INDEX, table, drop_index_sql(change.name),
                    comment=f"Drop index '{change.name}'",
                )],
            ))
            if change.index.unique:
                result.warnings.append(
                    f"Unique index '{change.name}' creation may fail on existing duplicates"
                )

        result.forward = [s for step in steps for s in step.forward]
        result.rollback = [s for step in reversed(steps) for s in step.rollback]
        result.estimated_time = self.estimate_time(result.forward)

        logger.debug(
            "Generated migration SQL",
            table=table,
            statements=len(result.forward),
            destructive=result.destructive,
            rebuild=result.rebuild,
        )
        return result

    def estimate_time(self, statements: list[SQLStatement]) -> float:
        return round(sum(STATEMENT_WEIGHTS.get(s.kind, 0.1) for s in statements), 2)

    def _generate_create(self, diff: SchemaDiff, table: str) -> MigrationSQL:
        columns = [c.column for c in diff.added_columns]
        if not any(c.primary_key for c in columns) and all(c.name != DEFAULT_PRIMARY_KEY.name for c in columns):
            columns.insert(0, DEFAULT_PRIMARY_KEY)

        forward = [self._stmt(
            StatementKind.CREATE_TABLE, table, create_table_sql(table, columns),
            comment=f"Create table '{table}'",
        )]
        for change in diff.added_indexes:
            forward.append(self._stmt(
                StatementKind.CREATE_INDEX, table, create_index_sql(table, change.index),
                comment=f"Create index '{change.name}'",
            ))

        rollback = [self._stmt(
            StatementKind.DROP_TABLE, table, f"DROP TABLE IF EXISTS {quote_identifier(table)}",
            destructive=True,
            comment=f"Drop table '{table}'",
        )]
        return MigrationSQL(
            table=table,
            forward=forward,
            rollback=rollback,
            warnings=[f"Table '{table}' does not exist and will be created"],
            estimated_time=self.estimate_time(forward),
        )

    def _rebuild_target(self, before, diff, rebuild_drops, rebuild_adds, warnings) -> list[ColumnDefinition]:
        dropped = {c.name for c in rebuild_drops}
        modified = {fc.fieldname: fc for fc in diff.modified_columns}
        target = []
        for column in before:
            if column.name in dropped:
                continue
            change = modified.get(column.name)
            if change is None:
                target.append(column)
                continue

            new_column = change.column or column
            target.append(new_column)

            type_change = change.changes.get("type")
            if type_change:
                warnings.append(
                    f"Column '{column.name}' type conversion from '{type_change.from_value}' "
                    f"to '{type_change.to_value}'"
                )
            if change.destructive:
                warnings.append(f"Modifying column '{column.name}' may result in data loss")
                warnings.append(
                    f"Rollback restores the structure of column '{column.name}' but cannot "
                    f"recover values truncated or converted by this migration"
                )
            if change.requires_data_migration:
                warnings.append(f"Column '{column.name}' requires data migration")
            unique_change = change.changes.get("unique")
            if unique_change and unique_change.to_value:
                warnings.append(
                    f"Unique constraint on column '{column.name}' may fail on existing duplicates"
                )
        target.extend(rebuild_adds)
        return target

    def _rebuild_statements(self, table, source, target, indexes, unique_constraints=()) -> list[SQLStatement]:
        shadow = f"{table}{self.shadow_suffix}"
        source_by_name = {c.name: c for c in source}
        target_names = [quote_identifier(c.name) for c in target]

        lossy = any(c.name not in {t.name for t in target} for c in source)
        expressions = []
        for column in target:
            previous = source_by_name.get(column.name)
            if previous is None:
                expressions.append(_new_column_value(column))
                continue
            expressions.append(conversion_expression(previous, column))
            if is_type_change_destructive(previous.type, column.type):
                lossy = True

        statements = [
            self._stmt(
                StatementKind.CREATE_TABLE, table, create_table_sql(shadow, target, unique_constraints),
                comment=f"Create shadow table for '{table}'",
            ),
            self._stmt(
                StatementKind.COPY_DATA, table,
                f"INSERT INTO {quote_identifier(shadow)} ({', '.join(target_names)}) "
                f"SELECT {', '.join(expressions)} FROM {quote_identifier(table)}",
                destructive=lossy,
                comment=f"Copy rows of '{table}' into shadow table",
            ),
            self._stmt(
                StatementKind.DROP_TABLE, table, f"DROP TABLE {quote_identifier(table)}",
                destructive=True,
                comment=f"Drop original '{table}'",
            ),
            self._stmt(
                StatementKind.RENAME_TABLE, table,
                f"ALTER TABLE {quote_identifier(shadow)} RENAME TO {quote_identifier(table)}",
                comment=f"Move shadow table into place as '{table}'",
            ),
        ]
        for idx in sorted(indexes, key=lambda i: i.name):
            statements.append(self._stmt(
                StatementKind.CREATE_INDEX, table, create_index_sql(table, idx),
                comment=f"Recreate index '{idx.name}'",
            ))
        return statements

    def _can_add_in_place(self, column: ColumnDefinition) -> bool:
        if not self.supports_drop_column:
            # The inverse of an in-place add is an in-place drop
            return False
        if column.primary_key or column.unique:
            return False
        default = normalize_default(column.default)
        if isinstance(default, str) and (default in SQL_KEYWORD_DEFAULTS or default.startswith("(")):
            return False
        if not column.nullable and default is None:
            return False
        if column.foreign_key is not None and default is not None:
            return False
        return True

    def _can_drop_in_place(self, column: ColumnDefinition, indexed_columns: set[str]) -> bool:
        if column.name in indexed_columns or column.foreign_key is not None:
            return False
        return self._can_add_in_place(column)

    @staticmethod
    def _stmt(kind, table, sql, destructive=False, comment="") -> SQLStatement:
        return SQLStatement(sql=sql, kind=kind, table=table, destructive=destructive, comment=comment)
