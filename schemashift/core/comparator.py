"""Schema comparison: declared fields against the live table.

The comparator never touches data. It reads live metadata through the
inspector, asks the schema provider for the declaration, and produces a
SchemaDiff whose categories are disjoint by field name.
"""

import re
from dataclasses import dataclass, field, replace

from schemashift.core.introspection import TableInspector
from schemashift.core.logging import get_logger
from schemashift.core.rename_detection import RenameStrategy, SimilarityRenameStrategy
from schemashift.core.schema_model import (
    AttributeChange,
    ColumnChange,
    ColumnDefinition,
    ColumnRename,
    FieldChange,
    IndexChange,
    IndexDefinition,
    SchemaDiff,
    TableSchema,
)
from schemashift.core.schema_provider import DeclaredField, DeclaredIndex, DeclaredSchema, SchemaProvider
from schemashift.core.type_mapper import (
    defaults_equal,
    extract_length,
    extract_precision,
    is_layout_field,
    is_length_narrowing,
    is_lossless_conversion,
    is_precision_narrowing,
    map_field_type,
    normalize_default,
    types_equivalent,
)

logger = get_logger(__name__)

# Columns the framework owns; never reported as removed
SYSTEM_FIELDS = frozenset({
    "name",
    "creation",
    "modified",
    "modified_by",
    "owner",
    "docstatus",
    "idx",
    "parent",
    "parentfield",
    "parenttype",
    "is_active",
})

MAX_INDEX_NAME_LENGTH = 64


@dataclass
class ComparisonOptions:
    case_sensitive: bool = True
    include_system_fields: bool = False
    analyze_data_migration: bool = True
    validate_type_compatibility: bool = True
    ignore_default_values: bool = False
    ignore_length_differences: bool = False
    ignore_precision_differences: bool = False
    type_mappings: dict[str, str] = field(default_factory=dict)


def generate_index_name(table: str, columns, unique: bool = False) -> str:
    prefix = "uk" if unique else "idx"
    raw = f"{prefix}_{table}_{'_'.join(columns)}".lower()
    name = re.sub(r"[^a-z0-9_]", "_", raw)
    return name[:MAX_INDEX_NAME_LENGTH]


def normalize_where(where: str | None) -> str | None:
    if not where:
        return None
    return re.sub(r"\s+", " ", where.strip()).lower()


class SchemaComparator:
    """Produces a SchemaDiff for one table."""

    def __init__(
        self,
        inspector: TableInspector,
        schema_provider: SchemaProvider,
        options: ComparisonOptions | None = None,
        rename_strategy: RenameStrategy | None = None,
        system_fields=SYSTEM_FIELDS,
    ):
        self.inspector = inspector
        self.schema_provider = schema_provider
        self.options = options or ComparisonOptions()
        self.rename_strategy = rename_strategy or SimilarityRenameStrategy()
        self.system_fields = frozenset(system_fields)

    async def compare(self, table: str, options: ComparisonOptions | None = None) -> SchemaDiff:
        """Diff the declared schema for ``table`` against storage.

        Raises UnknownTableError when the provider has no declaration.
        """
        declared = await self.schema_provider.get_declared_schema(table)
        live = await self.inspector.get_table_schema(table)
        diff = self.diff(declared, live, options)
        logger.info("Schema compared", table=table, **diff.summary())
        return diff

    def diff(
        self,
        declared: DeclaredSchema,
        live: TableSchema,
        options: ComparisonOptions | None = None,
    ) -> SchemaDiff:
        options = options or self.options
        norm = self._normalizer(options)
        table = declared.table

        fields = [f for f in declared.fields if not is_layout_field(f.fieldtype)]
        if not options.include_system_fields:
            fields = [f for f in fields if norm(f.fieldname) not in {norm(s) for s in self.system_fields}]

        live_by_name = {norm(c.name): c for c in live.columns}
        declared_names = {norm(f.fieldname) for f in fields}

        diff = SchemaDiff(baseline=live)
        explicit: list[ColumnRename] = []

        for declared_field in fields:
            target = self.field_to_column(declared_field, options)
            current = live_by_name.get(norm(declared_field.fieldname))
            if current is None and live.exists:
                source = self._declared_rename_source(declared_field, live_by_name, declared_names, explicit, norm)
                if source is not None:
                    # Attribute differences surface on the next compare, under the new name
                    explicit.append(ColumnRename(
                        from_name=source.name,
                        to_name=declared_field.fieldname,
                        column=source.renamed(declared_field.fieldname),
                    ))
                    continue
            if current is None:
                diff.added_columns.append(ColumnChange(declared_field.fieldname, target))
                continue
            change = self.compare_field(declared_field, current, options)
            if change is not None:
                diff.modified_columns.append(change)

        if live.exists:
            claimed = {norm(r.from_name) for r in explicit}
            for column in sorted(live.columns, key=lambda c: c.name):
                if norm(column.name) in declared_names or norm(column.name) in claimed:
                    continue
                if self._is_protected(column, norm):
                    continue
                diff.removed_columns.append(ColumnChange(column.name, column, destructive=True))

        # Declared renames are settled; the strategy only sees what is left
        renames = self.rename_strategy.detect(diff.removed_columns, diff.added_columns) if live.exists else []
        if renames:
            renamed_from = {r.from_name for r in renames}
            renamed_to = {r.to_name for r in renames}
            diff.removed_columns = [c for c in diff.removed_columns if c.fieldname not in renamed_from]
            diff.added_columns = [c for c in diff.added_columns if c.fieldname not in renamed_to]
        renames = explicit + renames
        diff.renamed_columns = renames

        rename_map = {norm(r.from_name): r.to_name for r in renames}
        self._compare_indexes(table, declared.indexes, live, rename_map, norm, diff)
        return diff

    def field_to_column(self, declared_field: DeclaredField, options: ComparisonOptions | None = None) -> ColumnDefinition:
        options = options or self.options
        storage_type = map_field_type(
            declared_field.fieldtype,
            length=declared_field.length,
            precision=declared_field.precision,
            custom=options.type_mappings,
        )
        return ColumnDefinition(
            name=declared_field.fieldname,
            type=storage_type,
            nullable=not declared_field.required,
            default=normalize_default(declared_field.default),
            unique=declared_field.unique,
        )

    def compare_field(
        self,
        declared_field: DeclaredField,
        current: ColumnDefinition,
        options: ComparisonOptions | None = None,
    ) -> FieldChange | None:
        """Attribute-level comparison of one column present on both sides."""
        options = options or self.options
        expected = self.field_to_column(declared_field, options)
        # Keep what the declaration cannot express
        expected = replace(
            expected,
            name=current.name,
            primary_key=current.primary_key,
            auto_increment=current.auto_increment,
            foreign_key=current.foreign_key,
            check=current.check,
        )

        changes: dict[str, AttributeChange] = {}
        requires_migration = False
        destructive = False

        if not types_equivalent(current.type, expected.type):
            changes["type"] = AttributeChange(current.type, expected.type)
            requires_migration = True
            if options.validate_type_compatibility and not is_lossless_conversion(current.type, expected.type):
                destructive = True

        if current.nullable != expected.nullable:
            changes["nullable"] = AttributeChange(current.nullable, expected.nullable)
            if not expected.nullable:
                requires_migration = True

        if current.unique != expected.unique:
            changes["unique"] = AttributeChange(current.unique, expected.unique)
            if expected.unique:
                requires_migration = True

        if not options.ignore_default_values and not defaults_equal(current.default, expected.default):
            changes["default"] = AttributeChange(current.default, expected.default)
            if expected.default is None and not expected.nullable:
                destructive = True
        else:
            # Equivalent or ignored defaults survive a rebuild unchanged
            expected = replace(expected, default=current.default)

        if (
            not options.ignore_length_differences
            and expected.family == "text"
            and current.family == "text"
        ):
            live_length, target_length = extract_length(current.type), extract_length(expected.type)
            if target_length is not None and live_length != target_length:
                changes["length"] = AttributeChange(live_length, target_length)
                if is_length_narrowing(live_length, target_length):
                    destructive = True
                    requires_migration = True
            elif target_length is None and live_length is not None:
                # Widening to unbounded text keeps the live type; nothing to do
                expected = replace(expected, type=current.type, length=live_length)

        if (
            not options.ignore_precision_differences
            and expected.family == "real"
            and current.family == "real"
        ):
            live_precision, target_precision = extract_precision(current.type), extract_precision(expected.type)
            if target_precision is not None and live_precision != target_precision:
                changes["precision"] = AttributeChange(live_precision, target_precision)
                if is_precision_narrowing(live_precision, target_precision):
                    destructive = True
                    requires_migration = True
            elif target_precision is None and live_precision is not None:
                expected = replace(expected, type=current.type, precision=live_precision)

        if not changes:
            return None

        if not options.analyze_data_migration:
            requires_migration = False

        return FieldChange(
            fieldname=current.name,
            changes=changes,
            requires_data_migration=requires_migration,
            destructive=destructive,
            column=expected,
            previous=current,
        )

    def _compare_indexes(
        self,
        table: str,
        declared_indexes: list[DeclaredIndex],
        live: TableSchema,
        rename_map: dict[str, str],
        norm,
        diff: SchemaDiff,
    ) -> None:
        live_indexes = [
            idx.with_columns(rename_map.get(norm(c), c) for c in idx.columns)
            for idx in live.indexes
        ]
        unmatched_live = list(live_indexes)

        for declared in declared_indexes:
            target = IndexDefinition(
                name=declared.name or generate_index_name(table, declared.columns, declared.unique),
                columns=tuple(declared.columns),
                unique=declared.unique,
                type=declared.type or "btree",
                where=declared.where,
            )
            match = next(
                (idx for idx in unmatched_live if self._indexes_match(target, idx, declared.type)),
                None,
            )
            if match is not None:
                unmatched_live.remove(match)
            else:
                diff.added_indexes.append(IndexChange(target.name, target))

        for idx in unmatched_live:
            original = next(i for i in live.indexes if i.name == idx.name)
            diff.removed_indexes.append(IndexChange(idx.name, original, destructive=False))

    @staticmethod
    def _indexes_match(declared: IndexDefinition, live: IndexDefinition, declared_type: str | None) -> bool:
        left = [c.strip().lower() for c in declared.columns]
        right = [c.strip().lower() for c in live.columns]
        if left != right or declared.unique != live.unique:
            return False
        # Type only matters when both sides state one
        if declared_type and live.type and declared_type.lower() != live.type.lower():
            return False
        return normalize_where(declared.where) == normalize_where(live.where)

    def _declared_rename_source(self, declared_field, live_by_name, declared_names, explicit, norm):
        """Live column named by ``old_fieldname``, if it is free to be renamed."""
        old_name = declared_field.old_fieldname
        if not old_name or norm(old_name) in declared_names:
            return None
        column = live_by_name.get(norm(old_name))
        if column is None or self._is_protected(column, norm):
            return None
        if any(norm(r.from_name) == norm(column.name) for r in explicit):
            return None
        return column

    def _is_protected(self, column: ColumnDefinition, norm) -> bool:
        if column.primary_key:
            return True
        return norm(column.name) in {norm(s) for s in self.system_fields}

    @staticmethod
    def _normalizer(options: ComparisonOptions):
        if options.case_sensitive:
            return lambda name: name.strip()
        return lambda name: name.strip().lower()
