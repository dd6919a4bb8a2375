"""Live table metadata read through SQLite PRAGMAs."""

import re

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemashift.core.schema_model import (
    ColumnDefinition,
    ForeignKeyDefinition,
    IndexDefinition,
    TableSchema,
)
from schemashift.core.type_mapper import normalize_default, quote_identifier

_WHERE_RE = re.compile(r"\bWHERE\b(.*)$", re.IGNORECASE | re.DOTALL)


class TableInspector:
    """Reads columns, indexes and foreign keys of live tables."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def table_exists(self, table: str) -> bool:
        async with self.engine.connect() as conn:
            return await self._table_exists(conn, table)

    async def list_tables(self) -> list[str]:
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            return [row[0] for row in result.fetchall()]

    async def get_table_schema(self, table: str) -> TableSchema:
        async with self.engine.connect() as conn:
            return await self.read_schema(conn, table)

    async def read_schema(self, conn: AsyncConnection, table: str) -> TableSchema:
        """Read a table's structure on an existing connection."""
        if not await self._table_exists(conn, table):
            return TableSchema(name=table, exists=False)

        quoted = quote_identifier(table)
        table_sql = await self._object_sql(conn, "table", table) or ""
        autoincrement = "AUTOINCREMENT" in table_sql.upper()

        column_rows = (await conn.exec_driver_sql(f"PRAGMA table_info({quoted})")).fetchall()
        fk_rows = (await conn.exec_driver_sql(f"PRAGMA foreign_key_list({quoted})")).fetchall()
        index_rows = (await conn.exec_driver_sql(f"PRAGMA index_list({quoted})")).fetchall()

        foreign_keys = {}
        for row in fk_rows:
            # id, seq, table, from, to, on_update, on_delete, match
            foreign_keys[row[3]] = ForeignKeyDefinition(
                referenced_table=row[2],
                referenced_column=row[4],
                on_delete=row[6] or "NO ACTION",
                on_update=row[5] or "NO ACTION",
            )

        unique_columns = set()
        unique_constraints = []
        indexes = []
        for row in index_rows:
            # seq, name, unique, origin, partial
            name, unique, origin = row[1], bool(row[2]), row[3]
            info = (await conn.exec_driver_sql(f"PRAGMA index_info({quote_identifier(name)})")).fetchall()
            columns = [r[2] for r in sorted(info, key=lambda r: r[0]) if r[2] is not None]

            if origin == "u":
                if len(columns) == 1:
                    unique_columns.add(columns[0])
                else:
                    unique_constraints.append(tuple(columns))
                continue
            if origin != "c":
                continue

            where = None
            if len(row) > 4 and row[4]:
                index_sql = await self._object_sql(conn, "index", name) or ""
                match = _WHERE_RE.search(index_sql)
                if match:
                    where = match.group(1).strip().rstrip(";").strip()

            indexes.append(IndexDefinition(name=name, columns=tuple(columns), unique=unique, where=where))

        pk_count = sum(1 for row in column_rows if row[5])
        columns = []
        for row in sorted(column_rows, key=lambda r: r[0]):
            # cid, name, type, notnull, dflt_value, pk
            name, col_type, notnull, default, pk = row[1], row[2] or "", bool(row[3]), row[4], bool(row[5])
            columns.append(ColumnDefinition(
                name=name,
                type=col_type.lower(),
                nullable=not notnull and not pk,
                default=normalize_default(default),
                primary_key=pk,
                auto_increment=pk and pk_count == 1 and autoincrement,
                unique=name in unique_columns,
                foreign_key=foreign_keys.get(name),
            ))

        return TableSchema(
            name=table,
            columns=tuple(columns),
            indexes=tuple(sorted(indexes, key=lambda i: i.name)),
            unique_constraints=tuple(sorted(unique_constraints)),
        )

    async def count_rows(self, table: str) -> int:
        async with self.engine.connect() as conn:
            if not await self._table_exists(conn, table):
                return 0
            result = await conn.exec_driver_sql(f"SELECT COUNT(*) FROM {quote_identifier(table)}")
            return int(result.scalar() or 0)

    async def count_not_null(self, table: str, column: str) -> int:
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                f"SELECT COUNT(*) FROM {quote_identifier(table)} "
                f"WHERE {quote_identifier(column)} IS NOT NULL"
            )
            return int(result.scalar() or 0)

    async def count_longer_than(self, table: str, column: str, length: int) -> int:
        """Rows whose value would be truncated to ``length`` characters."""
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                f"SELECT COUNT(*) FROM {quote_identifier(table)} "
                f"WHERE length({quote_identifier(column)}) > ?",
                (int(length),),
            )
            return int(result.scalar() or 0)

    async def count_rounded(self, table: str, column: str, precision: int) -> int:
        """Rows whose value changes when rounded to ``precision`` places."""
        quoted = quote_identifier(column)
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql(
                f"SELECT COUNT(*) FROM {quote_identifier(table)} "
                f"WHERE {quoted} IS NOT NULL AND round({quoted}, ?) != {quoted}",
                (int(precision),),
            )
            return int(result.scalar() or 0)

    async def get_server_version(self) -> str:
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql("SELECT sqlite_version()")
            return str(result.scalar())

    async def _table_exists(self, conn: AsyncConnection, table: str) -> bool:
        result = await conn.exec_driver_sql(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return result.first() is not None

    async def _object_sql(self, conn: AsyncConnection, kind: str, name: str) -> str | None:
        result = await conn.exec_driver_sql(
            "SELECT sql FROM sqlite_master WHERE type = ? AND name = ?",
            (kind, name),
        )
        row = result.first()
        return row[0] if row else None
