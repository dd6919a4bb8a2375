"""Durable migration history.

Every execution attempt becomes one row in ``schema_migration_history``.
Rows are immutable apart from ``status`` and ``error``; status changes
follow MigrationStatus transitions and anything else is rejected.
"""

import asyncio
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from schemashift.core.errors import (
    ErrorCode,
    InvalidStatusTransitionError,
    MigrationConflictError,
    MigrationError,
)
from schemashift.core.logging import get_logger
from schemashift.core.schema_model import (
    AppliedMigration,
    MigrationHistory,
    MigrationStats,
    MigrationStatus,
    SchemaDiff,
)
from schemashift.database import Base
from schemashift.models.migration_history import MigrationHistoryRecord

logger = get_logger(__name__)

# Keys the manager keeps in the metadata column next to caller metadata
_RESERVED_META = ("diff", "description", "requires_backup")


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; they were stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class MigrationHistoryManager:
    """Reads and writes the migration history table.

    The table is created on first use. Each manager tracks that on its
    own, so two managers on two engines never share state.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the history table and its indexes if needed."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all, tables=[MigrationHistoryRecord.__table__])
            self._initialized = True
            logger.debug("Migration history table ready", table=MigrationHistoryRecord.__tablename__)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def record_migration(self, migration: AppliedMigration) -> AppliedMigration:
        """Insert one attempt.

        The attempt number is derived from earlier rows with the same table
        and forward SQL, so retries stay distinguishable.
        """
        await self.initialize()
        async with self._session_maker() as session:
            if await session.get(MigrationHistoryRecord, migration.id) is not None:
                raise MigrationConflictError(
                    f"Migration {migration.id} is already recorded",
                    table=migration.table_name,
                    migration_id=migration.id,
                )

            previous = await session.scalar(
                select(func.count())
                .select_from(MigrationHistoryRecord)
                .where(
                    MigrationHistoryRecord.table_name == migration.table_name,
                    MigrationHistoryRecord.sql == list(migration.sql),
                )
            )
            migration.attempt = (previous or 0) + 1

            session.add(self._to_record(migration))
            await session.commit()

        logger.info(
            "Migration recorded",
            migration_id=migration.id,
            table=migration.table_name,
            status=MigrationStatus(migration.status).value,
            attempt=migration.attempt,
        )
        return migration

    async def update_migration_status(
        self,
        migration_id: str,
        status: MigrationStatus,
        error: str | None = None,
    ) -> AppliedMigration:
        """Move a recorded attempt to a new status."""
        await self.initialize()
        target = MigrationStatus(status)
        async with self._session_maker() as session:
            record = await session.get(MigrationHistoryRecord, migration_id)
            if record is None:
                raise MigrationError(
                    f"Migration {migration_id} not found",
                    code=ErrorCode.MIGRATION_NOT_FOUND,
                    migration_id=migration_id,
                )

            current = MigrationStatus(record.status)
            if not current.can_transition_to(target):
                raise InvalidStatusTransitionError(migration_id, current.value, target.value)

            record.status = target.value
            if error is not None:
                record.error = error
            await session.commit()
            migration = self._from_record(record)

        logger.info(
            "Migration status updated",
            migration_id=migration_id,
            previous=current.value,
            status=target.value,
        )
        return migration

    async def clear_history(self, table: str | None = None) -> int:
        """Delete history rows, for one table or all of them."""
        await self.initialize()
        stmt = delete(MigrationHistoryRecord)
        if table is not None:
            stmt = stmt.where(MigrationHistoryRecord.table_name == table)
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            await session.commit()
        deleted = result.rowcount or 0
        logger.warning("Migration history cleared", table=table, deleted=deleted)
        return deleted

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_migration_history(self, table: str | None = None, limit: int | None = None) -> MigrationHistory:
        """Newest-first history with derived stats."""
        await self.initialize()
        stmt = select(MigrationHistoryRecord).order_by(
            MigrationHistoryRecord.timestamp.desc(),
            MigrationHistoryRecord.attempt.desc(),
        )
        if table is not None:
            stmt = stmt.where(MigrationHistoryRecord.table_name == table)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_maker() as session:
            records = (await session.execute(stmt)).scalars().all()
        migrations = [self._from_record(r) for r in records]

        return MigrationHistory(
            migrations=migrations,
            last_migration=next((m for m in migrations if m.status == MigrationStatus.APPLIED), None),
            pending_migrations=[m for m in migrations if m.status == MigrationStatus.PENDING],
            failed_migrations=[m for m in migrations if m.status == MigrationStatus.FAILED],
            stats=await self.get_migration_stats(table),
        )

    async def get_migration_by_id(self, migration_id: str) -> AppliedMigration | None:
        await self.initialize()
        async with self._session_maker() as session:
            record = await session.get(MigrationHistoryRecord, migration_id)
        return self._from_record(record) if record is not None else None

    async def get_latest_migration(self, table: str) -> AppliedMigration | None:
        """Most recent APPLIED attempt for a table."""
        await self.initialize()
        stmt = (
            select(MigrationHistoryRecord)
            .where(
                MigrationHistoryRecord.table_name == table,
                MigrationHistoryRecord.status == MigrationStatus.APPLIED.value,
            )
            .order_by(MigrationHistoryRecord.timestamp.desc(), MigrationHistoryRecord.attempt.desc())
            .limit(1)
        )
        async with self._session_maker() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
        return self._from_record(record) if record is not None else None

    async def is_migration_applied(self, migration_id: str) -> bool:
        migration = await self.get_migration_by_id(migration_id)
        return migration is not None and migration.status == MigrationStatus.APPLIED

    async def get_pending_migrations(self, table: str | None = None) -> list[AppliedMigration]:
        await self.initialize()
        stmt = (
            select(MigrationHistoryRecord)
            .where(MigrationHistoryRecord.status == MigrationStatus.PENDING.value)
            .order_by(MigrationHistoryRecord.timestamp)
        )
        if table is not None:
            stmt = stmt.where(MigrationHistoryRecord.table_name == table)
        async with self._session_maker() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [self._from_record(r) for r in records]

    async def get_migration_stats(self, table: str | None = None) -> MigrationStats:
        await self.initialize()
        by_status = select(MigrationHistoryRecord.status, func.count()).group_by(MigrationHistoryRecord.status)
        totals = select(
            func.count(),
            func.sum(MigrationHistoryRecord.execution_time),
            func.max(MigrationHistoryRecord.timestamp),
        ).select_from(MigrationHistoryRecord)
        destructive = (
            select(func.count())
            .select_from(MigrationHistoryRecord)
            .where(MigrationHistoryRecord.destructive.is_(True))
        )
        if table is not None:
            by_status = by_status.where(MigrationHistoryRecord.table_name == table)
            totals = totals.where(MigrationHistoryRecord.table_name == table)
            destructive = destructive.where(MigrationHistoryRecord.table_name == table)

        async with self._session_maker() as session:
            counts = {status: count for status, count in (await session.execute(by_status)).all()}
            total, total_time, last_date = (await session.execute(totals)).one()
            destructive_count = await session.scalar(destructive)

        stats = MigrationStats(
            total=total or 0,
            applied=counts.get(MigrationStatus.APPLIED.value, 0),
            failed=counts.get(MigrationStatus.FAILED.value, 0),
            rolled_back=counts.get(MigrationStatus.ROLLED_BACK.value, 0),
            destructive=destructive_count or 0,
            last_migration_date=_as_utc(last_date),
            total_execution_time=float(total_time or 0.0),
        )
        stats.pending = stats.total - stats.applied - stats.failed - stats.rolled_back
        return stats

    # -------------------------------------------------------------------------
    # Mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_record(migration: AppliedMigration) -> MigrationHistoryRecord:
        meta = dict(migration.metadata)
        meta["diff"] = migration.diff.to_dict()
        meta["description"] = migration.description
        meta["requires_backup"] = migration.requires_backup
        return MigrationHistoryRecord(
            id=migration.id,
            table_name=migration.table_name,
            version=migration.version,
            timestamp=migration.timestamp,
            sql=list(migration.sql),
            rollback_sql=list(migration.rollback_sql),
            status=MigrationStatus(migration.status).value,
            applied_by=migration.applied_by,
            applied_at=migration.applied_at,
            execution_time=migration.execution_time,
            affected_rows=migration.affected_rows,
            backup_path=migration.backup_path,
            error=migration.error,
            destructive=migration.destructive,
            attempt=migration.attempt,
            rollback_info=migration.rollback_info,
            environment=migration.environment,
            meta=meta,
        )

    @staticmethod
    def _from_record(record: MigrationHistoryRecord) -> AppliedMigration:
        meta = dict(record.meta or {})
        diff_data = meta.get("diff")
        return AppliedMigration(
            id=record.id,
            table_name=record.table_name,
            diff=SchemaDiff.from_dict(diff_data) if diff_data else SchemaDiff(),
            sql=list(record.sql or []),
            rollback_sql=list(record.rollback_sql or []),
            timestamp=_as_utc(record.timestamp),
            version=record.version,
            destructive=record.destructive,
            requires_backup=bool(meta.get("requires_backup", False)),
            description=meta.get("description"),
            metadata={k: v for k, v in meta.items() if k not in _RESERVED_META},
            applied_at=_as_utc(record.applied_at),
            execution_time=record.execution_time or 0.0,
            affected_rows=record.affected_rows,
            backup_path=record.backup_path,
            applied_by=record.applied_by,
            status=MigrationStatus(record.status),
            error=record.error,
            rollback_info=record.rollback_info,
            environment=record.environment or {},
            attempt=record.attempt,
        )
