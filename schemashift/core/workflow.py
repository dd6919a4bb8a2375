"""Migration workflow orchestration.

Composes comparator, generator, validator, backup manager, executor and
history into the user-facing operations:

    workflow = MigrationWorkflow.from_engine(engine, provider)

    plan = await workflow.dry_run("tabCustomer")
    result = await workflow.execute("tabCustomer", MigrationOptions(force=False))
    undone = await workflow.rollback("tabCustomer")

Each attempt walks CREATED -> VALIDATED -> (BACKED_UP) -> EXECUTING ->
{APPLIED | FAILED}. Dry runs stop at VALIDATED. Rollback is a separate
attempt that moves the recorded migration from APPLIED to ROLLED_BACK.

Failures inside an attempt are returned in the result; only programmer
errors (unknown table, a rollback whose preconditions are gone) raise.
"""

import platform
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import sqlalchemy
from sqlalchemy.ext.asyncio import AsyncEngine

from schemashift.config import Settings, get_settings
from schemashift.core.backup import BackupInfo, BackupManager, BackupType
from schemashift.core.comparator import ComparisonOptions, SchemaComparator
from schemashift.core.errors import (
    InvalidStatusTransitionError,
    MigrationBackupError,
    MigrationDependencyError,
    MigrationError,
    SQLGenerationError,
)
from schemashift.core.executor import ExecutionResult, MigrationExecutor
from schemashift.core.history import MigrationHistoryManager
from schemashift.core.introspection import TableInspector
from schemashift.core.logging import get_logger, migration_context
from schemashift.core.rename_detection import RenameStrategy, SimilarityRenameStrategy
from schemashift.core.schema_model import (
    AppliedMigration,
    Migration,
    MigrationHistory,
    MigrationStatus,
    SchemaDiff,
    TableSchema,
)
from schemashift.core.schema_provider import SchemaProvider
from schemashift.core.sql_generator import MigrationSQL, SQLGenerator
from schemashift.core.validator import MigrationValidation, MigrationValidator, MigrationValidatorProtocol

logger = get_logger(__name__)

NO_CHANGES_WARNING = "no schema changes detected"
DRY_RUN_WARNING = "dry run, no changes applied"


class WorkflowState(str, Enum):
    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    BACKED_UP = "BACKED_UP"
    EXECUTING = "EXECUTING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


WORKFLOW_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.CREATED: frozenset({WorkflowState.VALIDATED, WorkflowState.FAILED}),
    WorkflowState.VALIDATED: frozenset({WorkflowState.BACKED_UP, WorkflowState.EXECUTING, WorkflowState.FAILED}),
    WorkflowState.BACKED_UP: frozenset({WorkflowState.EXECUTING, WorkflowState.FAILED}),
    WorkflowState.EXECUTING: frozenset({WorkflowState.APPLIED, WorkflowState.FAILED}),
    WorkflowState.APPLIED: frozenset({WorkflowState.ROLLED_BACK}),
    WorkflowState.FAILED: frozenset(),
    WorkflowState.ROLLED_BACK: frozenset(),
}


@dataclass
class MigrationAttempt:
    """State of one pass through the workflow."""
    migration_id: str
    table: str
    state: WorkflowState = WorkflowState.CREATED
    states: list[str] = field(default_factory=lambda: [WorkflowState.CREATED.value])

    def advance(self, target: WorkflowState) -> None:
        if target not in WORKFLOW_TRANSITIONS[self.state]:
            raise InvalidStatusTransitionError(self.migration_id, self.state.value, target.value)
        self.state = target
        self.states.append(target.value)


@dataclass
class MigrationOptions:
    dry_run: bool = False
    force: bool = False
    backup: bool = True
    backup_type: BackupType = BackupType.FULL
    validate: bool = True
    continue_on_error: bool = False
    use_savepoints: bool | None = None
    timeout: float | None = None
    applied_by: str | None = None
    description: str | None = None
    comparison: ComparisonOptions | None = None


@dataclass
class MigrationResult:
    success: bool
    table: str
    migration_id: str | None = None
    sql: list[str] = field(default_factory=list)
    rollback_sql: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    affected_rows: int | None = None
    execution_time: float = 0.0
    backup_path: str | None = None
    state: WorkflowState = WorkflowState.CREATED
    validation: MigrationValidation | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "table": self.table,
            "migration_id": self.migration_id,
            "sql": self.sql,
            "rollback_sql": self.rollback_sql,
            "warnings": self.warnings,
            "errors": self.errors,
            "affected_rows": self.affected_rows,
            "execution_time": round(self.execution_time, 4),
            "backup_path": self.backup_path,
            "state": self.state.value,
            "validation": self.validation.model_dump(mode="json") if self.validation else None,
            "metadata": self.metadata,
        }


@dataclass
class DryRunResult:
    success: bool
    table: str
    migration_id: str | None = None
    sql: list[str] = field(default_factory=list)
    rollback_sql: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    destructive: bool = False
    requires_backup: bool = False
    estimated_time: float = 0.0
    executed_statements: int = 0
    validation: MigrationValidation | None = None
    diff: SchemaDiff | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "table": self.table,
            "migration_id": self.migration_id,
            "sql": self.sql,
            "rollback_sql": self.rollback_sql,
            "warnings": self.warnings,
            "errors": self.errors,
            "destructive": self.destructive,
            "requires_backup": self.requires_backup,
            "estimated_time": self.estimated_time,
            "executed_statements": self.executed_statements,
            "validation": self.validation.model_dump(mode="json") if self.validation else None,
            "changes": self.diff.summary() if self.diff else {},
        }


@dataclass
class BatchMigrationResult:
    success: bool
    results: dict[str, MigrationResult] = field(default_factory=dict)
    execution_time: float = 0.0

    @property
    def succeeded(self) -> list[str]:
        return [table for table, r in self.results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [table for table, r in self.results.items() if not r.success]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "total": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "execution_time": round(self.execution_time, 4),
            "results": {table: r.to_dict() for table, r in self.results.items()},
        }


# =============================================================================
# Collaborator interfaces
# =============================================================================

class ComparatorProtocol(Protocol):
    async def compare(self, table: str, options: ComparisonOptions | None = None) -> SchemaDiff:
        ...


class GeneratorProtocol(Protocol):
    def generate(self, diff: SchemaDiff, table: str, baseline: TableSchema | None = None) -> MigrationSQL:
        ...


class BackupManagerProtocol(Protocol):
    async def create_backup(
        self,
        table: str,
        backup_type: BackupType = BackupType.FULL,
        column: str | None = None,
        password: str | None = None,
    ) -> BackupInfo:
        ...


class ExecutorProtocol(Protocol):
    async def execute_migration_sql(
        self,
        statements: list[str],
        continue_on_error: bool = False,
        use_savepoints: bool | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        ...

    async def execute_rollback_sql(
        self,
        statements: list[str],
        continue_on_error: bool = False,
        use_savepoints: bool | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        ...


class HistoryProtocol(Protocol):
    async def record_migration(self, migration: AppliedMigration) -> AppliedMigration:
        ...

    async def update_migration_status(
        self, migration_id: str, status: MigrationStatus, error: str | None = None
    ) -> AppliedMigration:
        ...

    async def get_migration_by_id(self, migration_id: str) -> AppliedMigration | None:
        ...

    async def get_latest_migration(self, table: str) -> AppliedMigration | None:
        ...

    async def get_migration_history(self, table: str | None = None, limit: int | None = None) -> MigrationHistory:
        ...


class InspectorProtocol(Protocol):
    async def get_table_schema(self, table: str) -> TableSchema:
        ...

    async def get_server_version(self) -> str:
        ...


# =============================================================================
# Workflow
# =============================================================================

class MigrationWorkflow:
    """Runs migrations end to end for one database."""

    def __init__(
        self,
        comparator: ComparatorProtocol,
        generator: GeneratorProtocol,
        validator: MigrationValidatorProtocol,
        backup_manager: BackupManagerProtocol,
        executor: ExecutorProtocol,
        history: HistoryProtocol,
        inspector: InspectorProtocol,
        settings: Settings | None = None,
    ):
        self.comparator = comparator
        self.generator = generator
        self.validator = validator
        self.backup_manager = backup_manager
        self.executor = executor
        self.history = history
        self.inspector = inspector
        self.settings = settings or get_settings()

    @classmethod
    def from_engine(
        cls,
        engine: AsyncEngine,
        schema_provider: SchemaProvider,
        settings: Settings | None = None,
        rename_strategy: RenameStrategy | None = None,
    ) -> "MigrationWorkflow":
        """Wire the default components to one engine."""
        settings = settings or get_settings()
        inspector = TableInspector(engine)
        return cls(
            comparator=SchemaComparator(
                inspector,
                schema_provider,
                rename_strategy=rename_strategy or SimilarityRenameStrategy(settings.rename_similarity_threshold),
            ),
            generator=SQLGenerator(),
            validator=MigrationValidator(inspector),
            backup_manager=BackupManager(
                engine,
                inspector,
                storage_path=settings.backup_dir,
                retention_days=settings.backup_retention_days,
                compress=settings.backup_compress,
            ),
            executor=MigrationExecutor(engine, use_savepoints=settings.use_savepoints),
            history=MigrationHistoryManager(engine),
            inspector=inspector,
            settings=settings,
        )

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    async def generate_migration(
        self, table: str, options: MigrationOptions | None = None
    ) -> tuple[Migration, MigrationSQL]:
        """Compare and generate without validating or executing anything."""
        options = options or MigrationOptions()
        diff = await self.comparator.compare(table, options.comparison)
        plan = self.generator.generate(diff, table)
        migration = Migration(
            id=str(uuid.uuid4()),
            table_name=table,
            diff=diff,
            sql=plan.forward_sql,
            rollback_sql=plan.rollback_sql,
            destructive=plan.destructive,
            requires_backup=plan.requires_backup,
            description=options.description or self._describe(diff),
            metadata={
                "warnings": list(plan.warnings),
                "estimated_time": plan.estimated_time,
                "rebuild": plan.rebuild,
                "changes": diff.summary(),
            },
        )
        return migration, plan

    async def dry_run(self, table: str, options: MigrationOptions | None = None) -> DryRunResult:
        """Validate and report the plan; the database is never modified."""
        options = options or MigrationOptions()
        migration, plan = await self.generate_migration(table, options)

        with migration_context(migration_id=migration.id, table=table, operation="dry_run"):
            if not migration.diff.has_changes():
                return DryRunResult(
                    success=True,
                    table=table,
                    migration_id=migration.id,
                    warnings=[NO_CHANGES_WARNING],
                    diff=migration.diff,
                )

            warnings = list(plan.warnings)
            errors: list[str] = []
            validation = None
            success = True
            if options.validate:
                validation = await self.validator.validate_migration(migration)
                warnings.extend(w.message for w in validation.warnings)
                success = self._may_proceed(validation, options)
                if success:
                    warnings.extend(validation.error_messages)
                else:
                    errors.extend(validation.error_messages)
            warnings.append(DRY_RUN_WARNING)

            logger.info("Dry run completed", statements=len(migration.sql), success=success)
            return DryRunResult(
                success=success,
                table=table,
                migration_id=migration.id,
                sql=list(migration.sql),
                rollback_sql=list(migration.rollback_sql),
                warnings=warnings,
                errors=errors,
                destructive=migration.destructive,
                requires_backup=migration.requires_backup,
                estimated_time=plan.estimated_time,
                validation=validation,
                diff=migration.diff,
            )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, table: str, options: MigrationOptions | None = None) -> MigrationResult:
        """Bring ``table`` in line with its declared schema."""
        options = options or MigrationOptions()
        if options.dry_run:
            return self._from_dry_run(await self.dry_run(table, options))

        start = time.monotonic()
        migration, plan = await self.generate_migration(table, options)
        attempt = MigrationAttempt(migration.id, table)

        with migration_context(migration_id=migration.id, table=table, operation="execute"):
            if not migration.diff.has_changes():
                logger.info("No schema changes detected")
                return MigrationResult(
                    success=True,
                    table=table,
                    migration_id=migration.id,
                    warnings=[NO_CHANGES_WARNING],
                    execution_time=time.monotonic() - start,
                    state=attempt.state,
                    metadata={"states": attempt.states},
                )

            warnings = list(plan.warnings)
            validation = None
            blocked_by_validation = False
            if options.validate:
                validation = await self.validator.validate_migration(migration)
                warnings.extend(w.message for w in validation.warnings)
                if not self._may_proceed(validation, options):
                    attempt.advance(WorkflowState.FAILED)
                    logger.warning("Migration rejected by validation", errors=len(validation.errors))
                    return self._failed(migration, attempt, warnings, validation.error_messages, start, validation)
                if not validation.valid:
                    warnings.extend(validation.error_messages)
                    blocked_by_validation = not options.force
            attempt.advance(WorkflowState.VALIDATED)

            # Destructive work needs a backup or an explicit force
            backup_path = None
            needs_backup = migration.requires_backup or migration.destructive or blocked_by_validation
            if needs_backup and options.backup:
                try:
                    info = await self.backup_manager.create_backup(table, options.backup_type)
                except MigrationBackupError as e:
                    if not options.force:
                        attempt.advance(WorkflowState.FAILED)
                        return self._failed(migration, attempt, warnings, [f"Backup failed: {e}"], start, validation)
                    warnings.append(f"Backup failed, continuing because force is set: {e}")
                else:
                    backup_path = info.path
                    attempt.advance(WorkflowState.BACKED_UP)
            if needs_backup and backup_path is None and not options.force:
                attempt.advance(WorkflowState.FAILED)
                return self._failed(
                    migration, attempt, warnings,
                    ["Destructive migration requires a backup or force"], start, validation,
                )

            attempt.advance(WorkflowState.EXECUTING)
            timeout = options.timeout if options.timeout is not None else self.settings.migration_timeout
            execution = await self.executor.execute_migration_sql(
                migration.sql,
                continue_on_error=options.continue_on_error,
                use_savepoints=options.use_savepoints,
                timeout=timeout,
            )
            attempt.advance(WorkflowState.APPLIED if execution.success else WorkflowState.FAILED)

            warnings.extend(execution.warnings)
            if not execution.success and backup_path:
                warnings.append(f"Backup available at: {backup_path} for manual recovery")

            post_state = await self.inspector.get_table_schema(table)
            migration.metadata["post_columns"] = post_state.column_names
            migration.metadata["validation_score"] = validation.score if validation else None
            applied = AppliedMigration.from_migration(
                migration,
                applied_at=datetime.now(timezone.utc),
                execution_time=execution.execution_time,
                affected_rows=execution.affected_rows,
                backup_path=backup_path,
                applied_by=options.applied_by or self.settings.applied_by,
                status=MigrationStatus.APPLIED if execution.success else MigrationStatus.FAILED,
                error="; ".join(execution.errors) or None,
                rollback_info={
                    "statements": len(migration.rollback_sql),
                    "difficulty": validation.rollback.difficulty if validation and validation.rollback else None,
                    "backup_path": backup_path,
                },
                environment=await self._environment(),
            )
            await self.history.record_migration(applied)

            if execution.success:
                logger.info("Migration applied", statements=execution.executed_statements, attempt=applied.attempt)
            else:
                logger.error("Migration failed", errors=execution.errors, backup_path=backup_path)

            return MigrationResult(
                success=execution.success,
                table=table,
                migration_id=migration.id,
                sql=list(migration.sql),
                rollback_sql=list(migration.rollback_sql),
                warnings=warnings,
                errors=list(execution.errors),
                affected_rows=execution.affected_rows,
                execution_time=time.monotonic() - start,
                backup_path=backup_path,
                state=attempt.state,
                validation=validation,
                metadata={
                    "states": attempt.states,
                    "attempt": applied.attempt,
                    "executed_statements": execution.executed_statements,
                    "remaining_statements": execution.remaining_statements,
                    "failed_statements": execution.failed_statements,
                    "committed": execution.committed,
                    "timed_out": execution.timed_out,
                    "changes": migration.diff.summary(),
                },
            )

    async def rollback(
        self,
        table: str,
        migration_id: str | None = None,
        force: bool = False,
        options: MigrationOptions | None = None,
    ) -> MigrationResult:
        """Undo the latest (or the given) applied migration of ``table``.

        Raises MigrationDependencyError when the table no longer looks the
        way the migration left it, unless ``force`` is set.
        """
        options = options or MigrationOptions()
        start = time.monotonic()

        if migration_id is not None:
            target = await self.history.get_migration_by_id(migration_id)
        else:
            target = await self.history.get_latest_migration(table)

        if target is None:
            return MigrationResult(
                success=False,
                table=table,
                migration_id=migration_id,
                errors=[f"No applied migration found for '{table}'"],
            )
        if target.status != MigrationStatus.APPLIED:
            return MigrationResult(
                success=False,
                table=table,
                migration_id=target.id,
                errors=[f"Migration {target.id} is {target.status.value}; only APPLIED migrations can be rolled back"],
            )

        with migration_context(migration_id=target.id, table=table, operation="rollback"):
            live = await self.inspector.get_table_schema(table)
            expected = target.metadata.get("post_columns")
            if expected is not None and sorted(live.column_names) != sorted(expected) and not force:
                missing = sorted(set(expected) - set(live.column_names))
                unexpected = sorted(set(live.column_names) - set(expected))
                raise MigrationDependencyError(
                    f"Table '{table}' changed since migration {target.id} was applied",
                    dependencies=missing + unexpected,
                    table=table,
                    migration_id=target.id,
                )

            warnings: list[str] = []
            rollback_sql = list(target.rollback_sql)
            if target.diff.has_changes():
                try:
                    plan = self.generator.generate(target.diff, table, baseline=target.diff.baseline)
                except SQLGenerationError as e:
                    warnings.append(f"Could not regenerate rollback SQL, using recorded statements: {e}")
                else:
                    rollback_sql = plan.rollback_sql
                    warnings.extend(w for w in plan.warnings if w.startswith("Rollback"))

            timeout = options.timeout if options.timeout is not None else self.settings.migration_timeout
            execution = await self.executor.execute_rollback_sql(
                rollback_sql,
                continue_on_error=options.continue_on_error,
                use_savepoints=options.use_savepoints,
                timeout=timeout,
            )
            warnings.extend(execution.warnings)

            if execution.success:
                await self.history.update_migration_status(target.id, MigrationStatus.ROLLED_BACK)
                logger.info("Migration rolled back", statements=execution.executed_statements)
                state = WorkflowState.ROLLED_BACK
            else:
                if target.backup_path:
                    warnings.append(f"Backup available at: {target.backup_path} for manual recovery")
                logger.error("Rollback failed", errors=execution.errors)
                state = WorkflowState.APPLIED

            return MigrationResult(
                success=execution.success,
                table=table,
                migration_id=target.id,
                sql=rollback_sql,
                warnings=warnings,
                errors=list(execution.errors),
                affected_rows=execution.affected_rows,
                execution_time=time.monotonic() - start,
                backup_path=target.backup_path,
                state=state,
                metadata={
                    "executed_statements": execution.executed_statements,
                    "remaining_statements": execution.remaining_statements,
                    "timed_out": execution.timed_out,
                },
            )

    async def execute_batch(
        self,
        tables: list[str],
        options: MigrationOptions | None = None,
        stop_on_error: bool = False,
    ) -> BatchMigrationResult:
        """Migrate several tables one after another."""
        start = time.monotonic()
        batch = BatchMigrationResult(success=True)
        for table in tables:
            try:
                result = await self.execute(table, options)
            except MigrationError as e:
                logger.error("Batch migration failed for table", table=table, error=str(e))
                result = MigrationResult(success=False, table=table, errors=[str(e)])
            batch.results[table] = result
            if not result.success:
                batch.success = False
                if stop_on_error:
                    break
        batch.execution_time = time.monotonic() - start
        logger.info(
            "Batch migration completed",
            tables=len(batch.results),
            succeeded=len(batch.succeeded),
            failed=len(batch.failed),
        )
        return batch

    async def get_history(self, table: str | None = None, limit: int | None = None) -> MigrationHistory:
        return await self.history.get_migration_history(table, limit)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _may_proceed(validation: MigrationValidation, options: MigrationOptions) -> bool:
        if validation.valid or options.force:
            return True
        # Data-loss risks alone are acceptable once a backup exists
        return options.backup and validation.only_data_loss_errors

    def _failed(
        self,
        migration: Migration,
        attempt: MigrationAttempt,
        warnings: list[str],
        errors: list[str],
        start: float,
        validation: MigrationValidation | None,
    ) -> MigrationResult:
        return MigrationResult(
            success=False,
            table=migration.table_name,
            migration_id=migration.id,
            sql=list(migration.sql),
            rollback_sql=list(migration.rollback_sql),
            warnings=warnings,
            errors=errors,
            execution_time=time.monotonic() - start,
            state=attempt.state,
            validation=validation,
            metadata={"states": attempt.states, "changes": migration.diff.summary()},
        )

    @staticmethod
    def _from_dry_run(dry: DryRunResult) -> MigrationResult:
        return MigrationResult(
            success=dry.success,
            table=dry.table,
            migration_id=dry.migration_id,
            sql=dry.sql,
            rollback_sql=dry.rollback_sql,
            warnings=dry.warnings,
            errors=dry.errors,
            state=WorkflowState.VALIDATED if dry.sql else WorkflowState.CREATED,
            validation=dry.validation,
            metadata={"dry_run": True, "executed_statements": 0},
        )

    @staticmethod
    def _describe(diff: SchemaDiff) -> str:
        parts = [f"{count} {name.replace('_', ' ')}" for name, count in diff.summary().items() if count]
        return ", ".join(parts) or "no changes"

    async def _environment(self) -> dict[str, Any]:
        return {
            "python_version": platform.python_version(),
            "platform": platform.platform(),
            "sqlalchemy_version": sqlalchemy.__version__,
            "dialect": "sqlite",
            "sqlite_version": await self.inspector.get_server_version(),
            "hostname": socket.gethostname(),
            "environment": self.settings.environment,
        }
