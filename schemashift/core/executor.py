"""Transactional execution of SQL statement batches.

Statements always run in order on a single connection inside one outer
transaction. With savepoints enabled each statement gets its own
``SAVEPOINT`` so a failing statement can be undone on its own.

Failure policies:
- fail-fast (default): stop at the first error and roll back the whole batch
- continue-on-error: record each failure, keep going, commit what succeeded
"""

import time
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemashift.config import get_settings
from schemashift.core.errors import MigrationTimeoutError
from schemashift.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    """Outcome of running one statement batch."""
    success: bool
    affected_rows: int = 0
    execution_time: float = 0.0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    executed_statements: int = 0
    failed_statements: list[dict] = field(default_factory=list)
    remaining_statements: int = 0
    savepoints: list[str] = field(default_factory=list)
    committed: bool = False
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "affected_rows": self.affected_rows,
            "execution_time": round(self.execution_time, 4),
            "warnings": self.warnings,
            "errors": self.errors,
            "executed_statements": self.executed_statements,
            "failed_statements": self.failed_statements,
            "remaining_statements": self.remaining_statements,
            "committed": self.committed,
            "timed_out": self.timed_out,
        }


def _error_text(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class MigrationExecutor:
    """Runs statement batches against the migration engine's database."""

    def __init__(self, engine: AsyncEngine, use_savepoints: bool | None = None):
        self.engine = engine
        self.use_savepoints = get_settings().use_savepoints if use_savepoints is None else use_savepoints

    async def execute_migration_sql(
        self,
        statements: list[str],
        continue_on_error: bool = False,
        use_savepoints: bool | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Apply a forward batch."""
        return await self._execute(statements, "sp", "Migration batch", continue_on_error, use_savepoints, timeout)

    async def execute_rollback_sql(
        self,
        statements: list[str],
        continue_on_error: bool = False,
        use_savepoints: bool | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Apply a rollback batch. Statements must already be in execution order."""
        return await self._execute(
            statements, "rollback_sp", "Rollback batch", continue_on_error, use_savepoints, timeout
        )

    async def _execute(
        self,
        statements: list[str],
        savepoint_prefix: str,
        operation: str,
        continue_on_error: bool,
        use_savepoints: bool | None,
        timeout: float | None,
    ) -> ExecutionResult:
        statements = [s for s in statements if s and s.strip()]
        savepoints = self.use_savepoints if use_savepoints is None else use_savepoints
        result = ExecutionResult(success=False, remaining_statements=len(statements))
        start = time.monotonic()

        if not statements:
            result.success = True
            return result

        logger.info(
            f"{operation} starting",
            statements=len(statements),
            savepoints=savepoints,
            continue_on_error=continue_on_error,
        )

        try:
            async with self.engine.connect() as conn:
                trans = await conn.begin()
                try:
                    await self._run_statements(
                        conn, statements, savepoint_prefix if savepoints else None,
                        operation, continue_on_error, timeout, start, result,
                    )
                    abort = result.timed_out or (result.failed_statements and not continue_on_error)
                    if abort:
                        await trans.rollback()
                    else:
                        await trans.commit()
                        result.committed = True
                except BaseException:
                    await trans.rollback()
                    raise
        except SQLAlchemyError as e:
            # Connection or transaction level failure, not a single statement
            result.errors.append(f"{operation} failed: {_error_text(e)}")
            result.committed = False

        result.execution_time = time.monotonic() - start
        result.success = result.committed and not result.errors

        if result.success:
            logger.info(
                f"{operation} committed",
                statements=result.executed_statements,
                affected_rows=result.affected_rows,
                duration_ms=round(result.execution_time * 1000, 2),
            )
        else:
            logger.error(
                f"{operation} failed",
                executed=result.executed_statements,
                failed=len(result.failed_statements),
                remaining=result.remaining_statements,
                committed=result.committed,
                timed_out=result.timed_out,
            )
        return result

    async def _run_statements(
        self,
        conn: AsyncConnection,
        statements: list[str],
        savepoint_prefix: str | None,
        operation: str,
        continue_on_error: bool,
        timeout: float | None,
        start: float,
        result: ExecutionResult,
    ) -> None:
        total = len(statements)
        for position, sql in enumerate(statements):
            # Advisory: a running statement is never interrupted
            if timeout is not None and time.monotonic() - start > timeout:
                result.timed_out = True
                result.remaining_statements = total - position
                result.errors.append(str(MigrationTimeoutError(timeout, operation)))
                return

            savepoint = f"{savepoint_prefix}_{position}" if savepoint_prefix else None
            if savepoint:
                await conn.exec_driver_sql(f"SAVEPOINT {savepoint}")
                result.savepoints.append(savepoint)

            try:
                cursor = await conn.exec_driver_sql(sql)
            except SQLAlchemyError as e:
                message = f"Statement {position + 1} failed: {_error_text(e)}"
                result.errors.append(message)
                result.failed_statements.append({"index": position, "sql": sql, "error": _error_text(e)})
                logger.warning("Statement failed", index=position, error=_error_text(e))
                if savepoint:
                    await conn.exec_driver_sql(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    await conn.exec_driver_sql(f"RELEASE SAVEPOINT {savepoint}")
                result.remaining_statements = total - position - 1
                if not continue_on_error:
                    return
                continue

            if savepoint:
                await conn.exec_driver_sql(f"RELEASE SAVEPOINT {savepoint}")
            result.executed_statements += 1
            result.remaining_statements = total - position - 1
            if cursor.rowcount and cursor.rowcount > 0:
                result.affected_rows += cursor.rowcount
