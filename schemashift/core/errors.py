"""Migration error taxonomy.

Every error raised by the engine derives from ``MigrationError`` and carries
a stable ``code`` plus the table and attempt id it concerns, so callers can
serialize failures with ``to_dict()`` without string matching.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes."""
    MIGRATION_ERROR = "MIGRATION_ERROR"
    MIGRATION_VALIDATION_FAILED = "MIGRATION_VALIDATION_FAILED"
    SCHEMA_VALIDATION_FAILED = "SCHEMA_VALIDATION_FAILED"
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    COLUMN_NOT_FOUND = "COLUMN_NOT_FOUND"
    INDEX_NOT_FOUND = "INDEX_NOT_FOUND"
    TYPE_CONVERSION_FAILED = "TYPE_CONVERSION_FAILED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    FOREIGN_KEY_VIOLATION = "FOREIGN_KEY_VIOLATION"
    DATA_LOSS_RISK = "DATA_LOSS_RISK"
    MIGRATION_TIMEOUT = "MIGRATION_TIMEOUT"
    SQL_EXECUTION_ERROR = "SQL_EXECUTION_ERROR"
    SQL_GENERATION_FAILED = "SQL_GENERATION_FAILED"
    BACKUP_FAILED = "BACKUP_FAILED"
    RESTORE_FAILED = "RESTORE_FAILED"
    BACKUP_INTEGRITY_FAILED = "BACKUP_INTEGRITY_FAILED"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    MIGRATION_CONFLICT = "MIGRATION_CONFLICT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    MIGRATION_NOT_FOUND = "MIGRATION_NOT_FOUND"


class MigrationError(Exception):
    """Base exception for schema migration failures."""

    default_code = ErrorCode.MIGRATION_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | str | None = None,
        table: str | None = None,
        migration_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code) if code is not None else self.default_code
        self.table = table
        self.migration_id = migration_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "table": self.table,
            "migration_id": self.migration_id,
            "details": self.details,
        }


class SchemaComparisonError(MigrationError):
    """Live and declared schema could not be compared."""
    default_code = ErrorCode.SCHEMA_VALIDATION_FAILED


class UnknownTableError(SchemaComparisonError):
    """The schema provider has no declaration for the requested table."""
    default_code = ErrorCode.TABLE_NOT_FOUND

    def __init__(self, table: str):
        super().__init__(f"No declared schema for table '{table}'", table=table)


class SQLGenerationError(MigrationError):
    """A diff could not be turned into SQL."""
    default_code = ErrorCode.SQL_GENERATION_FAILED


class MigrationValidationError(MigrationError):
    """Validation produced blocking errors."""
    default_code = ErrorCode.MIGRATION_VALIDATION_FAILED

    def __init__(
        self,
        errors: list[str],
        table: str | None = None,
        migration_id: str | None = None,
        score: int | None = None,
    ):
        message = f"Migration validation failed: {'; '.join(errors)}" if errors else "Migration validation failed"
        super().__init__(
            message,
            table=table,
            migration_id=migration_id,
            details={"errors": list(errors), "score": score},
        )
        self.errors = list(errors)


class DataLossRiskError(MigrationError):
    """Blocking data-loss risks were found and no safety net was provided."""
    default_code = ErrorCode.DATA_LOSS_RISK

    def __init__(self, risks: list[dict[str, Any]], table: str | None = None, migration_id: str | None = None):
        targets = ", ".join(r.get("target", "?") for r in risks)
        super().__init__(
            f"Migration carries data loss risk for: {targets}",
            table=table,
            migration_id=migration_id,
            details={"risks": risks},
        )
        self.risks = risks


class MigrationExecutionError(MigrationError):
    """A statement in the batch failed."""
    default_code = ErrorCode.SQL_EXECUTION_ERROR

    def __init__(
        self,
        message: str,
        statement: str | None = None,
        executed: int = 0,
        remaining: int = 0,
        table: str | None = None,
        migration_id: str | None = None,
    ):
        super().__init__(
            message,
            table=table,
            migration_id=migration_id,
            details={"statement": statement, "executed": executed, "remaining": remaining},
        )
        self.statement = statement
        self.executed = executed
        self.remaining = remaining


class MigrationRollbackError(MigrationError):
    """Rollback of an applied migration failed."""
    default_code = ErrorCode.ROLLBACK_FAILED


class MigrationTimeoutError(MigrationError):
    """A batch ran past its advisory timeout."""
    default_code = ErrorCode.MIGRATION_TIMEOUT

    def __init__(self, timeout: float, operation: str, table: str | None = None, migration_id: str | None = None):
        super().__init__(
            f"{operation} exceeded timeout of {timeout:g}s",
            table=table,
            migration_id=migration_id,
            details={"timeout": timeout, "operation": operation},
        )
        self.timeout = timeout


class MigrationBackupError(MigrationError):
    """A backup could not be written."""
    default_code = ErrorCode.BACKUP_FAILED

    def __init__(self, message: str, backup_path: str | None = None, table: str | None = None):
        super().__init__(message, table=table, details={"backup_path": backup_path})
        self.backup_path = backup_path


class MigrationRestoreError(MigrationError):
    """A backup could not be restored."""
    default_code = ErrorCode.RESTORE_FAILED

    def __init__(self, message: str, backup_path: str | None = None, table: str | None = None):
        super().__init__(message, table=table, details={"backup_path": backup_path})
        self.backup_path = backup_path


class BackupIntegrityError(MigrationRestoreError):
    """Stored checksum does not match the backup file."""
    default_code = ErrorCode.BACKUP_INTEGRITY_FAILED


class MigrationDependencyError(MigrationError):
    """An operation depends on state that is no longer present."""
    default_code = ErrorCode.DEPENDENCY_ERROR

    def __init__(
        self,
        message: str,
        dependencies: list[str] | None = None,
        table: str | None = None,
        migration_id: str | None = None,
    ):
        super().__init__(
            message,
            table=table,
            migration_id=migration_id,
            details={"dependencies": dependencies or []},
        )
        self.dependencies = dependencies or []


class MigrationConflictError(MigrationError):
    """The request conflicts with recorded migration state."""
    default_code = ErrorCode.MIGRATION_CONFLICT


class InvalidStatusTransitionError(MigrationConflictError):
    """A history row was asked to move to a status it cannot reach."""
    default_code = ErrorCode.INVALID_STATUS_TRANSITION

    def __init__(self, migration_id: str, current: str, target: str):
        super().__init__(
            f"Cannot transition migration {migration_id} from {current} to {target}",
            migration_id=migration_id,
            details={"from": current, "to": target},
        )
        self.current = current
        self.target = target
