"""Migration validation.

Static, heuristic analysis of a generated migration:
- Structure (ids, versions, diff consistency)
- SQL shape (balanced parentheses and quotes, required clauses)
- Injection-like patterns
- Data-loss risk per changed column
- Whether the migration can be rolled back

The SQL checks are pattern based and intentionally conservative; they are
not a parser and do not guarantee a statement will run.
"""

import re
from datetime import datetime, timezone
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from schemashift.core.introspection import TableInspector
from schemashift.core.logging import get_logger
from schemashift.core.schema_model import Migration, SchemaDiff
from schemashift.core.type_mapper import (
    extract_length,
    extract_precision,
    is_length_narrowing,
    is_precision_narrowing,
    type_family,
)

logger = get_logger(__name__)

Severity = Literal["low", "medium", "high", "critical"]

# Fixed score deductions, applied once per category
STRUCTURE_PENALTY = 20
SQL_PENALTY = 30
SECURITY_PENALTY = 40
DATA_LOSS_PENALTY = 50
ROLLBACK_PENALTY = 15

VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(-[a-zA-Z0-9]+)?$")

# (from family, to family) -> severity; anything missing is low
TYPE_CONVERSION_RISK: dict[tuple[str, str], Severity] = {
    ("text", "integer"): "high",
    ("text", "datetime"): "high",
    ("real", "integer"): "high",
    ("blob", "integer"): "high",
    ("blob", "real"): "high",
    ("datetime", "integer"): "high",
    ("text", "real"): "medium",
    ("integer", "text"): "medium",
    ("real", "text"): "medium",
    ("datetime", "text"): "medium",
    ("blob", "text"): "medium",
}

INJECTION_PATTERNS = [
    (re.compile(r"['\"];\s*(DROP|DELETE|UPDATE|INSERT)\b", re.IGNORECASE),
     "Quoted value followed by a new statement"),
    (re.compile(r"'[^']*;[^']*--", re.DOTALL),
     "Quote, semicolon and comment combination"),
    (re.compile(r"\bOR\s+'?1'?\s*=\s*'?1'?", re.IGNORECASE),
     "Always-true condition"),
]

STATEMENT_KEYWORDS = ("CREATE", "ALTER", "DROP", "INSERT", "UPDATE", "DELETE", "SELECT", "PRAGMA", "REPLACE", "WITH")

_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")

# Quoted or bare identifier following a keyword
_IDENTIFIER = r"(?:\"((?:[^\"]|\"\")+)\"|`([^`]+)`|([\w$]+))"
_DROP_COLUMN_RE = re.compile(rf"\bDROP\s+COLUMN\s+{_IDENTIFIER}", re.IGNORECASE)
_DROP_TABLE_RE = re.compile(rf"^\s*DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?{_IDENTIFIER}", re.IGNORECASE)
_RENAME_TO_RE = re.compile(rf"^\s*ALTER\s+TABLE\s+.+\s+RENAME\s+TO\s+{_IDENTIFIER}\s*;?\s*$", re.IGNORECASE)


def _identifier_after(pattern: re.Pattern, sql: str) -> str | None:
    match = pattern.search(sql or "")
    if not match:
        return None
    quoted, backticked, bare = match.groups()
    if quoted is not None:
        return quoted.replace('""', '"')
    return backticked if backticked is not None else bare


class ValidationIssue(BaseModel):
    code: str
    message: str
    category: Literal["structure", "sql", "security", "data_loss", "rollback", "performance"]
    severity: Literal["error", "warning", "info"] = "error"
    field: str | None = None
    statement_index: int | None = None
    suggestion: str | None = None


class DataLossRisk(BaseModel):
    type: Literal["column_removal", "type_conversion", "table_rebuild"]
    severity: Severity
    target: str
    description: str
    estimated_affected_records: int | None = None
    mitigation: list[str] = Field(default_factory=list)

    @property
    def blocking(self) -> bool:
        return self.severity in ("high", "critical")


class RollbackIssue(BaseModel):
    type: str
    description: str
    severity: Severity
    resolution: list[str] = Field(default_factory=list)


class RollbackValidation(BaseModel):
    possible: bool
    blockers: list[RollbackIssue] = Field(default_factory=list)
    risks: list[RollbackIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    difficulty: Literal["easy", "medium", "hard", "impossible"] = "easy"


class SQLValidation(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    security_issues: list[ValidationIssue] = Field(default_factory=list)


class MigrationValidation(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    score: int = 100
    validated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data_loss_risks: list[DataLossRisk] = Field(default_factory=list)
    rollback: RollbackValidation | None = None

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]

    @property
    def only_data_loss_errors(self) -> bool:
        return bool(self.errors) and all(e.category == "data_loss" for e in self.errors)


class MigrationValidatorProtocol(Protocol):
    async def validate_migration(self, migration: Migration) -> MigrationValidation:
        ...

    async def check_data_loss_risks(self, diff: SchemaDiff, table: str | None = None) -> list[DataLossRisk]:
        ...


class MigrationValidator:
    """Heuristic validator.

    An inspector is optional; without one, affected-record estimates are
    left empty and no query touches the database.
    """

    def __init__(self, inspector: TableInspector | None = None):
        self.inspector = inspector

    async def validate_migration(self, migration: Migration) -> MigrationValidation:
        structure = self.validate_structure(migration)
        sql = self.validate_sql_statements(migration.sql)
        risks = await self.check_data_loss_risks(migration.diff, migration.table_name)
        rollback = self.validate_rollback_possibility(migration)

        errors = [i for i in structure if i.severity == "error"]
        warnings = [i for i in structure if i.severity != "error"]
        errors.extend(sql.errors)
        errors.extend(sql.security_issues)
        warnings.extend(sql.warnings)

        for risk in risks:
            issue = ValidationIssue(
                code="DATA_LOSS_RISK",
                message=f"{risk.description} ({risk.severity} risk)",
                category="data_loss",
                severity="error" if risk.blocking else "warning",
                field=risk.target,
                suggestion=risk.mitigation[0] if risk.mitigation else None,
            )
            (errors if risk.blocking else warnings).append(issue)

        if not rollback.possible:
            warnings.append(ValidationIssue(
                code="ROLLBACK_NOT_POSSIBLE",
                message="Migration cannot be fully rolled back",
                category="rollback",
                severity="warning",
                suggestion="Create a backup before applying",
            ))

        score = 100
        if any(i.category == "structure" for i in errors):
            score -= STRUCTURE_PENALTY
        if sql.errors:
            score -= SQL_PENALTY
        if sql.security_issues:
            score -= SECURITY_PENALTY
        if any(r.blocking for r in risks):
            score -= DATA_LOSS_PENALTY
        if not rollback.possible:
            score -= ROLLBACK_PENALTY
        score = max(0, score)

        recommendations = []
        if errors:
            recommendations.append("Fix validation errors before proceeding")
        if score < 70:
            recommendations.append("Migration has significant validation issues - review carefully")
        elif score < 90:
            recommendations.append("Migration has minor validation issues - consider review")
        if any(r.blocking for r in risks):
            recommendations.append("Create a backup or pass force to accept the data loss risk")
        recommendations.extend(r for r in rollback.recommendations if r not in recommendations)

        validation = MigrationValidation(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            recommendations=recommendations,
            score=score,
            data_loss_risks=risks,
            rollback=rollback,
        )
        logger.info(
            "Migration validated",
            migration_id=migration.id,
            valid=validation.valid,
            score=score,
            errors=len(errors),
            warnings=len(warnings),
        )
        return validation

    def validate_structure(self, migration: Migration) -> list[ValidationIssue]:
        issues = []
        if not migration.id:
            issues.append(ValidationIssue(
                code="MISSING_ID", message="Migration id is required", category="structure",
            ))
        if not migration.table_name:
            issues.append(ValidationIssue(
                code="MISSING_TABLE", message="Target table is required", category="structure",
            ))
        if not migration.sql:
            issues.append(ValidationIssue(
                code="MISSING_SQL", message="Migration has no forward SQL", category="structure",
            ))
        if not migration.rollback_sql:
            issues.append(ValidationIssue(
                code="MISSING_ROLLBACK",
                message="Migration has no rollback SQL",
                category="structure",
                severity="warning",
                suggestion="Generate rollback statements before applying",
            ))
        if not VERSION_RE.match(migration.version or ""):
            issues.append(ValidationIssue(
                code="INVALID_VERSION",
                message=f"Version '{migration.version}' is not semantic (x.y.z)",
                category="structure",
            ))

        overlap = migration.diff.overlapping_fields()
        if overlap:
            issues.append(ValidationIssue(
                code="CONFLICTING_CHANGES",
                message=f"Fields listed in more than one change category: {', '.join(sorted(overlap))}",
                category="structure",
            ))
        for change in migration.diff.added_indexes:
            if not change.index.columns:
                issues.append(ValidationIssue(
                    code="EMPTY_INDEX",
                    message=f"Index '{change.name}' has no columns",
                    category="structure",
                    field=change.name,
                ))
        return issues

    def validate_sql_statements(self, statements: list[str]) -> SQLValidation:
        result = SQLValidation(valid=True)
        for index, sql in enumerate(statements):
            self._check_syntax(index, sql, result)
            self._check_security(index, sql, result)
            self._check_performance(index, sql, result, statements[index + 1:])
        result.valid = not result.errors and not result.security_issues
        return result

    def _check_syntax(self, index: int, sql: str, result: SQLValidation) -> None:
        def error(code: str, message: str):
            result.errors.append(ValidationIssue(
                code=code, message=f"Statement {index + 1}: {message}", category="sql", statement_index=index,
            ))

        text = (sql or "").strip()
        if not text:
            error("EMPTY_STATEMENT", "empty SQL statement")
            return

        if text.count("'") % 2:
            error("UNBALANCED_QUOTES", "unbalanced single quotes")
            return
        bare = _LITERAL_RE.sub("''", text)
        depth = 0
        for char in bare:
            depth += char == "("
            depth -= char == ")"
            if depth < 0:
                break
        if depth != 0:
            error("UNBALANCED_PARENTHESES", "unbalanced parentheses")

        upper = bare.upper()
        if not upper.startswith(STATEMENT_KEYWORDS):
            error("UNKNOWN_STATEMENT", f"unrecognised statement '{text.split()[0]}'")
            return

        if re.match(r"CREATE\s+(UNIQUE\s+)?INDEX\b", upper):
            if not re.search(r"\bON\b\s+\S+\s*\(", upper):
                error("MISSING_ON_CLAUSE", "CREATE INDEX requires ON <table> (<columns>)")
        elif upper.startswith("ALTER TABLE"):
            if not re.search(r"\b(ADD|DROP|RENAME)\b", upper):
                error("INVALID_ALTER", "ALTER TABLE requires ADD, DROP or RENAME")
            elif re.search(r"\bADD\s+(COLUMN\s+)?\S+\s*$", upper) and "ADD CONSTRAINT" not in upper:
                error("MISSING_COLUMN_DEFINITION", "ADD COLUMN requires a column definition")
        elif upper.startswith("CREATE TABLE"):
            if "(" not in upper and " AS SELECT" not in upper:
                error("MISSING_COLUMNS", "CREATE TABLE requires a column list")
        elif upper.startswith("INSERT"):
            if not re.search(r"\b(SELECT|VALUES)\b", upper):
                error("MISSING_VALUES", "INSERT requires VALUES or SELECT")

    def _check_security(self, index: int, sql: str, result: SQLValidation) -> None:
        for pattern, description in INJECTION_PATTERNS:
            if pattern.search(sql or ""):
                result.security_issues.append(ValidationIssue(
                    code="SQL_INJECTION",
                    message=f"Statement {index + 1}: possible SQL injection ({description})",
                    category="security",
                    statement_index=index,
                    suggestion="Use parameterized values instead of string concatenation",
                ))
                return

        bare = _LITERAL_RE.sub("''", (sql or "").strip()).rstrip(";")
        if ";" in bare:
            result.security_issues.append(ValidationIssue(
                code="STACKED_STATEMENTS",
                message=f"Statement {index + 1}: contains more than one statement",
                category="security",
                statement_index=index,
                suggestion="Split into separate statements",
            ))

    def _check_performance(self, index: int, sql: str, result: SQLValidation, following: list[str]) -> None:
        upper = _LITERAL_RE.sub("''", (sql or "")).upper()

        def warn(code: str, message: str):
            result.warnings.append(ValidationIssue(
                code=code, message=f"Statement {index + 1}: {message}",
                category="performance", severity="warning", statement_index=index,
            ))

        if re.match(r"\s*(UPDATE|DELETE)\b", upper) and " WHERE " not in f" {upper} ":
            warn("UNBOUNDED_WRITE", "UPDATE/DELETE without WHERE touches every row")
        if "SELECT *" in upper and " LIMIT " not in f" {upper} ":
            warn("SELECT_STAR", "SELECT * without LIMIT")
        if (
            re.match(r"\s*DROP\s+TABLE\b", upper)
            and "IF EXISTS" not in upper
            and not self._is_table_swap(_identifier_after(_DROP_TABLE_RE, sql), following)
        ):
            warn("DROP_WITHOUT_IF_EXISTS", "DROP TABLE without IF EXISTS")

    async def check_data_loss_risks(self, diff: SchemaDiff, table: str | None = None) -> list[DataLossRisk]:
        risks = []

        for change in diff.removed_columns:
            risks.append(DataLossRisk(
                type="column_removal",
                severity="high",
                target=change.fieldname,
                description=f"Column '{change.fieldname}' and all its data will be removed",
                estimated_affected_records=await self._estimate(
                    table, lambda t, c=change.fieldname: self.inspector.count_not_null(t, c)
                ),
                mitigation=[
                    "Back up the column before applying",
                    "Confirm no code still reads the column",
                    "Consider renaming instead of removing",
                ],
            ))

        for change in diff.modified_columns:
            type_change = change.changes.get("type")
            if type_change:
                src, dst = type_family(type_change.from_value), type_family(type_change.to_value)
                severity = TYPE_CONVERSION_RISK.get((src, dst), "low")
                risks.append(DataLossRisk(
                    type="type_conversion",
                    severity=severity,
                    target=change.fieldname,
                    description=(
                        f"Column '{change.fieldname}' converts from {type_change.from_value} "
                        f"to {type_change.to_value}"
                    ),
                    estimated_affected_records=await self._estimate(
                        table, lambda t, c=change.fieldname: self.inspector.count_not_null(t, c)
                    ),
                    mitigation=[
                        "Verify every existing value converts cleanly",
                        "Back up the table before applying",
                    ],
                ))

            length = change.changes.get("length")
            if length and is_length_narrowing(length.from_value, length.to_value):
                risks.append(DataLossRisk(
                    type="type_conversion",
                    severity="high",
                    target=change.fieldname,
                    description=(
                        f"Column '{change.fieldname}' narrows from "
                        f"{length.from_value or 'unbounded'} to {length.to_value} characters; "
                        f"longer values are truncated"
                    ),
                    estimated_affected_records=await self._estimate(
                        table,
                        lambda t, c=change.fieldname, n=length.to_value: self.inspector.count_longer_than(t, c, n),
                    ),
                    mitigation=[
                        "Find and shorten values longer than the new limit first",
                        "Back up the column before applying",
                        "Keep the current length if the data needs it",
                    ],
                ))

            precision = change.changes.get("precision")
            if precision and is_precision_narrowing(precision.from_value, precision.to_value):
                risks.append(DataLossRisk(
                    type="type_conversion",
                    severity="high",
                    target=change.fieldname,
                    description=(
                        f"Column '{change.fieldname}' precision narrows from "
                        f"{precision.from_value} to {precision.to_value} decimal places"
                    ),
                    estimated_affected_records=await self._estimate(
                        table,
                        lambda t, c=change.fieldname, p=precision.to_value: self.inspector.count_rounded(t, c, p),
                    ),
                    mitigation=[
                        "Back up the column before applying",
                        "Check which values lose precision",
                    ],
                ))

        needs_rebuild = bool(diff.modified_columns) or any(
            not c.column.nullable and c.column.default is None for c in diff.added_columns
        )
        if needs_rebuild and table:
            risks.append(DataLossRisk(
                type="table_rebuild",
                severity="medium",
                target=table,
                description=f"Table '{table}' is rebuilt: rows are copied into a new table and the original is dropped",
                estimated_affected_records=await self._estimate(table, lambda t: self.inspector.count_rows(t)),
                mitigation=[
                    "Run during a maintenance window",
                    "Back up the table before applying",
                ],
            ))

        return risks

    def validate_rollback_possibility(self, migration: Migration) -> RollbackValidation:
        blockers: list[RollbackIssue] = []
        risks: list[RollbackIssue] = []
        recommendations: list[str] = []
        diff = migration.diff
        has_backup = bool(migration.metadata.get("backup_path"))

        for change in diff.removed_columns:
            blockers.append(RollbackIssue(
                type="data_destruction",
                description=f"Dropped column '{change.fieldname}' cannot be restored with its data",
                severity="high",
                resolution=["Restore the column from a backup"],
            ))

        for change in diff.modified_columns:
            if not change.destructive:
                continue
            issue = RollbackIssue(
                type="irreversible_conversion",
                description=f"Values of '{change.fieldname}' lost to truncation or conversion cannot be recovered",
                severity="high",
                resolution=["Restore the original values from a backup"],
            )
            (risks if has_backup else blockers).append(issue)

        removed = {c.fieldname for c in diff.removed_columns}
        for index, sql in enumerate(migration.sql):
            upper = sql.upper()
            dropped_column = _identifier_after(_DROP_COLUMN_RE, sql)
            if dropped_column and dropped_column not in removed:
                blockers.append(RollbackIssue(
                    type="data_destruction",
                    description=f"Statement {index + 1} drops column '{dropped_column}'",
                    severity="high",
                    resolution=["Restore the column from a backup"],
                ))
            dropped_table = _identifier_after(_DROP_TABLE_RE, sql)
            if dropped_table and not self._is_table_swap(dropped_table, migration.sql[index + 1:]):
                blockers.append(RollbackIssue(
                    type="data_destruction",
                    description=f"Statement {index + 1} drops table '{dropped_table}'",
                    severity="critical",
                    resolution=["Restore the table from a backup"],
                ))
            if "REFERENCES" in upper:
                risks.append(RollbackIssue(
                    type="dependency",
                    description=f"Statement {index + 1} adds a foreign key that other data may come to rely on",
                    severity="medium",
                    resolution=["Check dependent rows before rolling back"],
                ))
            if re.search(r"\bUNIQUE\b", upper):
                risks.append(RollbackIssue(
                    type="constraint",
                    description=f"Statement {index + 1} adds a unique constraint",
                    severity="low",
                    resolution=["Rollback removes the constraint; no data is affected"],
                ))
            if re.match(r"\s*UPDATE\b", upper) and " WHERE " not in f" {upper} ":
                risks.append(RollbackIssue(
                    type="bulk_update",
                    description=f"Statement {index + 1} updates every row",
                    severity="medium",
                    resolution=["Back up the table so previous values can be restored"],
                ))
            if "CASCADE" in upper:
                risks.append(RollbackIssue(
                    type="cascade",
                    description=f"Statement {index + 1} cascades to related tables",
                    severity="high",
                    resolution=["Review related tables before applying"],
                ))

        if migration.sql and not migration.rollback_sql:
            blockers.append(RollbackIssue(
                type="missing_rollback",
                description="No rollback statements were generated",
                severity="high",
                resolution=["Regenerate the migration with rollback SQL"],
            ))

        if blockers:
            difficulty = "impossible"
            recommendations.append("Create a full backup; this migration cannot be undone by rollback SQL")
        elif any(r.severity in ("high", "critical") for r in risks):
            difficulty = "hard"
            recommendations.append("Test the rollback on a copy of the data first")
        elif risks:
            difficulty = "medium"
        else:
            difficulty = "easy"

        return RollbackValidation(
            possible=not blockers,
            blockers=blockers,
            risks=risks,
            recommendations=recommendations,
            difficulty=difficulty,
        )

    @staticmethod
    def _is_table_swap(table: str, following: list[str]) -> bool:
        """A drop followed by renaming another table into its place is a rebuild swap."""
        return table is not None and any(_identifier_after(_RENAME_TO_RE, sql) == table for sql in following)

    async def _estimate(self, table: str | None, query) -> int | None:
        if self.inspector is None or not table:
            return None
        try:
            return await query(table)
        except Exception as e:
            # Estimates are advisory; a missing column or table just leaves them empty
            logger.debug("Affected-record estimate unavailable", table=table, error=str(e))
            return None
