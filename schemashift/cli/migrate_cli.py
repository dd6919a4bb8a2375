#!/usr/bin/env python3
"""SchemaShift CLI.

Plans, applies and rolls back schema migrations for SQLite tables declared
in a YAML schema file, and manages the backups taken along the way.

Usage:
    schemashift plan tabCustomer --schema schema.yaml
    schemashift apply tabCustomer --schema schema.yaml
    schemashift rollback tabCustomer
    schemashift history tabCustomer --limit 20
    schemashift backups list --table tabCustomer

Exit Codes:
    0 - Success / nothing to do
    1 - Migration refused or failed
    2 - File not found, unknown table or other engine error
    3 - Invalid arguments
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from schemashift.config import get_settings
from schemashift.core.backup import BackupManager, BackupType
from schemashift.core.errors import MigrationError
from schemashift.core.history import MigrationHistoryManager
from schemashift.core.logging import setup_logging
from schemashift.core.schema_provider import StaticSchemaProvider, YamlSchemaProvider
from schemashift.core.workflow import MigrationOptions, MigrationWorkflow
from schemashift.database import create_engine_for


# =============================================================================
# Terminal Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    @classmethod
    def disable(cls):
        """Disable colors."""
        for attr in ['RED', 'GREEN', 'YELLOW', 'BLUE', 'CYAN', 'BOLD', 'RESET']:
            setattr(cls, attr, "")


def colored(text: str, color: str) -> str:
    return f"{color}{text}{Colors.RESET}"


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def print_messages(warnings: list[str], errors: list[str]) -> None:
    for warning in warnings:
        print(f"  {colored('WARNING', Colors.YELLOW)} {warning}")
    for error in errors:
        print(f"  {colored('ERROR', Colors.RED)} {error}")


def print_sql(statements: list[str], title: str) -> None:
    if not statements:
        return
    print(colored(f"\n{title}:", Colors.BOLD))
    for number, sql in enumerate(statements, 1):
        print(f"  {colored(f'{number:>3}.', Colors.CYAN)} {sql}")


# =============================================================================
# Wiring
# =============================================================================

def _database_url(args) -> str:
    return args.database or get_settings().database_url


def _load_provider(args) -> StaticSchemaProvider:
    if not getattr(args, "schema", None):
        return StaticSchemaProvider()
    schema_path = Path(args.schema)
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")
    return YamlSchemaProvider(schema_path)


def _tables(args, provider: StaticSchemaProvider) -> list[str]:
    """Tables named on the command line, or every table in the schema file."""
    return args.tables or provider.tables()


def _backup_password(args) -> str | None:
    name = getattr(args, "password_env", None)
    if not name:
        return None
    password = os.environ.get(name)
    if not password:
        raise ValueError(f"Environment variable {name} is not set")
    return password


# =============================================================================
# Commands
# =============================================================================

async def cmd_plan(args) -> int:
    """Show what a migration would do."""
    engine = create_engine_for(_database_url(args))
    try:
        provider = _load_provider(args)
        workflow = MigrationWorkflow.from_engine(engine, provider)
        exit_code = 0
        reports = []
        for table in _tables(args, provider):
            dry = await workflow.dry_run(table, MigrationOptions(dry_run=True, backup=not args.no_backup))
            reports.append(dry.to_dict())
            if not dry.success:
                exit_code = 1
            if args.format == "json":
                continue

            status = colored("OK", Colors.GREEN) if dry.success else colored("BLOCKED", Colors.RED)
            print(f"\n{colored(table, Colors.BOLD)} [{status}]")
            if dry.validation is not None:
                print(f"  Validation score: {dry.validation.score}/100")
            if dry.destructive:
                print(f"  {colored('Destructive', Colors.RED)}; backup {'required' if dry.requires_backup else 'advised'}")
            print_sql(dry.sql, "Forward SQL")
            print_sql(dry.rollback_sql, "Rollback SQL")
            print_messages(dry.warnings, dry.errors)
    finally:
        await engine.dispose()

    if args.format == "json":
        print_json(reports)
    return exit_code


async def cmd_apply(args) -> int:
    """Apply migrations."""
    options = MigrationOptions(
        force=args.force,
        backup=not args.no_backup,
        backup_type=BackupType(args.backup_type),
        continue_on_error=args.continue_on_error,
        timeout=args.timeout,
        applied_by=args.applied_by,
    )
    engine = create_engine_for(_database_url(args))
    try:
        provider = _load_provider(args)
        workflow = MigrationWorkflow.from_engine(engine, provider)
        batch = await workflow.execute_batch(_tables(args, provider), options)
    finally:
        await engine.dispose()

    if args.format == "json":
        print_json(batch.to_dict())
        return 0 if batch.success else 1

    for table, result in batch.results.items():
        status = colored("APPLIED", Colors.GREEN) if result.success else colored("FAILED", Colors.RED)
        if result.success and not result.sql:
            status = colored("UP TO DATE", Colors.BLUE)
        print(f"\n{colored(table, Colors.BOLD)} [{status}] in {result.execution_time:.2f}s")
        if result.affected_rows:
            print(f"  Rows affected: {result.affected_rows}")
        if result.backup_path:
            print(f"  Backup: {colored(result.backup_path, Colors.CYAN)}")
        print_sql(result.sql, "Executed SQL" if result.success else "Planned SQL")
        print_messages(result.warnings, result.errors)

    return 0 if batch.success else 1


async def cmd_rollback(args) -> int:
    """Roll back the latest applied migration of a table."""
    engine = create_engine_for(_database_url(args))
    try:
        workflow = MigrationWorkflow.from_engine(engine, _load_provider(args))
        result = await workflow.rollback(args.table, migration_id=args.migration_id, force=args.force)
    finally:
        await engine.dispose()

    if args.format == "json":
        print_json(result.to_dict())
    else:
        status = colored("ROLLED BACK", Colors.GREEN) if result.success else colored("FAILED", Colors.RED)
        print(f"\n{colored(args.table, Colors.BOLD)} [{status}] migration {result.migration_id or '-'}")
        print_sql(result.sql, "Rollback SQL")
        print_messages(result.warnings, result.errors)
    return 0 if result.success else 1


async def cmd_history(args) -> int:
    """Show migration history."""
    engine = create_engine_for(_database_url(args))
    try:
        history = await MigrationHistoryManager(engine).get_migration_history(args.table, args.limit)
    finally:
        await engine.dispose()

    if args.format == "json":
        print_json({
            "migrations": [
                {
                    "id": m.id,
                    "table": m.table_name,
                    "status": m.status.value,
                    "attempt": m.attempt,
                    "timestamp": m.timestamp,
                    "applied_by": m.applied_by,
                    "execution_time": m.execution_time,
                    "destructive": m.destructive,
                    "backup_path": m.backup_path,
                    "error": m.error,
                }
                for m in history.migrations
            ],
            "stats": history.stats.to_dict(),
        })
        return 0

    if not history.migrations:
        print(colored("No migrations recorded.", Colors.BLUE))
        return 0

    status_colors = {
        "APPLIED": Colors.GREEN,
        "FAILED": Colors.RED,
        "ROLLED_BACK": Colors.YELLOW,
    }
    for m in history.migrations:
        status = colored(f"{m.status.value:<11}", status_colors.get(m.status.value, Colors.BLUE))
        when = m.timestamp.strftime("%Y-%m-%d %H:%M:%S") if m.timestamp else "-"
        print(f"{when}  {status}  {colored(m.table_name, Colors.BOLD)}  {m.id}  attempt {m.attempt}")
        if m.error:
            print(f"    {colored(m.error, Colors.RED)}")

    stats = history.stats
    print(
        f"\n{colored('Total', Colors.BOLD)}: {stats.total}  applied: {stats.applied}  "
        f"failed: {stats.failed}  rolled back: {stats.rolled_back}  destructive: {stats.destructive}"
    )
    return 0


async def cmd_backups(args) -> int:
    """Manage backups."""
    settings = get_settings()
    engine = create_engine_for(_database_url(args))
    manager = BackupManager(engine, storage_path=args.backup_dir or settings.backup_dir)
    try:
        if args.backups_command == "list":
            backups = await manager.list_backups(args.table)
            if args.format == "json":
                print_json([b.to_dict() for b in backups])
                return 0
            if not backups:
                print(colored("No backups found.", Colors.BLUE))
            for b in backups:
                flags = ",".join(f for f, on in (("gzip", b.compressed), ("encrypted", b.encrypted)) if on)
                print(
                    f"{b.created_at:%Y-%m-%d %H:%M:%S}  {b.type.value:<11}  {colored(b.table, Colors.BOLD)}  "
                    f"{b.record_count} rows  {b.size} bytes  {flags}"
                )
                print(f"    {colored(b.path, Colors.CYAN)}")
            return 0

        if args.backups_command == "create":
            info = await manager.create_backup(
                args.table, BackupType(args.type), column=args.column, password=_backup_password(args)
            )
            if args.format == "json":
                print_json(info.to_dict())
            else:
                print(f"{colored('Backup created', Colors.GREEN)}: {info.path} ({info.record_count} rows)")
            return 0

        if args.backups_command == "restore":
            result = await manager.restore_from_backup(args.path, password=_backup_password(args))
            if args.format == "json":
                print_json({
                    "success": result.success,
                    "records_restored": result.records_restored,
                    "validated": result.validated,
                    "warnings": result.warnings,
                    "errors": result.errors,
                    "duration_seconds": result.duration_seconds,
                })
            else:
                status = colored("RESTORED", Colors.GREEN) if result.success else colored("FAILED", Colors.RED)
                print(f"[{status}] {result.records_restored} rows in {result.duration_seconds:.2f}s")
                print_messages(result.warnings, result.errors)
            return 0 if result.success else 1

        if args.backups_command == "cleanup":
            deleted = await manager.cleanup_old_backups(args.days)
            if args.format == "json":
                print_json({"deleted": deleted})
            else:
                print(f"Removed {colored(str(len(deleted)), Colors.CYAN)} old backups")
            return 0
    finally:
        await engine.dispose()

    return 3


# =============================================================================
# Parser
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="schemashift",
        description="SchemaShift - keep SQLite tables in line with their declared schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the SQL a migration would run
  schemashift plan tabCustomer --schema schema.yaml

  # Apply it, backing up first when it is destructive
  schemashift apply tabCustomer --schema schema.yaml

  # Undo the last applied migration
  schemashift rollback tabCustomer

  # Restore a backup
  schemashift backups restore ./backups/tabCustomer_20240101T000000000000_full.json
        """
    )

    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--database", help="Database URL (default: SCHEMASHIFT_DATABASE_URL)")
    parser.add_argument("--format", choices=["text", "json"], default="text")
    parser.add_argument("--log-level", help="Logging level (default: SCHEMASHIFT_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # plan command
    plan_parser = subparsers.add_parser("plan", help="Dry run: validate and print the migration SQL")
    plan_parser.add_argument("tables", nargs="*", help="Tables to plan (default: every table in the schema file)")
    plan_parser.add_argument("--schema", required=True, help="YAML schema file")
    plan_parser.add_argument("--no-backup", action="store_true", help="Plan as if no backup will be taken")

    # apply command
    apply_parser = subparsers.add_parser("apply", help="Apply migrations")
    apply_parser.add_argument("tables", nargs="*", help="Tables to migrate (default: every table in the schema file)")
    apply_parser.add_argument("--schema", required=True, help="YAML schema file")
    apply_parser.add_argument("--force", action="store_true", help="Apply despite validation errors")
    apply_parser.add_argument("--no-backup", action="store_true", help="Do not back up before destructive changes")
    apply_parser.add_argument(
        "--backup-type", choices=[t.value for t in BackupType], default=BackupType.FULL.value
    )
    apply_parser.add_argument("--continue-on-error", action="store_true", help="Keep going after a failed statement")
    apply_parser.add_argument("--timeout", type=float, help="Advisory batch timeout in seconds")
    apply_parser.add_argument("--applied-by", help="Recorded as the user who applied the migration")

    # rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Roll back the latest applied migration")
    rollback_parser.add_argument("table", help="Table to roll back")
    rollback_parser.add_argument("--migration-id", help="Roll back this migration instead of the latest")
    rollback_parser.add_argument("--force", action="store_true", help="Roll back even if the table changed since")
    rollback_parser.add_argument("--schema", help="YAML schema file (optional)")

    # history command
    history_parser = subparsers.add_parser("history", help="Show migration history")
    history_parser.add_argument("table", nargs="?", help="Only this table")
    history_parser.add_argument("--limit", type=int, default=50)

    # backups command
    backups_parser = subparsers.add_parser("backups", help="Manage backups")
    backups_parser.add_argument("--backup-dir", help="Backup directory (default: SCHEMASHIFT_BACKUP_DIR)")
    backups_sub = backups_parser.add_subparsers(dest="backups_command")

    list_parser = backups_sub.add_parser("list", help="List backups, newest first")
    list_parser.add_argument("--table", help="Only this table")

    create_parser_ = backups_sub.add_parser("create", help="Back up a table")
    create_parser_.add_argument("table")
    create_parser_.add_argument("--type", choices=[t.value for t in BackupType], default=BackupType.FULL.value)
    create_parser_.add_argument("--column", help="Column for COLUMN backups")
    create_parser_.add_argument("--password-env", help="Encrypt with the password in this environment variable")

    restore_parser = backups_sub.add_parser("restore", help="Restore a backup")
    restore_parser.add_argument("path")
    restore_parser.add_argument("--password-env", help="Decrypt with the password in this environment variable")

    cleanup_parser = backups_sub.add_parser("cleanup", help="Delete backups past retention")
    cleanup_parser.add_argument("--days", type=int, help="Retention in days (default: SCHEMASHIFT_BACKUP_RETENTION_DAYS)")

    return parser


COMMANDS = {
    "plan": cmd_plan,
    "apply": cmd_apply,
    "rollback": cmd_rollback,
    "history": cmd_history,
    "backups": cmd_backups,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "backups" and not args.backups_command:
        parser.print_help()
        return 3

    settings = get_settings()
    setup_logging(json_output=settings.log_json, level=args.log_level or settings.log_level)

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except FileNotFoundError as e:
        print(colored(f"Error: {e}", Colors.RED), file=sys.stderr)
        return 2
    except ValueError as e:
        print(colored(f"Error: {e}", Colors.RED), file=sys.stderr)
        return 3
    except MigrationError as e:
        if args.format == "json":
            print_json({"success": False, "error": e.to_dict()})
        else:
            print(colored(f"Error [{e.code.value}]: {e.message}", Colors.RED), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
