"""Table backup and restore.

Backups are single JSON documents::

    {"info": {...BackupInfo...}, "data": {...structure and/or rows...}}

Integrity:
- The info block embeds a SHA-256 checksum of the exact file bytes,
  computed with the checksum value itself zeroed out
- The embedded size is the final file size
- Every restore recomputes the checksum first and refuses on mismatch

Optional protection:
- gzip compression of the data block
- AES-256-GCM encryption of the data block with a Scrypt-derived key

When either is enabled the data block is stored as a base64 string.
"""

import asyncio
import base64
import gzip
import hashlib
import json
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from schemashift.config import get_settings
from schemashift.core.errors import BackupIntegrityError, MigrationBackupError, MigrationRestoreError
from schemashift.core.introspection import TableInspector
from schemashift.core.logging import get_logger, log_operation
from schemashift.core.schema_model import TableSchema
from schemashift.core.sql_generator import column_sql, create_index_sql, create_table_sql
from schemashift.core.type_mapper import quote_identifier

logger = get_logger(__name__)

# Backup format version
BACKUP_FORMAT_VERSION = "1.0.0"

CHECKSUM_PLACEHOLDER = "0" * 64
_CHECKSUM_FIELD_RE = re.compile(rb'"checksum": "([0-9a-f]{64})"')

# Rows per executemany call during restore
RESTORE_BATCH_SIZE = 500


class BackupType(str, Enum):
    FULL = "FULL"
    COLUMN = "COLUMN"
    SCHEMA = "SCHEMA"
    INCREMENTAL = "INCREMENTAL"


@dataclass
class BackupInfo:
    """Metadata about a backup."""
    id: str
    table: str
    type: BackupType
    created_at: datetime
    path: str
    size: int = 0
    checksum: str = ""
    record_count: int = 0
    compressed: bool = False
    encrypted: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        # checksum precedes every free-form field in the serialized document
        return {
            "id": self.id,
            "table": self.table,
            "type": self.type.value,
            "created_at": self.created_at.isoformat(),
            "checksum": self.checksum,
            "size": self.size,
            "path": self.path,
            "record_count": self.record_count,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupInfo":
        return cls(
            id=data["id"],
            table=data["table"],
            type=BackupType(data["type"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            path=data.get("path", ""),
            size=data.get("size", 0),
            checksum=data.get("checksum", ""),
            record_count=data.get("record_count", 0),
            compressed=data.get("compressed", False),
            encrypted=data.get("encrypted", False),
            metadata=data.get("metadata", {}),
        )


@dataclass
class RestoreResult:
    """Result of a restore operation."""
    success: bool
    backup: BackupInfo | None
    records_restored: int
    duration_seconds: float
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    validated: bool = False


def _json_default(value: Any):
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: dict):
    if len(obj) == 1 and "__bytes__" in obj:
        return base64.b64decode(obj["__bytes__"])
    return obj


def compute_checksum(content: bytes) -> tuple[str, str]:
    """Return (stored checksum, recomputed checksum) for a backup file."""
    match = _CHECKSUM_FIELD_RE.search(content)
    if not match:
        raise BackupIntegrityError("Backup has no embedded checksum")
    stored = match.group(1).decode("ascii")
    zeroed = content[:match.start(1)] + CHECKSUM_PLACEHOLDER.encode("ascii") + content[match.end(1):]
    return stored, hashlib.sha256(zeroed).hexdigest()


class BackupManager:
    """Creates and restores per-table backups.

    Usage:
        manager = BackupManager(engine, storage_path="./backups")

        info = await manager.create_backup("tabCustomer")
        result = await manager.restore_from_backup(info.path)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        inspector: TableInspector | None = None,
        storage_path: str | Path | None = None,
        retention_days: int | None = None,
        compress: bool | None = None,
        password: str | None = None,
        naming_pattern: str = "{table}_{timestamp}_{type}",
        scrypt_n: int = 2**17,
    ):
        settings = get_settings()
        self.engine = engine
        self.inspector = inspector or TableInspector(engine)
        self.storage_path = Path(storage_path or settings.backup_dir)
        self.retention_days = retention_days if retention_days is not None else settings.backup_retention_days
        self.compress = settings.backup_compress if compress is None else compress
        self.naming_pattern = naming_pattern
        self._password = password
        self._scrypt_n = scrypt_n
        self._salt_size = 16  # 128-bit salt for key derivation
        self._nonce_size = 12  # 96-bit nonce for AES-GCM

    # -------------------------------------------------------------------------
    # Encryption
    # -------------------------------------------------------------------------

    def _derive_backup_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using Scrypt."""
        kdf = Scrypt(
            salt=salt,
            length=32,  # 256-bit key
            n=self._scrypt_n,
            r=8,
            p=1,
        )
        return kdf.derive(password.encode())

    def _encrypt_data(self, data: bytes, password: str) -> bytes:
        """Encrypt data with password-derived key.

        Format: salt (16 bytes) || nonce (12 bytes) || ciphertext
        """
        salt = secrets.token_bytes(self._salt_size)
        nonce = secrets.token_bytes(self._nonce_size)
        key = self._derive_backup_key(password, salt)
        ciphertext = AESGCM(key).encrypt(nonce, data, associated_data=b"schemashift-backup")
        return salt + nonce + ciphertext

    def _decrypt_data(self, encrypted: bytes, password: str) -> bytes:
        if len(encrypted) < self._salt_size + self._nonce_size + 16:
            raise MigrationRestoreError("Invalid encrypted data: too short")

        salt = encrypted[:self._salt_size]
        nonce = encrypted[self._salt_size:self._salt_size + self._nonce_size]
        ciphertext = encrypted[self._salt_size + self._nonce_size:]

        key = self._derive_backup_key(password, salt)
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, associated_data=b"schemashift-backup")
        except InvalidTag as e:
            raise MigrationRestoreError("Decryption failed - wrong password or corrupted backup") from e

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def _encode_data(self, data: dict, password: str | None) -> dict | str:
        if not self.compress and not password:
            return data
        raw = json.dumps(data, default=_json_default).encode("utf-8")
        if self.compress:
            raw = gzip.compress(raw)
        if password:
            raw = self._encrypt_data(raw, password)
        return base64.b64encode(raw).decode("ascii")

    def _decode_data(self, info: BackupInfo, block: dict | str, password: str | None) -> dict:
        if isinstance(block, dict):
            return block
        raw = base64.b64decode(block)
        if info.encrypted:
            password = password or self._password
            if not password:
                raise MigrationRestoreError("Backup is encrypted; a password is required", backup_path=info.path)
            raw = self._decrypt_data(raw, password)
        if info.compressed:
            raw = gzip.decompress(raw)
        return json.loads(raw, object_hook=_json_object_hook)

    @staticmethod
    def _serialize(info: BackupInfo, data: dict | str) -> bytes:
        document = {"info": info.to_dict(), "data": data}
        return json.dumps(document, indent=2, default=_json_default).encode("utf-8")

    def _seal(self, info: BackupInfo, data: dict | str) -> bytes:
        """Serialize with a checksum that matches the written bytes exactly."""
        info.checksum = CHECKSUM_PLACEHOLDER
        info.size = 0
        content = self._serialize(info, data)
        # The size field is part of the file, so iterate until it describes itself
        while len(content) != info.size:
            info.size = len(content)
            content = self._serialize(info, data)

        digest = hashlib.sha256(content).hexdigest()
        placeholder = f'"checksum": "{CHECKSUM_PLACEHOLDER}"'.encode("ascii")
        info.checksum = digest
        return content.replace(placeholder, f'"checksum": "{digest}"'.encode("ascii"), 1)

    def _open(self, content: bytes, path: str, password: str | None) -> tuple[BackupInfo, dict]:
        stored, actual = compute_checksum(content)
        if stored != actual:
            raise BackupIntegrityError(
                f"Backup integrity check failed: checksum mismatch for {path}",
                backup_path=path,
            )
        try:
            document = json.loads(content, object_hook=_json_object_hook)
            info = BackupInfo.from_dict(document["info"])
        except (ValueError, KeyError) as e:
            raise MigrationRestoreError(f"Backup {path} is not a valid document: {e}", backup_path=path) from e
        if info.size and info.size != len(content):
            raise BackupIntegrityError(
                f"Backup integrity check failed: size mismatch for {path}",
                backup_path=path,
            )
        return info, self._decode_data(info, document["data"], password)

    # -------------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------------

    async def create_backup(
        self,
        table: str,
        backup_type: BackupType = BackupType.FULL,
        column: str | None = None,
        password: str | None = None,
    ) -> BackupInfo:
        """Write a backup of ``table`` and return its info.

        Raises MigrationBackupError when nothing usable could be written.
        """
        backup_type = BackupType(backup_type)
        if backup_type == BackupType.COLUMN and not column:
            raise MigrationBackupError("Column backups need a column name", table=table)

        password = password or self._password
        created_at = datetime.now(timezone.utc)
        backup_id = str(uuid.uuid4())
        path = self.storage_path / f"{self._file_stem(table, created_at, backup_type)}.json"
        logger.info("Starting backup", table=table, type=backup_type.value, path=str(path))

        try:
            async with self.engine.connect() as conn:
                schema = await self.inspector.read_schema(conn, table)
                if not schema.exists:
                    raise MigrationBackupError(f"Table '{table}' does not exist", table=table)
                data, record_count = await self._export(conn, schema, backup_type, column)
        except SQLAlchemyError as e:
            logger.error("Backup export failed", table=table, error=str(e))
            raise MigrationBackupError(f"Backup of '{table}' failed: {e}", backup_path=str(path), table=table) from e

        metadata = {
            "format_version": BACKUP_FORMAT_VERSION,
            "database": "sqlite",
            "column_count": len(schema.columns),
            "index_count": len(schema.indexes),
        }
        if column:
            metadata["column"] = column
        if backup_type == BackupType.INCREMENTAL:
            previous = await self.list_backups(table)
            metadata["base_backup_id"] = previous[0].id if previous else None

        info = BackupInfo(
            id=backup_id,
            table=table,
            type=backup_type,
            created_at=created_at,
            path=str(path),
            record_count=record_count,
            compressed=self.compress,
            encrypted=bool(password),
            metadata=metadata,
        )
        content = self._seal(info, self._encode_data(data, password))

        try:
            await asyncio.to_thread(self._write, path, content)
        except OSError as e:
            logger.error("Backup write failed", table=table, path=str(path), error=str(e))
            raise MigrationBackupError(f"Cannot write backup {path}: {e}", backup_path=str(path), table=table) from e

        logger.info(
            "Backup created",
            table=table,
            path=str(path),
            records=record_count,
            size_bytes=info.size,
        )
        return info

    async def create_column_backup(self, table: str, column: str, password: str | None = None) -> BackupInfo:
        return await self.create_backup(table, BackupType.COLUMN, column=column, password=password)

    async def _export(
        self,
        conn: AsyncConnection,
        schema: TableSchema,
        backup_type: BackupType,
        column: str | None,
    ) -> tuple[dict, int]:
        quoted = quote_identifier(schema.name)
        data: dict[str, Any] = {"structure": schema.to_dict()}

        if backup_type == BackupType.SCHEMA:
            return data, 0

        if backup_type == BackupType.COLUMN:
            if schema.column(column) is None:
                raise MigrationBackupError(f"Column '{column}' does not exist in '{schema.name}'", table=schema.name)
            result = await conn.exec_driver_sql(f"SELECT rowid, {quote_identifier(column)} FROM {quoted}")
            data["column"] = column
            data["records"] = [{"rowid": row[0], "value": row[1]} for row in result.fetchall()]
            return data, len(data["records"])

        result = await conn.exec_driver_sql(f"SELECT * FROM {quoted}")
        data["records"] = [dict(row._mapping) for row in result.fetchall()]
        return data, len(data["records"])

    def _file_stem(self, table: str, created_at: datetime, backup_type: BackupType) -> str:
        safe_table = re.sub(r"[^A-Za-z0-9_.-]", "_", table)
        return self.naming_pattern.format(
            table=safe_table,
            timestamp=created_at.strftime("%Y%m%dT%H%M%S%f"),
            type=backup_type.value.lower(),
        )

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def verify_backup(self, path: str | Path, password: str | None = None) -> BackupInfo:
        """Check a backup's checksum and readability without restoring it."""
        content = await asyncio.to_thread(Path(path).read_bytes)
        info, _ = self._open(content, str(path), password)
        return info

    async def restore_from_backup(self, path: str | Path, password: str | None = None) -> RestoreResult:
        """Replay a backup into the database.

        The checksum is verified before anything is touched; structure and
        rows are then restored in a single transaction.
        """
        start = datetime.now(timezone.utc)
        path = str(path)
        logger.info("Starting restore", path=path)

        def failed(message: str, info: BackupInfo | None = None) -> RestoreResult:
            return RestoreResult(
                success=False,
                backup=info,
                records_restored=0,
                duration_seconds=(datetime.now(timezone.utc) - start).total_seconds(),
                errors=[message],
            )

        try:
            content = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as e:
            logger.error("Cannot read backup", path=path, error=str(e))
            return failed(f"Cannot read backup {path}: {e}")

        try:
            info, data = self._open(content, path, password)
        except MigrationRestoreError as e:
            logger.error("Backup rejected", path=path, error=str(e))
            return failed(str(e))

        try:
            async with self.engine.begin() as conn:
                if info.type == BackupType.COLUMN:
                    restored = await self._restore_column(conn, info, data)
                else:
                    restored = await self._restore_table(
                        conn, info, data, include_rows=info.type != BackupType.SCHEMA
                    )
                warnings = await self._validate_restore(conn, info, data)
        except (SQLAlchemyError, MigrationRestoreError) as e:
            logger.error("Restore failed", path=path, table=info.table, error=str(e))
            return failed(f"Restore of '{info.table}' failed: {e}", info)

        duration = (datetime.now(timezone.utc) - start).total_seconds()
        logger.info(
            "Restore completed",
            table=info.table,
            records=restored,
            warnings=len(warnings),
            duration_seconds=round(duration, 3),
        )
        return RestoreResult(
            success=True,
            backup=info,
            records_restored=restored,
            duration_seconds=duration,
            warnings=warnings,
            validated=not warnings,
        )

    async def _restore_table(self, conn: AsyncConnection, info: BackupInfo, data: dict, include_rows: bool) -> int:
        structure = TableSchema.from_dict(data["structure"])
        quoted = quote_identifier(info.table)

        await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {quoted}")
        await conn.exec_driver_sql(create_table_sql(info.table, structure.columns, structure.unique_constraints))
        for index in structure.indexes:
            await conn.exec_driver_sql(create_index_sql(info.table, index))

        records = data.get("records", []) if include_rows else []
        if not records:
            return 0

        names = structure.column_names
        insert = (
            f"INSERT INTO {quoted} ({', '.join(quote_identifier(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )
        rows = [tuple(record.get(name) for name in names) for record in records]
        for offset in range(0, len(rows), RESTORE_BATCH_SIZE):
            await conn.exec_driver_sql(insert, rows[offset:offset + RESTORE_BATCH_SIZE])
        return len(rows)

    async def _restore_column(self, conn: AsyncConnection, info: BackupInfo, data: dict) -> int:
        column = data["column"]
        structure = TableSchema.from_dict(data["structure"])
        current = await self.inspector.read_schema(conn, info.table)
        if not current.exists:
            raise MigrationRestoreError(f"Table '{info.table}' no longer exists", backup_path=info.path)

        quoted = quote_identifier(info.table)
        if current.column(column) is None:
            definition = structure.column(column)
            await conn.exec_driver_sql(
                f"ALTER TABLE {quoted} ADD COLUMN {column_sql(definition, inline_primary_key=False)}"
            )

        records = data.get("records", [])
        update = f"UPDATE {quoted} SET {quote_identifier(column)} = ? WHERE rowid = ?"
        rows = [(record["value"], record["rowid"]) for record in records]
        for offset in range(0, len(rows), RESTORE_BATCH_SIZE):
            await conn.exec_driver_sql(update, rows[offset:offset + RESTORE_BATCH_SIZE])
        return len(rows)

    async def _validate_restore(self, conn: AsyncConnection, info: BackupInfo, data: dict) -> list[str]:
        warnings = []
        structure = TableSchema.from_dict(data["structure"])
        current = await self.inspector.read_schema(conn, info.table)

        if info.type != BackupType.COLUMN and len(current.columns) != len(structure.columns):
            warnings.append(
                f"Column count mismatch: backup has {len(structure.columns)}, "
                f"restored table has {len(current.columns)}"
            )

        if info.type in (BackupType.FULL, BackupType.INCREMENTAL):
            result = await conn.exec_driver_sql(f"SELECT COUNT(*) FROM {quote_identifier(info.table)}")
            count = int(result.scalar() or 0)
            if count != info.record_count:
                warnings.append(f"Record count mismatch: backup has {info.record_count}, restored table has {count}")

        return warnings

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def list_backups(self, table: str | None = None) -> list[BackupInfo]:
        """Backups in the storage directory, newest first.

        Unreadable files are skipped with a warning.
        """
        if not self.storage_path.exists():
            return []

        backups = []
        for file in self.storage_path.glob("*.json"):
            try:
                content = await asyncio.to_thread(file.read_bytes)
                info = BackupInfo.from_dict(json.loads(content)["info"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable backup file", path=str(file), error=str(e))
                continue
            if table is not None and info.table != table:
                continue
            backups.append(info)

        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    @log_operation("backup_cleanup")
    async def cleanup_old_backups(self, retention_days: int | None = None) -> list[str]:
        """Delete backups older than the retention window; returns deleted paths."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        deleted = []
        for info in await self.list_backups():
            if info.created_at >= cutoff:
                continue
            try:
                Path(info.path).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not delete old backup", path=info.path, error=str(e))
                continue
            deleted.append(info.path)

        if deleted:
            logger.info("Old backups removed", count=len(deleted), retention_days=days)
        return deleted
