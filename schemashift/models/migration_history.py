"""Migration history model: one row per migration attempt."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from schemashift.database import Base, JSONType


class MigrationHistoryRecord(Base):
    """Durable record of a migration attempt for audit and rollback."""

    __tablename__ = "schema_migration_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # What was migrated
    table_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(32), nullable=False, default="1.0.0")

    # When the migration was generated
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        index=True
    )

    # Statement batches, in execution order
    sql: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    rollback_sql: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Result
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    applied_by: Mapped[str] = mapped_column(String(128), nullable=False, default="system")
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    affected_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    backup_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    destructive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Retries of the same batch are separate rows with increasing attempt numbers
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    rollback_info: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    environment: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)

    def __repr__(self) -> str:
        return f"<MigrationHistoryRecord {self.table_name} {self.status} attempt={self.attempt}>"
