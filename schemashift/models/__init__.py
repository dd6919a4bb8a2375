"""Database models."""

from schemashift.models.migration_history import MigrationHistoryRecord

__all__ = [
    "MigrationHistoryRecord",
]
