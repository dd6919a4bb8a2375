"""SchemaShift - schema migration engine.

Keeps a live SQLite table in line with a declarative field schema:
- Structural diffing of declared fields against live table metadata
- Ordered, reversible SQL generation (in-place or table rebuild)
- Heuristic validation for data loss, rollback and SQL risks
- Integrity-checked backups with optional compression and encryption
- Transactional execution with per-statement savepoints
- Durable history of every migration attempt
"""

__version__ = "1.0.0"
__author__ = "SchemaShift Contributors"
