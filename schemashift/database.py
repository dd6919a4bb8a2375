"""Database engine setup and shared ORM base."""

import json
from typing import Any

from sqlalchemy import TypeDecorator, Text, event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from schemashift.config import get_settings


class JSONType(TypeDecorator):
    """Database-agnostic JSON type.

    Stored as text so the history table stays readable from the sqlite3 shell.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: dict[str, Any] | list | None, dialect) -> str | None:
        if value is None:
            return None
        return json.dumps(value, default=str)

    def process_result_value(self, value: str | dict | list | None, dialect) -> dict[str, Any] | list | None:
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return value
        return json.loads(value)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def _install_sqlite_transaction_handling(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so DDL is transactional and SAVEPOINT works.

    pysqlite (and aiosqlite on top of it) otherwise issues its own BEGIN
    lazily and only before DML, which breaks savepoints and leaves DDL
    outside the surrounding transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_for(url: str, busy_timeout: float | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine with the transaction handling migrations rely on."""
    if busy_timeout is None:
        busy_timeout = get_settings().db_busy_timeout

    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", busy_timeout)
        engine = create_async_engine(url, connect_args=connect_args, **kwargs)
        _install_sqlite_transaction_handling(engine)
        return engine

    return create_async_engine(url, **kwargs)
