"""Test configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

# Keep a developer's .env or shell settings out of the tests
for _name in [n for n in os.environ if n.startswith("SCHEMASHIFT_")]:
    del os.environ[_name]

from schemashift.config import Settings, get_settings
from schemashift.core.backup import BackupManager
from schemashift.core.introspection import TableInspector
from schemashift.core.schema_provider import DeclaredField, DeclaredIndex, DeclaredSchema, StaticSchemaProvider
from schemashift.core.workflow import MigrationWorkflow
from schemashift.database import create_engine_for

CUSTOMER_TABLE = "tabCustomer"

CUSTOMER_ROWS = [
    ("CUST-0001", "ada@example.com", "Ada Lovelace", 1500.0),
    ("CUST-0002", "grace@example.com", "Grace Hopper", 2500.5),
    ("CUST-0003", "a.very.long.address.that.goes.on.and.on@subdomain.example.com", "Long Address", 0.0),
]


def customer_fields(*extra: DeclaredField, skip: tuple[str, ...] = ()) -> list[DeclaredField]:
    """Declared fields matching the customer fixture table."""
    fields = [
        DeclaredField("email", "Data", length=255),
        DeclaredField("customer_name", "Data", length=140),
        DeclaredField("credit_limit", "Currency", precision=2),
    ]
    return [f for f in fields if f.fieldname not in skip] + list(extra)


def customer_schema(*extra: DeclaredField, skip: tuple[str, ...] = (), indexes=None) -> DeclaredSchema:
    if indexes is None:
        indexes = [DeclaredIndex(columns=("email",))]
    return DeclaredSchema(table=CUSTOMER_TABLE, fields=customer_fields(*extra, skip=skip), indexes=indexes)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Settings are cached per process; start every test from a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        backup_dir=str(tmp_path / "backups"),
        migration_timeout=None,
        applied_by="tester",
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine; every connection sees the same database."""
    engine = create_engine_for(settings.database_url)
    yield engine
    await engine.dispose()


@pytest.fixture
async def customer_table(engine: AsyncEngine) -> str:
    """Create and fill the customer table."""
    async with engine.begin() as conn:
        await conn.exec_driver_sql(
            'CREATE TABLE "tabCustomer" ('
            '"name" varchar(140) PRIMARY KEY NOT NULL, '
            '"email" varchar(255), '
            '"customer_name" varchar(140), '
            '"credit_limit" decimal(18,2) DEFAULT 0)'
        )
        await conn.exec_driver_sql('CREATE INDEX "idx_tabcustomer_email" ON "tabCustomer" ("email")')
        await conn.exec_driver_sql('INSERT INTO "tabCustomer" VALUES (?, ?, ?, ?)', CUSTOMER_ROWS)
    return CUSTOMER_TABLE


@pytest.fixture
def inspector(engine: AsyncEngine) -> TableInspector:
    return TableInspector(engine)


@pytest.fixture
def provider() -> StaticSchemaProvider:
    return StaticSchemaProvider({CUSTOMER_TABLE: customer_schema()})


@pytest.fixture
def backup_manager(engine: AsyncEngine, inspector: TableInspector, tmp_path) -> BackupManager:
    # Low Scrypt cost keeps encrypted backups fast in tests
    return BackupManager(engine, inspector, storage_path=tmp_path / "backups", scrypt_n=2**14)


@pytest.fixture
def workflow(engine: AsyncEngine, provider: StaticSchemaProvider, settings: Settings) -> MigrationWorkflow:
    return MigrationWorkflow.from_engine(engine, provider, settings=settings)
