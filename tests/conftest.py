"""
Global pytest configuration and fixtures for schemaledger tests

Provides:
- Temporary file-backed SQLite database with ledger tables
- Base financial_reports schema the sample units migrate
- The sample three-unit catalog (files and loaded units)
- Helpers to run raw SQL and inspect the SQLite schema
"""

import logging
import shutil
import sqlite3
from contextlib import closing
from pathlib import Path

import pytest
from sqlalchemy import text

from schemaledger.database import MigrationDatabase
from schemaledger.migrations import MigrationManager

FIXTURES_DIR = Path(__file__).parent / 'fixtures'
SAMPLE_MIGRATIONS_DIR = FIXTURES_DIR / 'migrations'
POSTGRES_MIGRATION = FIXTURES_DIR / 'postgres' / '20251109193253_fix_security_issues.sql'

BASE_SCHEMA = [
    """
    CREATE TABLE financial_reports (
        id INTEGER PRIMARY KEY,
        report_date TEXT,
        amount INTEGER,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT
    )
    """,
    "CREATE INDEX idx_financial_reports_report_date ON financial_reports(report_date)",
    "CREATE INDEX idx_financial_reports_created_at ON financial_reports(created_at)",
    "CREATE VIEW financial_reports_public_read AS SELECT * FROM financial_reports",
    "CREATE VIEW financial_reports_public_read_dup AS SELECT * FROM financial_reports",
    "CREATE VIEW financial_reports_public_insert_dup AS SELECT id FROM financial_reports",
    """
    CREATE TRIGGER update_financial_reports_updated_at
      AFTER UPDATE OF amount ON financial_reports
      FOR EACH ROW
    BEGIN
      UPDATE financial_reports SET updated_at = 'legacy' WHERE id = NEW.id;
    END
    """,
]


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


# ============================================================================
# Database
# ============================================================================

async def execute_sql(database, *statements):
    """Run raw statements in one committed transaction."""
    async with database._get_session() as session:
        conn = await session.connection()
        for statement in statements:
            await conn.exec_driver_sql(statement)


async def schema_objects(database, object_type):
    """Names of SQLite schema objects of one type ('table', 'index', ...)."""
    async with database._get_session() as session:
        result = await session.execute(
            text("SELECT name FROM sqlite_master WHERE type = :type"),
            {'type': object_type}
        )
        return set(result.scalars().all())


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database with ledger tables.

    Yields:
        MigrationDatabase: Open database, closed after the test
    """
    db = MigrationDatabase(str(tmp_path / 'migrate_test.db'))
    await db.ensure_tables()

    yield db

    try:
        await db.close()
    except Exception as e:
        logging.warning('Error closing test database: %s', e)


@pytest.fixture
async def reports_database(database):
    """Database holding the financial_reports schema before migration."""
    await execute_sql(database, *BASE_SCHEMA)
    return database


@pytest.fixture
def reports_db_path(tmp_path):
    """SQLite file holding the financial_reports schema, for synchronous CLI tests."""
    path = tmp_path / "reports.db"
    with closing(sqlite3.connect(path)) as conn:
        for statement in BASE_SCHEMA:
            conn.execute(statement)
        conn.commit()
    return path


# ============================================================================
# Catalog
# ============================================================================

@pytest.fixture
def migrations_dir(tmp_path):
    """Writable copy of the sample migrations directory."""
    target = tmp_path / 'migrations'
    shutil.copytree(SAMPLE_MIGRATIONS_DIR, target)
    return target


@pytest.fixture
def sample_catalog():
    """The three sample units: 001-drop-index, 002-fix-policies, 003-fix-function."""
    return MigrationManager(SAMPLE_MIGRATIONS_DIR).discover_migrations()


@pytest.fixture
def run_sql():
    """Helper: await run_sql(database, *statements)."""
    return execute_sql


@pytest.fixture
def sqlite_schema():
    """Helper: await sqlite_schema(database, 'index') -> set of names."""
    return schema_objects
