"""
Integration tests for the ledger store and run lock against SQLite.
"""

import sqlite3
from contextlib import closing
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from schemaledger.database import MigrationDatabase
from schemaledger.errors import LedgerEntryNotFound, LockHeld, WriteConflict
from schemaledger.migrations import LedgerStore, MigrationUnit, RunLock


@pytest.fixture
def ledger(database):
    return LedgerStore(database)


@pytest.fixture
def unit():
    return MigrationUnit.from_sql(
        '001-drop-index',
        'DROP INDEX IF EXISTS idx_financial_reports_report_date;'
    )


class TestLedgerStore:
    """Test reading and writing ledger entries."""

    async def test_empty_ledger(self, ledger):
        assert await ledger.list_applied() == set()
        assert await ledger.entries() == {}

    async def test_ensure_table_is_idempotent(self, tmp_path):
        db = MigrationDatabase(str(tmp_path / "fresh.db"))
        try:
            ledger = LedgerStore(db)
            await ledger.ensure_table()
            await ledger.ensure_table()

            assert await ledger.list_applied() == set()
        finally:
            await db.close()

    async def test_record_and_read_back(self, database, ledger, unit):
        applied_at = datetime(2025, 11, 9, 19, 32, 53, tzinfo=timezone.utc)

        async with database._get_session() as session:
            await ledger.record_applied(
                session, unit, applied_at=applied_at,
                applied_by='ci', execution_time_ms=12
            )

        entry = await ledger.get(unit.id)

        assert entry.unit_id == unit.id
        assert entry.checksum == unit.checksum
        assert entry.name == 'drop index'
        assert entry.applied_by == 'ci'
        assert entry.execution_time_ms == 12
        assert entry.applied_at == applied_at
        assert await ledger.list_applied() == {unit.id}

    async def test_uncommitted_record_is_discarded(self, database, ledger, unit):
        session = database.session_factory()
        try:
            await ledger.record_applied(session, unit)
            await session.rollback()
        finally:
            await session.close()

        assert await ledger.list_applied() == set()

    async def test_duplicate_record_is_write_conflict(self, database, ledger, unit):
        async with database._get_session() as session:
            await ledger.record_applied(session, unit)

        with pytest.raises(WriteConflict) as exc_info:
            async with database._get_session() as session:
                await ledger.record_applied(session, unit)

        assert exc_info.value.unit_id == unit.id
        assert await ledger.list_applied() == {unit.id}

    async def test_get_missing_entry(self, ledger):
        with pytest.raises(LedgerEntryNotFound, match="Unit not found in ledger"):
            await ledger.get('999-missing')

    async def test_entries_ordered_by_applied_at(self, database, ledger):
        first = MigrationUnit.from_sql('002-b', 'SELECT 2;')
        second = MigrationUnit.from_sql('001-a', 'SELECT 1;')

        async with database._get_session() as session:
            await ledger.record_applied(
                session, first, applied_at=datetime(2025, 1, 1, tzinfo=timezone.utc)
            )
            await ledger.record_applied(
                session, second, applied_at=datetime(2025, 1, 2, tzinfo=timezone.utc)
            )

        assert list(await ledger.entries()) == ['002-b', '001-a']


class TestRunLock:
    """Test the database-held run lock."""

    async def test_acquire_and_release(self, database):
        lock = RunLock(database, holder='host-a:1:aaaa')

        await lock.acquire()
        holder, acquired_at = await lock.current_holder()

        assert lock.held
        assert holder == 'host-a:1:aaaa'
        assert acquired_at is not None

        await lock.release()

        assert not lock.held
        assert await lock.current_holder() is None

    async def test_second_holder_fails_fast(self, database):
        first = RunLock(database, holder='host-a:1:aaaa')
        second = RunLock(database, holder='host-b:2:bbbb')

        async with first:
            with pytest.raises(LockHeld) as exc_info:
                await second.acquire()

        assert exc_info.value.holder == 'host-a:1:aaaa'
        assert not second.held

        # Free again once the first run is done
        async with second:
            assert (await second.current_holder())[0] == 'host-b:2:bbbb'

    async def test_reacquire_same_instance(self, database):
        lock = RunLock(database)

        async with lock:
            with pytest.raises(RuntimeError, match="already held by this run"):
                await lock.acquire()

    async def test_release_is_idempotent(self, database):
        lock = RunLock(database)

        await lock.acquire()
        await lock.release()
        await lock.release()

        assert await lock.current_holder() is None

    async def test_release_leaves_other_holder(self, database):
        """A stale instance cannot delete another run's lock."""
        stale = RunLock(database, holder='crashed:1:dead')
        await stale.acquire()
        await stale.force_release()

        current = RunLock(database, holder='live:2:beef')
        await current.acquire()
        await stale.release()

        assert (await current.current_holder())[0] == 'live:2:beef'

    async def test_force_release(self, database):
        crashed = RunLock(database, holder='crashed:1:dead')
        await crashed.acquire()

        assert await RunLock(database).force_release() == 'crashed:1:dead'
        assert await RunLock(database).force_release() is None

    async def test_busy_database_is_lock_held(self, tmp_path, database):
        """Another connection's open write transaction counts as a run in progress."""
        impatient = MigrationDatabase(str(tmp_path / 'migrate_test.db'), busy_timeout=0.1)
        try:
            with closing(sqlite3.connect(tmp_path / 'migrate_test.db',
                                         isolation_level=None)) as writer:
                writer.execute('BEGIN IMMEDIATE')
                try:
                    with pytest.raises(LockHeld) as exc_info:
                        await RunLock(impatient).acquire()
                finally:
                    writer.execute('ROLLBACK')
        finally:
            await impatient.close()

        assert exc_info.value.holder is None
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert await RunLock(database).current_holder() is None
