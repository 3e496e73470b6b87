"""
Ledger store: persistent record of applied migration units.

Ledger rows live in the schema_ledger table (see schemaledger.models).
Writes happen inside the executor's unit transaction so "effect applied"
and "effect recorded" commit together. Reads use their own short
transaction unless the caller passes a session.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schemaledger.errors import LedgerEntryNotFound, WriteConflict
from schemaledger.migrations.migration import LedgerEntry, MigrationUnit
from schemaledger.models import SchemaLedger

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_entry(row: SchemaLedger) -> LedgerEntry:
    return LedgerEntry(
        unit_id=row.unit_id,
        checksum=row.checksum,
        applied_at=_as_utc(row.applied_at),
        name=row.name,
        applied_by=row.applied_by,
        execution_time_ms=row.execution_time_ms,
    )


class LedgerStore:
    """
    Reads and writes the schema_ledger table.

    Example:
        >>> ledger = LedgerStore(database)
        >>> await ledger.list_applied()
        {'001-drop-index', '002-fix-policies'}
        >>> entry = await ledger.get('001-drop-index')
        >>> entry.checksum[:8]
        'a1b2c3d4'
    """

    def __init__(self, database):
        """
        Initialize ledger store.

        Args:
            database: MigrationDatabase instance
        """
        self.database = database

    async def ensure_table(self) -> None:
        """Create the ledger (and lock) tables if missing."""
        await self.database.ensure_tables()

    @asynccontextmanager
    async def _reading(self, session: Optional[AsyncSession]):
        if session is not None:
            yield session
            return
        async with self.database._get_session() as own_session:
            yield own_session

    async def record_applied(
        self,
        session: AsyncSession,
        unit: MigrationUnit,
        applied_at: Optional[datetime] = None,
        applied_by: str = 'system',
        execution_time_ms: Optional[int] = None,
    ) -> LedgerEntry:
        """
        Record a unit as applied inside the caller's transaction.

        Does not commit; the caller commits the unit and its ledger row
        together.

        Args:
            session: Active session holding the unit's transaction
            unit: Unit that was applied
            applied_at: Application time (defaults to now, UTC)
            applied_by: User/system applying the unit
            execution_time_ms: Time taken by the forward action

        Returns:
            The recorded LedgerEntry

        Raises:
            WriteConflict: If the unit id is already recorded
        """
        entry = LedgerEntry(
            unit_id=unit.id,
            checksum=unit.checksum,
            applied_at=applied_at or datetime.now(timezone.utc),
            name=unit.name,
            applied_by=applied_by,
            execution_time_ms=execution_time_ms,
        )

        try:
            await session.execute(
                insert(SchemaLedger).values(
                    unit_id=entry.unit_id,
                    name=entry.name,
                    checksum=entry.checksum,
                    applied_at=entry.applied_at,
                    applied_by=entry.applied_by,
                    execution_time_ms=entry.execution_time_ms,
                )
            )
        except IntegrityError as e:
            raise WriteConflict(
                'Unit already recorded in ledger by another writer',
                unit_id=unit.id,
            ) from e

        logger.debug('Recorded ledger entry %s', entry)
        return entry

    async def list_applied(self, session: Optional[AsyncSession] = None) -> Set[str]:
        """
        Return the ids of all applied units.

        Args:
            session: Existing session to read in (optional)

        Returns:
            Set of unit ids
        """
        async with self._reading(session) as s:
            result = await s.execute(select(SchemaLedger.unit_id))
            return set(result.scalars().all())

    async def entries(
        self,
        session: Optional[AsyncSession] = None
    ) -> Dict[str, LedgerEntry]:
        """
        Return all ledger entries keyed by unit id.

        Args:
            session: Existing session to read in (optional)

        Returns:
            Dict of unit id to LedgerEntry
        """
        async with self._reading(session) as s:
            result = await s.execute(
                select(SchemaLedger).order_by(SchemaLedger.applied_at)
            )
            return {row.unit_id: _to_entry(row) for row in result.scalars().all()}

    async def get(
        self,
        unit_id: str,
        session: Optional[AsyncSession] = None
    ) -> LedgerEntry:
        """
        Return the ledger entry for a unit.

        Raises:
            LedgerEntryNotFound: If the unit has not been applied
        """
        async with self._reading(session) as s:
            result = await s.execute(
                select(SchemaLedger).where(SchemaLedger.unit_id == unit_id)
            )
            row = result.scalar_one_or_none()

        if row is None:
            raise LedgerEntryNotFound('Unit not found in ledger', unit_id=unit_id)
        return _to_entry(row)
