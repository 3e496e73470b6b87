"""
Run-level "migration in progress" lock.

The lock is a single row in schema_migration_lock, inserted and committed
in its own transaction. Because it lives in the target database, it
excludes runs from other processes and hosts too. A second run fails fast
with LockHeld instead of queuing.

A run that dies without releasing leaves the row behind; operators clear
it with force_release() (``schemaledger unlock``).
"""

import logging
import os
import socket
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError, OperationalError

from schemaledger.errors import LockHeld
from schemaledger.models import MigrationLock

logger = logging.getLogger(__name__)

LOCK_ROW_ID = 1


def default_holder() -> str:
    """Identify this run as host:pid:token."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _is_busy(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return 'database is locked' in message or 'busy' in message


class RunLock:
    """
    Database-held run lock.

    Usage:
        lock = RunLock(database)
        async with lock:
            ...  # apply units

    Raises LockHeld on entry if another run holds the lock.
    """

    def __init__(self, database, holder: Optional[str] = None):
        self.database = database
        self.holder = holder or default_holder()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        """
        Acquire the lock or fail immediately.

        Raises:
            LockHeld: If another run holds the lock
            RuntimeError: If this instance already holds it
        """
        if self._held:
            raise RuntimeError(f"Lock already held by this run ({self.holder})")

        # A running unit's write lock does not block this read
        current = await self.current_holder()
        if current is not None:
            raise self._held_by(current)

        try:
            async with self.database._get_session() as session:
                await session.execute(
                    insert(MigrationLock).values(
                        lock_id=LOCK_ROW_ID,
                        holder=self.holder,
                        acquired_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            raise self._held_by(await self.current_holder()) from None
        except OperationalError as e:
            if not _is_busy(e):
                raise
            # Another writer has the database; treat it as a run in progress
            raise self._held_by(await self.current_holder()) from e

        self._held = True
        logger.debug('Acquired migration lock as %s', self.holder)

    def _held_by(self, current) -> LockHeld:
        holder, acquired_at = current if current else (None, None)
        logger.warning('Migration lock held by %s since %s', holder, acquired_at)
        return LockHeld(holder, acquired_at)

    async def release(self) -> None:
        """Release the lock if this run holds it. Safe to call twice."""
        if not self._held:
            return

        async with self.database._get_session() as session:
            await session.execute(
                delete(MigrationLock).where(
                    MigrationLock.lock_id == LOCK_ROW_ID,
                    MigrationLock.holder == self.holder,
                )
            )
        self._held = False
        logger.debug('Released migration lock %s', self.holder)

    async def current_holder(self):
        """
        Return (holder, acquired_at) of the current lock row, or None.
        """
        async with self.database._get_session() as session:
            result = await session.execute(
                select(MigrationLock).where(MigrationLock.lock_id == LOCK_ROW_ID)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return row.holder, row.acquired_at

    async def force_release(self) -> Optional[str]:
        """
        Delete the lock row regardless of holder.

        Only for clearing locks left behind by crashed runs.

        Returns:
            Holder of the removed lock, or None if no lock was held
        """
        current = await self.current_holder()
        if current is None:
            return None

        async with self.database._get_session() as session:
            await session.execute(
                delete(MigrationLock).where(MigrationLock.lock_id == LOCK_ROW_ID)
            )
        logger.warning('Force-released migration lock held by %s', current[0])
        return current[0]

    async def __aenter__(self) -> 'RunLock':
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
