#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration executor with transaction management and tracking.

Applies a plan one unit at a time. Each unit's forward action and its ledger
row share one transaction: either both commit or neither does. Failures roll
the unit back and halt the run; nothing after the failing unit executes.

Only one run per database holds the migration lock at a time. Operator
cancellation is honored between units, never in the middle of one.
"""
import asyncio
import logging
import time
from typing import Iterable, Optional

from schemaledger.errors import (
    DriftDetected,
    ExecutionFailure,
    MigrationTimeout,
    PrecheckViolation,
    RunCancelled,
)
from schemaledger.migrations.actions import run_forward_action
from schemaledger.migrations.ledger import LedgerStore
from schemaledger.migrations.lock import RunLock
from schemaledger.migrations.migration import MigrationUnit
from schemaledger.migrations.planner import find_drift


class MigrationExecutor:
    """
    Applies planned units with transaction safety.

    Attributes:
        database: MigrationDatabase instance
        ledger: LedgerStore used for reads and writes
        verifier: Optional Verifier consulted before each unit
        unit_timeout: Per-unit timeout in seconds (None for no limit)
        applied_by: Recorded in each ledger entry

    Example:
        executor = MigrationExecutor(database, unit_timeout=300)
        count = await executor.apply(plan)
    """

    def __init__(self, database, ledger: Optional[LedgerStore] = None,
                 verifier=None, unit_timeout: Optional[float] = None,
                 applied_by: str = 'system'):
        """
        Initialize migration executor.

        Args:
            database: MigrationDatabase instance
            ledger: LedgerStore (created from database when omitted)
            verifier: Verifier for prechecks (optional)
            unit_timeout: Per-unit timeout in seconds (optional)
            applied_by: User/system applying units
        """
        self.database = database
        self.ledger = ledger or LedgerStore(database)
        self.verifier = verifier
        self.unit_timeout = unit_timeout
        self.applied_by = applied_by
        self.logger = logging.getLogger(__name__)
        self._cancel_requested = False

    def request_cancel(self) -> None:
        """Stop the current run before its next unit."""
        if not self._cancel_requested:
            self.logger.warning('Cancellation requested; stopping after current unit')
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def apply(self, plan: Iterable[MigrationUnit]) -> int:
        """
        Apply every unit of the plan, in order.

        Takes the run lock, re-reads the ledger under it (units already
        recorded by an earlier run are skipped, never re-executed), then
        applies the rest.

        Args:
            plan: Units to apply (a Plan from the planner)

        Returns:
            Number of units applied

        Raises:
            LockHeld: Another run holds the migration lock
            DriftDetected: A planned unit was applied with different content
            ExecutionFailure: A unit failed (MigrationTimeout and
                PrecheckViolation are subclasses)
            WriteConflict: The ledger already had a row for the unit
            RunCancelled: request_cancel() was called mid-run
        """
        units = list(plan)
        self._cancel_requested = False

        lock = RunLock(self.database)
        await lock.acquire()
        try:
            count = await self._apply_locked(units)
        except BaseException:
            await self._release_after_error(lock)
            raise
        await lock.release()
        return count

    async def _release_after_error(self, lock: RunLock) -> None:
        try:
            await lock.release()
        except Exception as e:
            # The run's own error propagates, not this one
            self.logger.error(
                'Failed to release migration lock %s: %s '
                '(clear it with "schemaledger unlock")', lock.holder, e
            )

    async def _apply_locked(self, units: list[MigrationUnit]) -> int:
        applied = await self.ledger.entries()

        drifted = find_drift(units, applied)
        if drifted:
            raise DriftDetected(drifted)

        pending = [unit for unit in units if unit.id not in applied]
        if len(pending) < len(units):
            self.logger.info(
                'Skipping %d unit(s) already recorded in ledger',
                len(units) - len(pending)
            )

        count = 0
        for unit in pending:
            if self._cancel_requested:
                raise RunCancelled(count, unit.id)
            await self._apply_shielded(unit)
            count += 1

        self.logger.info('Applied %d unit(s)', count)
        return count

    async def _apply_shielded(self, unit: MigrationUnit) -> None:
        """
        Run apply_unit so task cancellation cannot interrupt it.

        If the surrounding task is cancelled mid-unit, the unit finishes
        (commit or rollback) and the cancellation is re-raised afterwards.
        """
        task = asyncio.ensure_future(self.apply_unit(unit))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise
            self.request_cancel()
            self.logger.warning('Interrupted during unit %s; letting it finish', unit.id)
            while not task.done():
                try:
                    await asyncio.shield(task)
                except asyncio.CancelledError:
                    continue
            task.result()
            raise

    async def apply_unit(self, unit: MigrationUnit) -> None:
        """
        Apply one unit and record it in the ledger, atomically.

        Does not take the run lock; use apply() unless the caller already
        holds it.

        Raises:
            PrecheckViolation: Verifier rejected the unit (enforce mode)
            MigrationTimeout: Unit exceeded unit_timeout
            ExecutionFailure: Forward action or commit failed
            WriteConflict: Ledger already has a row for the unit
        """
        if self.verifier is not None and self.verifier.enabled:
            violation = await self.verifier.precheck(unit)
            if violation is not None:
                if self.verifier.enforcing:
                    self.logger.error('Precheck blocked unit %s: %s', unit.id, violation)
                    raise PrecheckViolation(violation)
                self.logger.warning('Precheck violation (advisory): %s', violation)

        self.logger.info('Applying unit %s (%s)', unit.id, unit.name)
        start_time = time.time()

        session = self.database.session_factory()
        try:
            try:
                async with asyncio.timeout(self.unit_timeout) as deadline:
                    await run_forward_action(session, unit)
            except TimeoutError as e:
                if not deadline.expired():
                    # Raised by the driver, not by unit_timeout
                    raise self._failure(unit, e) from e
                self.logger.error(
                    'Unit %s exceeded timeout of %gs', unit.id, self.unit_timeout
                )
                raise MigrationTimeout(unit.id, self.unit_timeout) from e
            except Exception as e:
                raise self._failure(unit, e) from e

            execution_time_ms = int((time.time() - start_time) * 1000)

            await self.ledger.record_applied(
                session,
                unit,
                applied_by=self.applied_by,
                execution_time_ms=execution_time_ms,
            )

            try:
                await session.commit()
            except Exception as e:
                self.logger.critical(
                    'Commit failed for unit %s after its action succeeded: %s',
                    unit.id, e
                )
                raise ExecutionFailure(
                    f'Commit failed after successful action ({e}); '
                    f'inspect database and ledger',
                    unit_id=unit.id,
                    fatal=True,
                ) from e

        except BaseException:
            await session.rollback()
            raise

        finally:
            await session.close()

        self.logger.info(
            'Applied unit %s (%dms)', unit.id, execution_time_ms
        )

    def _failure(self, unit: MigrationUnit, error: Exception) -> ExecutionFailure:
        self.logger.error('Failed to apply unit %s: %s', unit.id, error)
        return ExecutionFailure(
            f'Forward action failed: {type(error).__name__}: {error}',
            unit_id=unit.id,
            details={'error_type': type(error).__name__},
        )
