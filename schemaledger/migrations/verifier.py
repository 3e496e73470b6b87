#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Verifier: dry-run precheck of migration units.

Runs a unit's forward action inside a throwaway transaction that is always
rolled back. The action runs twice in that transaction: a failure on the
first pass means the unit cannot apply at all, a failure on the second pass
means the unit is not idempotent (e.g. CREATE INDEX without IF NOT EXISTS
fails with "already exists" when re-run).
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from schemaledger.migrations.actions import run_forward_action
from schemaledger.migrations.migration import MigrationUnit

logger = logging.getLogger(__name__)


class VerifyMode(Enum):
    """How the executor uses precheck results."""
    OFF = "off"
    ADVISORY = "advisory"  # log violations, run the unit anyway
    ENFORCE = "enforce"    # a violation blocks the unit


@dataclass
class Violation:
    """
    Precheck failure for one unit.

    Attributes:
        unit_id: Unit that failed the precheck
        stage: 'apply' (first run failed) or 'repeat' (re-run failed)
        message: Error message from the database or action
        error_type: Exception class name
    """
    unit_id: str
    stage: str
    message: str
    error_type: str

    def to_dict(self) -> dict:
        return {
            'unit_id': self.unit_id,
            'stage': self.stage,
            'message': self.message,
            'error_type': self.error_type,
        }

    def __str__(self) -> str:
        return f"[{self.stage}] {self.unit_id}: {self.error_type}: {self.message}"


class Verifier:
    """
    Prechecks units against the live database without committing.

    Example:
        >>> verifier = Verifier(database, mode=VerifyMode.ENFORCE)
        >>> violation = await verifier.precheck(unit)
        >>> if violation:
        ...     print(violation)
    """

    def __init__(self, database, mode: VerifyMode = VerifyMode.ADVISORY,
                 timeout: Optional[float] = None):
        """
        Initialize verifier.

        Args:
            database: MigrationDatabase instance
            mode: How violations affect execution
            timeout: Per-pass timeout in seconds (None for no limit)
        """
        self.database = database
        self.mode = VerifyMode(mode)
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.mode is not VerifyMode.OFF

    @property
    def enforcing(self) -> bool:
        return self.mode is VerifyMode.ENFORCE

    async def _run_once(self, session, unit: MigrationUnit) -> None:
        async with asyncio.timeout(self.timeout):
            await run_forward_action(session, unit)

    async def precheck(self, unit: MigrationUnit) -> Optional[Violation]:
        """
        Run the unit twice in a throwaway transaction.

        The transaction is always rolled back, whatever the outcome.

        Args:
            unit: Unit to check

        Returns:
            Violation if either pass failed, None if the unit looks safe
        """
        stage = 'apply'
        session = self.database.session_factory()
        try:
            try:
                await self._run_once(session, unit)
                stage = 'repeat'
                await self._run_once(session, unit)
            except Exception as e:
                violation = Violation(
                    unit_id=unit.id,
                    stage=stage,
                    message=str(e) or 'timed out',
                    error_type=type(e).__name__,
                )
                logger.debug('Precheck failed: %s', violation)
                return violation
            logger.debug('Precheck passed for unit %s', unit.id)
            return None
        finally:
            await session.rollback()
            await session.close()

    async def precheck_plan(self, units) -> tuple[dict, list]:
        """
        Precheck a sequence of units cumulatively, as a run would see them.

        Each unit runs on top of the effects of the previous ones in one
        throwaway transaction. The repeat pass runs inside a savepoint so a
        non-idempotent unit doesn't poison the units after it. The first
        unit that fails outright stops the check.

        Args:
            units: Units in plan order

        Returns:
            Tuple of (unit id -> Violation for failing units,
            ids left unchecked after an outright failure)
        """
        violations = {}
        units = list(units)
        session = self.database.session_factory()
        try:
            for index, unit in enumerate(units):
                try:
                    await self._run_once(session, unit)
                except Exception as e:
                    violations[unit.id] = Violation(
                        unit.id, 'apply', str(e) or 'timed out', type(e).__name__
                    )
                    return violations, [u.id for u in units[index + 1:]]

                try:
                    async with session.begin_nested():
                        await self._run_once(session, unit)
                except Exception as e:
                    violations[unit.id] = Violation(
                        unit.id, 'repeat', str(e) or 'timed out', type(e).__name__
                    )
            return violations, []
        finally:
            await session.rollback()
            await session.close()
