"""
Migration runner: the operations behind the CLI.

Ties the catalog, ledger, planner, validator, verifier and executor
together:
- up(): plan and apply pending units
- status(): applied / pending / drifted / orphaned state per unit
- dry_run(): validate and precheck pending units without committing
- force_unlock(): clear a lock left behind by a crashed run
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from schemaledger.config import MigrateConfig
from schemaledger.errors import ValidationFailed
from schemaledger.migrations import (
    LedgerStore,
    MigrationExecutor,
    MigrationManager,
    MigrationUnit,
    MigrationValidator,
    Plan,
    Planner,
    RunLock,
    ValidationWarning,
    Verifier,
    VerifyMode,
    Violation,
    WarningLevel,
)

logger = logging.getLogger(__name__)


@dataclass
class UnitStatus:
    """State of one unit as seen by status()."""
    unit_id: str
    name: str
    state: str  # 'applied', 'pending', 'drifted' or 'orphaned'
    applied_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'unit_id': self.unit_id,
            'name': self.name,
            'state': self.state,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
        }


@dataclass
class DryRunReport:
    """
    Outcome of dry_run().

    Attributes:
        plan: Units that would be applied
        warnings: Static validation warnings per unit id
        violations: Precheck violations per unit id
        unchecked: Unit ids not prechecked because an earlier unit failed
    """
    plan: Plan
    warnings: Dict[str, List[ValidationWarning]] = field(default_factory=dict)
    violations: Dict[str, Violation] = field(default_factory=dict)
    unchecked: List[str] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationWarning]:
        return [
            w for unit_warnings in self.warnings.values()
            for w in unit_warnings if w.level == WarningLevel.ERROR
        ]

    @property
    def ok(self) -> bool:
        return not self.errors and not self.violations and not self.unchecked


class MigrationRunner:
    """
    Runs migration operations against one database.

    Example:
        runner = MigrationRunner(database, config)
        applied = await runner.up()
    """

    def __init__(self, database, config: Optional[MigrateConfig] = None,
                 catalog: Optional[Sequence[MigrationUnit]] = None):
        """
        Initialize runner.

        Args:
            database: MigrationDatabase instance
            config: Run settings (defaults when omitted)
            catalog: Units to use instead of reading config.migrations_dir
        """
        self.database = database
        self.config = config or MigrateConfig()
        self._catalog = list(catalog) if catalog is not None else None

        self.ledger = LedgerStore(database)
        self.planner = Planner(self.ledger)
        self.validator = MigrationValidator(db_type=self.config.db_type)
        self.verifier = Verifier(
            database,
            mode=self.config.verify_mode,
            timeout=self.config.unit_timeout,
        )
        self.executor = MigrationExecutor(
            database,
            ledger=self.ledger,
            verifier=self.verifier,
            unit_timeout=self.config.unit_timeout,
            applied_by=self.config.applied_by,
        )

    def load_catalog(self) -> List[MigrationUnit]:
        """Return the catalog, reading the migrations directory if needed."""
        if self._catalog is None:
            manager = MigrationManager(Path(self.config.migrations_dir))
            return manager.discover_migrations()
        return sorted(self._catalog)

    def validate(self, units) -> Dict[str, List[ValidationWarning]]:
        """Run static validation over units, logging what it finds."""
        results = {}
        for unit in units:
            warnings = self.validator.validate_unit(unit)
            for warning in warnings:
                if warning.level == WarningLevel.ERROR:
                    logger.error('%r', warning)
                elif warning.level == WarningLevel.WARNING:
                    logger.warning('%r', warning)
            if warnings:
                results[unit.id] = warnings
        return results

    async def up(self) -> int:
        """
        Apply all pending units.

        Returns:
            Number of units applied (0 when up to date)

        Raises:
            ValidationFailed: Pending units have ERROR-level problems
            MigrationError: Any error from planning or execution
        """
        await self.ledger.ensure_table()
        catalog = self.load_catalog()
        pending = await self.planner.plan(catalog)

        if not pending:
            logger.info('Schema is up to date')
            return 0

        warnings = self.validate(pending)
        errors = [
            w for unit_warnings in warnings.values()
            for w in unit_warnings if w.level == WarningLevel.ERROR
        ]
        if errors:
            raise ValidationFailed(errors)

        return await self.executor.apply(pending)

    async def status(self) -> List[UnitStatus]:
        """
        Report the state of every unit in the catalog and the ledger.

        Returns:
            UnitStatus list: catalog units in id order, then orphaned
            ledger entries
        """
        await self.ledger.ensure_table()
        catalog = self.load_catalog()
        entries = await self.ledger.entries()

        statuses = []
        for unit in catalog:
            entry = entries.get(unit.id)
            if entry is None:
                state = 'pending'
            elif entry.checksum != unit.checksum:
                state = 'drifted'
            else:
                state = 'applied'
            statuses.append(UnitStatus(
                unit_id=unit.id,
                name=unit.name,
                state=state,
                applied_at=entry.applied_at if entry else None,
            ))

        catalog_ids = {unit.id for unit in catalog}
        for unit_id, entry in entries.items():
            if unit_id not in catalog_ids:
                statuses.append(UnitStatus(
                    unit_id=unit_id,
                    name=entry.name,
                    state='orphaned',
                    applied_at=entry.applied_at,
                ))

        return statuses

    async def dry_run(self) -> DryRunReport:
        """
        Validate and precheck pending units without committing anything.

        Prechecks always run here, whatever the configured verify mode.

        Raises:
            DriftDetected: An applied unit changed
        """
        await self.ledger.ensure_table()
        catalog = self.load_catalog()
        pending = await self.planner.plan(catalog)

        report = DryRunReport(plan=pending)
        if not pending:
            return report

        report.warnings = self.validate(pending)

        verifier = self.verifier
        if verifier.mode is VerifyMode.OFF:
            verifier = Verifier(
                self.database,
                mode=VerifyMode.ADVISORY,
                timeout=self.config.unit_timeout,
            )
        report.violations, report.unchecked = await verifier.precheck_plan(pending)
        for violation in report.violations.values():
            logger.warning('Precheck violation: %s', violation)

        return report

    async def force_unlock(self) -> Optional[str]:
        """Remove a stale migration lock. Returns the removed holder."""
        await self.ledger.ensure_table()
        return await RunLock(self.database).force_release()
