"""
Schema migration engine.

This package provides:
- MigrationUnit: Data model for one migration unit
- LedgerEntry: Data model for an applied unit
- Plan: Ordered units still to apply
- MigrationManager: Discovery and parsing of migration files
- LedgerStore: Persistent record of applied units
- RunLock: Database-held "migration in progress" lock
- plan / Planner: Pending unit calculation with drift detection
- MigrationExecutor: Transactional application of a plan
- Verifier: Throwaway-transaction precheck of units
- MigrationValidator: Static checks of unit SQL
"""

from .migration import LedgerEntry, MigrationUnit, Plan, compute_checksum
from .migration_manager import MigrationManager
from .ledger import LedgerStore
from .lock import RunLock
from .planner import Planner, plan
from .migration_executor import MigrationExecutor
from .verifier import Verifier, VerifyMode, Violation
from .migration_validator import (
    MigrationValidator,
    ValidationWarning,
    WarningLevel,
)

__all__ = [
    'MigrationUnit',
    'LedgerEntry',
    'Plan',
    'compute_checksum',
    'MigrationManager',
    'LedgerStore',
    'RunLock',
    'Planner',
    'plan',
    'MigrationExecutor',
    'Verifier',
    'VerifyMode',
    'Violation',
    'MigrationValidator',
    'ValidationWarning',
    'WarningLevel',
]
