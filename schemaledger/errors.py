"""
Migration engine exceptions.

This module defines the exception hierarchy raised by the ledger, planner,
executor and verifier. Every error carries a machine-readable code, a
human-readable message, the id of the unit involved (when there is one) and
an optional details dict, so callers can report failures without parsing
strings.
"""

from typing import Any, Optional


class MigrationError(Exception):
    """
    Base class for migration engine errors.

    All engine errors halt the current run. Catch this class to handle any
    of them uniformly.
    """

    code = "MIGRATION_ERROR"

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize migration error.

        Args:
            message: Human-readable error message
            unit_id: Id of the migration unit involved (optional)
            details: Optional dict of additional context
        """
        self.message = message
        self.unit_id = unit_id
        self.details = details or {}
        prefix = f"[{self.code}]"
        if unit_id:
            prefix = f"{prefix} unit {unit_id}:"
        super().__init__(f"{prefix} {message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            'code': self.code,
            'message': self.message,
            'unit_id': self.unit_id,
            'details': self.details,
        }


class DriftDetected(MigrationError):
    """
    An applied unit's content changed after it was recorded.

    Raised when:
    - The checksum stored in the ledger differs from the unit's current checksum

    Requires manual resolution; never retried.
    """

    code = "DRIFT_DETECTED"

    def __init__(self, drifted: dict[str, tuple[str, str]]) -> None:
        """
        Initialize drift error.

        Args:
            drifted: Mapping of unit id to (stored_checksum, current_checksum)
        """
        self.drifted = dict(drifted)
        ids = sorted(self.drifted)
        super().__init__(
            f"Checksum mismatch for {len(ids)} applied unit(s): "
            f"{', '.join(ids)}",
            unit_id=ids[0] if ids else None,
            details={
                unit_id: {'stored': stored, 'current': current}
                for unit_id, (stored, current) in self.drifted.items()
            },
        )


class WriteConflict(MigrationError):
    """
    Another writer already recorded this unit in the ledger.

    Retryable by re-planning: the unit is applied, just not by this run.
    """

    code = "WRITE_CONFLICT"


class LockHeld(MigrationError):
    """
    Another run holds the migration lock for this database.

    Callers should abort and retry later rather than queue.
    """

    code = "LOCK_HELD"

    def __init__(self, holder: Optional[str], acquired_at: Any = None) -> None:
        self.holder = holder
        self.acquired_at = acquired_at
        super().__init__(
            f"Migration already in progress (held by {holder or 'unknown'} "
            f"since {acquired_at or 'unknown'})",
            details={'holder': holder, 'acquired_at': str(acquired_at)},
        )


class ExecutionFailure(MigrationError):
    """
    A unit's forward action failed and its transaction was rolled back.

    Raised when:
    - A statement in the unit errors
    - The commit after a successful action fails (``fatal=True``; the
      database and ledger need operator inspection)

    The underlying exception is chained as ``__cause__``.
    """

    code = "EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        fatal: bool = False,
    ) -> None:
        self.fatal = fatal
        super().__init__(message, unit_id=unit_id, details=details)


class MigrationTimeout(ExecutionFailure):
    """
    A unit exceeded the configured per-unit timeout.

    The unit's transaction is rolled back, so this is handled exactly like
    any other execution failure.
    """

    code = "TIMEOUT"

    def __init__(self, unit_id: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"Exceeded timeout of {timeout:g}s",
            unit_id=unit_id,
            details={'timeout': timeout},
        )


class PrecheckViolation(ExecutionFailure):
    """
    The verifier rejected a unit in enforce mode.

    The unit was not executed for real.
    """

    code = "PRECHECK_VIOLATION"

    def __init__(self, violation) -> None:
        self.violation = violation
        super().__init__(
            f"Precheck failed during {violation.stage}: {violation.message}",
            unit_id=violation.unit_id,
            details=violation.to_dict(),
        )


class ValidationFailed(MigrationError):
    """
    Static validation found ERROR-level problems in pending units.

    Raised before anything executes.
    """

    code = "VALIDATION_FAILED"

    def __init__(self, errors) -> None:
        self.errors = list(errors)
        super().__init__(
            f"Pending units failed validation: {len(self.errors)} error(s)",
            unit_id=self.errors[0].unit_id if self.errors else None,
            details={'errors': [e.to_dict() for e in self.errors]},
        )


class LedgerEntryNotFound(MigrationError):
    """No ledger entry exists for the requested unit id."""

    code = "NOT_FOUND"


class RunCancelled(MigrationError):
    """
    The run was stopped between units on operator request.

    Units applied before the cancellation stay applied.
    """

    code = "CANCELLED"

    def __init__(self, applied_count: int, next_unit_id: Optional[str]) -> None:
        self.applied_count = applied_count
        super().__init__(
            f"Run cancelled after {applied_count} unit(s)",
            unit_id=next_unit_id,
            details={'applied_count': applied_count},
        )
