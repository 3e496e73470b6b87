"""
Migration data models.

This module defines the core data structures of the migration engine:
- MigrationUnit: One identified, ordered, immutable piece of change logic
- LedgerEntry: A unit that has been recorded as applied in the ledger
- Plan: The ordered units still to apply (transient, never persisted)

Unit ids start with a numeric sequence or timestamp (``001-drop-index``,
``20251109193253_fix_security_issues``). Units order by the integer value of
that prefix, then by the full id.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

# Opaque forward action: SQL text, or an async callable run inside the
# unit's transaction.
ForwardAction = Union[str, Callable[[AsyncSession], Awaitable[None]]]

UNIT_ID_PATTERN = re.compile(r'^(\d+)([-_][A-Za-z0-9_.-]+)?$')


def compute_checksum(content: str) -> str:
    """
    Compute SHA-256 checksum of unit content.

    Used to detect drift: if an applied unit's content changes, its
    checksum no longer matches the one stored in the ledger.

    Args:
        content: Full unit content including comments

    Returns:
        Hexadecimal SHA-256 hash (64 characters)

    Example:
        >>> len(compute_checksum("DROP INDEX IF EXISTS idx_a;"))
        64
    """
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def unit_sort_key(unit_id: str) -> Tuple[int, str]:
    """Sort key for unit ids: numeric prefix first, then the whole id."""
    match = UNIT_ID_PATTERN.match(unit_id)
    if not match:
        raise ValueError(f"Invalid migration unit id: {unit_id!r}")
    return int(match.group(1)), unit_id


@dataclass(frozen=True)
class MigrationUnit:
    """
    Represents a single migration unit.

    Attributes:
        id: Unique sortable identifier (e.g., '001-drop-index')
        name: Human label (e.g., 'drop index')
        forward_action: SQL text or async callable applying the change
        checksum: SHA-256 of the unit content, for drift detection
        reverse_sql: Optional reverse action (stored, never executed)
        source_path: File the unit was loaded from (optional)

    Example:
        >>> unit = MigrationUnit.from_sql(
        ...     '001-drop-index',
        ...     'DROP INDEX IF EXISTS idx_financial_reports_report_date;'
        ... )
        >>> print(unit)
        <MigrationUnit(001-drop-index)>
    """

    id: str
    name: str
    forward_action: ForwardAction = field(compare=False)
    checksum: str
    reverse_sql: Optional[str] = field(default=None, compare=False)
    source_path: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate unit after initialization."""
        unit_sort_key(self.id)

        if not self.checksum:
            raise ValueError(f"Migration unit {self.id} has no checksum")

        if isinstance(self.forward_action, str):
            if not self.forward_action.strip():
                raise ValueError(
                    f"Migration unit {self.id} has empty forward action"
                )
        elif not callable(self.forward_action):
            raise TypeError(
                f"Migration unit {self.id} forward action must be SQL text "
                f"or an async callable, got {type(self.forward_action).__name__}"
            )

    @classmethod
    def from_sql(
        cls,
        unit_id: str,
        sql: str,
        name: Optional[str] = None,
        reverse_sql: Optional[str] = None,
        source_path: Optional[str] = None,
        checksum: Optional[str] = None,
    ) -> 'MigrationUnit':
        """
        Build a SQL unit, computing its checksum from the SQL text.

        Args:
            unit_id: Sortable unit id
            sql: Forward SQL
            name: Human label (derived from the id when omitted)
            reverse_sql: Optional reverse SQL
            source_path: File the SQL came from (optional)
            checksum: Precomputed checksum (e.g., of the whole file)

        Returns:
            MigrationUnit
        """
        if name is None:
            name = label_from_id(unit_id)
        return cls(
            id=unit_id,
            name=name,
            forward_action=sql,
            checksum=checksum or compute_checksum(sql),
            reverse_sql=reverse_sql,
            source_path=source_path,
        )

    @property
    def is_sql(self) -> bool:
        return isinstance(self.forward_action, str)

    @property
    def sort_key(self) -> Tuple[int, str]:
        return unit_sort_key(self.id)

    def __lt__(self, other: 'MigrationUnit') -> bool:
        """Allow sorting units by id."""
        if not isinstance(other, MigrationUnit):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __repr__(self) -> str:
        return f"<MigrationUnit({self.id})>"


def label_from_id(unit_id: str) -> str:
    """Derive a human label from a unit id: '001-drop-index' -> 'drop index'."""
    match = UNIT_ID_PATTERN.match(unit_id)
    if not match or not match.group(2):
        return unit_id
    return re.sub(r'[-_]+', ' ', match.group(2)).strip()


@dataclass(frozen=True)
class LedgerEntry:
    """
    Represents a unit recorded as applied in the ledger.

    This corresponds to a row in the schema_ledger table. Created by the
    executor on successful apply and never mutated afterwards.

    Attributes:
        unit_id: Id of the applied unit
        checksum: Unit checksum at time of application
        applied_at: When the unit was applied (UTC)
        name: Unit label at time of application
        applied_by: User/system that applied it
        execution_time_ms: Time taken by the forward action (optional)
    """

    unit_id: str
    checksum: str
    applied_at: datetime
    name: str = ''
    applied_by: str = 'system'
    execution_time_ms: Optional[int] = None

    def __repr__(self) -> str:
        return f"<LedgerEntry({self.unit_id} @ {self.applied_at:%Y-%m-%d %H:%M:%S})>"


@dataclass(frozen=True)
class Plan:
    """
    Ordered sequence of units not yet present in the ledger.

    Recomputed on every run; never persisted.
    """

    units: Tuple[MigrationUnit, ...] = ()

    def __iter__(self) -> Iterator[MigrationUnit]:
        return iter(self.units)

    def __len__(self) -> int:
        return len(self.units)

    def __bool__(self) -> bool:
        return bool(self.units)

    @property
    def unit_ids(self) -> list[str]:
        return [unit.id for unit in self.units]

    def __repr__(self) -> str:
        return f"<Plan({', '.join(self.unit_ids) or 'empty'})>"
