"""
Planner: computes the ordered units still to apply.

Given the unit catalog and the ledger's view of applied units, the plan is
every catalog unit whose id is not applied, ascending by id. Planning fails
with DriftDetected if any applied unit's content changed since it was
recorded.
"""

import logging
from collections.abc import Mapping
from typing import AbstractSet, Iterable, Union

from schemaledger.errors import DriftDetected
from schemaledger.migrations.migration import LedgerEntry, MigrationUnit, Plan

logger = logging.getLogger(__name__)

AppliedView = Union[Mapping, AbstractSet[str]]


def _stored_checksum(value) -> str:
    if isinstance(value, LedgerEntry):
        return value.checksum
    return value


def check_duplicates(catalog: Iterable[MigrationUnit]) -> None:
    """
    Raise ValueError if two units share an id.
    """
    seen = set()
    for unit in catalog:
        if unit.id in seen:
            raise ValueError(f"Duplicate migration unit id {unit.id!r} in catalog")
        seen.add(unit.id)


def find_drift(
    catalog: Iterable[MigrationUnit],
    applied: Mapping,
) -> dict[str, tuple[str, str]]:
    """
    Compare catalog checksums with stored ledger checksums.

    Args:
        catalog: Units with current checksums
        applied: Unit id to LedgerEntry (or stored checksum string)

    Returns:
        Unit id to (stored, current) for every mismatch
    """
    drifted = {}
    for unit in catalog:
        if unit.id in applied:
            stored = _stored_checksum(applied[unit.id])
            if stored != unit.checksum:
                drifted[unit.id] = (stored, unit.checksum)
    return drifted


def plan(catalog: Iterable[MigrationUnit], applied: AppliedView) -> Plan:
    """
    Calculate units to apply.

    Args:
        catalog: Available units (expected in ascending id order; sorted
            here regardless)
        applied: Ledger view, either unit id -> LedgerEntry / stored checksum,
            or a plain set of applied ids (drift is not checked then)

    Returns:
        Plan of pending units, ascending by id. Empty when the catalog is
        empty or fully applied.

    Raises:
        ValueError: If the catalog contains duplicate ids
        DriftDetected: If an applied unit's checksum changed

    Example:
        >>> pending = plan(catalog, {'001-drop-index': entry})
        >>> pending.unit_ids
        ['002-fix-policies', '003-fix-function']
    """
    catalog = list(catalog)
    check_duplicates(catalog)

    if isinstance(applied, Mapping):
        drifted = find_drift(catalog, applied)
        if drifted:
            for unit_id, (stored, current) in sorted(drifted.items()):
                logger.error(
                    'Drift detected for unit %s: stored %s..., current %s...',
                    unit_id, stored[:8], current[:8]
                )
            raise DriftDetected(drifted)
        applied_ids = set(applied.keys())
    else:
        applied_ids = set(applied)

    catalog_ids = {unit.id for unit in catalog}
    for orphan in sorted(applied_ids - catalog_ids):
        logger.warning('Ledger entry %s has no matching unit in catalog', orphan)

    pending = sorted(unit for unit in catalog if unit.id not in applied_ids)

    applied_units = [unit for unit in catalog if unit.id in applied_ids]
    if applied_units and pending:
        newest_applied = max(applied_units)
        for unit in pending:
            if unit < newest_applied:
                logger.warning(
                    'Unit %s is pending but sorts before applied unit %s '
                    '(applying out of order)',
                    unit.id, newest_applied.id
                )

    return Plan(tuple(pending))


class Planner:
    """
    Plans against a live ledger.

    Example:
        >>> planner = Planner(LedgerStore(database))
        >>> pending = await planner.plan(catalog)
    """

    def __init__(self, ledger):
        self.ledger = ledger

    async def plan(self, catalog: Iterable[MigrationUnit], session=None) -> Plan:
        """Read ledger entries and compute the plan."""
        applied = await self.ledger.entries(session)
        result = plan(catalog, applied)
        logger.info(
            '%d unit(s) applied, %d pending', len(applied), len(result)
        )
        return result
