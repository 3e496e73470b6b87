#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SQLAlchemy ORM Models for the migration ledger
==============================================

Defines the engine's own bookkeeping tables using SQLAlchemy 2.0 ORM with
type hints:
- SchemaLedger: One row per applied migration unit
- MigrationLock: Single-row "migration in progress" lock

Usage:
    from schemaledger.models import Base, SchemaLedger

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Query
    async with AsyncSession(engine) as session:
        result = await session.execute(
            select(SchemaLedger).where(SchemaLedger.unit_id == '001-drop-index')
        )
        row = result.scalar_one_or_none()
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================================================
# Base Class
# ============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all ORM models.

    Attributes:
        AsyncAttrs: Enables async attribute loading (SQLAlchemy 2.0)
        DeclarativeBase: Base for declarative model definitions
    """
    pass


# ============================================================================
# Ledger
# ============================================================================

class SchemaLedger(Base):
    """
    Durable record of applied migration units.

    Rows are inserted by the executor in the same transaction as the unit's
    forward action and are never updated or deleted by the engine.
    """
    __tablename__ = 'schema_ledger'

    unit_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Migration unit id (e.g., '001-drop-index')"
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default='',
        comment="Unit label at time of application"
    )

    checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 checksum of unit content (for drift detection)"
    )

    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="When the unit was applied (UTC)"
    )

    applied_by: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default='system',
        comment="User or system that applied the unit"
    )

    execution_time_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Time taken by the forward action in milliseconds"
    )

    def __repr__(self) -> str:
        return f"<SchemaLedger(unit_id='{self.unit_id}', checksum='{self.checksum[:8]}')>"


# ============================================================================
# Run Lock
# ============================================================================

class MigrationLock(Base):
    """
    "Migration in progress" lock.

    Holds at most one row (lock_id = 1). Inserting the row acquires the
    lock; a primary-key collision means another run holds it.
    """
    __tablename__ = 'schema_migration_lock'

    lock_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
        comment="Always 1"
    )

    holder: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="host:pid:token of the run holding the lock"
    )

    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the lock was acquired (UTC)"
    )

    def __repr__(self) -> str:
        return f"<MigrationLock(holder='{self.holder}')>"
