#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Static validation of migration units.

Lints unit SQL before anything touches the database: destructive
statements, DDL without existence guards, dialect limitations and basic
syntax. Provides warnings at different severity levels (INFO, WARNING,
ERROR). Only ERROR blocks a run; the rest is reported.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import sqlparse
from sqlparse import tokens as T

from schemaledger.migrations.actions import split_sql_statements, strip_sql_comments
from schemaledger.migrations.migration import MigrationUnit


class WarningLevel(Enum):
    """Severity levels for validation warnings."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ValidationWarning:
    """
    Warning from unit validation.

    Attributes:
        level: Severity level (INFO, WARNING, ERROR)
        message: Human-readable warning message
        unit_id: Unit that triggered the warning
        category: 'checksum', 'destructive', 'idempotency', 'dialect',
            'syntax' or 'opaque'
        statement: Head of the offending statement (optional)

    Example:
        >>> warning = ValidationWarning(
        ...     level=WarningLevel.WARNING,
        ...     message="DROP INDEX without IF EXISTS",
        ...     unit_id="001-drop-index",
        ...     category="idempotency"
        ... )
        >>> print(repr(warning))
        [WARNING] 001-drop-index: DROP INDEX without IF EXISTS
    """
    level: WarningLevel
    message: str
    unit_id: str
    category: str
    statement: Optional[str] = None

    def to_dict(self) -> dict:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary with all fields, level as string value
        """
        return {
            'level': self.level.value,
            'message': self.message,
            'unit_id': self.unit_id,
            'category': self.category,
            'statement': self.statement,
        }

    def __repr__(self) -> str:
        """String representation for logging."""
        return f"[{self.level.value}] {self.unit_id}: {self.message}"


def _head(statement: str, width: int = 60) -> str:
    flat = ' '.join(statement.split())
    return flat if len(flat) <= width else flat[:width - 3] + '...'


class MigrationValidator:
    """
    Validates units for safety, idempotency and compatibility issues.

    Checks performed:
    - Destructive operations (DROP TABLE, DROP COLUMN, TRUNCATE, CASCADE)
    - Missing existence guards (DROP without IF EXISTS, CREATE TABLE/INDEX
      without IF NOT EXISTS, CREATE FUNCTION without OR REPLACE, CREATE
      TRIGGER/POLICY without a preceding DROP ... IF EXISTS)
    - Dialect limitations (PostgreSQL-only constructs on SQLite)
    - Basic syntax (unbalanced parentheses outside literals and comments)
    - Checksum verification (drift detection)

    Attributes:
        db_type: Database type ('sqlite', 'postgresql')

    Example:
        >>> validator = MigrationValidator(db_type='postgresql')
        >>> warnings = validator.validate_unit(unit)
        >>> errors = [w for w in warnings if w.level == WarningLevel.ERROR]
    """

    DROP_TABLE_PATTERN = re.compile(r'^\s*DROP\s+TABLE\b', re.IGNORECASE)
    DROP_COLUMN_PATTERN = re.compile(r'\bDROP\s+COLUMN\b', re.IGNORECASE)
    TRUNCATE_PATTERN = re.compile(r'^\s*TRUNCATE\b', re.IGNORECASE)
    CASCADE_PATTERN = re.compile(r'\bCASCADE\s*;?\s*$', re.IGNORECASE)

    UNGUARDED_DROP_PATTERN = re.compile(
        r'^\s*DROP\s+(TABLE|INDEX|VIEW|MATERIALIZED\s+VIEW|POLICY|FUNCTION|'
        r'TRIGGER|SEQUENCE|TYPE|SCHEMA)\s+(?!\s*IF\s+EXISTS\b)',
        re.IGNORECASE
    )
    UNGUARDED_CREATE_PATTERN = re.compile(
        r'^\s*CREATE\s+(?:UNIQUE\s+)?(TABLE|INDEX|SCHEMA|SEQUENCE)\s+'
        r'(?!\s*(?:CONCURRENTLY\s+)?IF\s+NOT\s+EXISTS\b)',
        re.IGNORECASE
    )
    CREATE_FUNCTION_PATTERN = re.compile(
        r'^\s*CREATE\s+FUNCTION\b', re.IGNORECASE
    )
    CREATE_NAMED_PATTERN = re.compile(
        r'^\s*CREATE\s+(TRIGGER|POLICY)\s+("[^"]+"|[\w.]+)', re.IGNORECASE
    )
    DROP_NAMED_GUARDED_PATTERN = re.compile(
        r'^\s*DROP\s+(TRIGGER|POLICY)\s+IF\s+EXISTS\s+("[^"]+"|[\w.]+)',
        re.IGNORECASE
    )

    # SQLite limitations
    ALTER_COLUMN_PATTERN = re.compile(r'\bALTER\s+COLUMN\b', re.IGNORECASE)
    ADD_CONSTRAINT_PATTERN = re.compile(r'\bADD\s+CONSTRAINT\b', re.IGNORECASE)
    POSTGRES_ONLY_PATTERN = re.compile(
        r'^\s*(DO\b|CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\b|CREATE\s+POLICY\b|'
        r'DROP\s+POLICY\b|DROP\s+FUNCTION\b|ALTER\s+TABLE\s+\S+\s+ENABLE\s+ROW)',
        re.IGNORECASE
    )

    def __init__(self, db_type: str = 'postgresql'):
        """
        Initialize validator.

        Args:
            db_type: Database type ('sqlite', 'postgresql')
        """
        self.db_type = db_type.lower()

    def validate_unit(self, unit: MigrationUnit) -> List[ValidationWarning]:
        """
        Validate a unit for safety and compatibility issues.

        Args:
            unit: Unit to validate

        Returns:
            List of ValidationWarning objects (empty if no issues)
        """
        if not unit.is_sql:
            return [ValidationWarning(
                level=WarningLevel.INFO,
                message="Callable action is opaque; not statically checked",
                unit_id=unit.id,
                category='opaque'
            )]

        statements = [
            strip_sql_comments(stmt)
            for stmt in split_sql_statements(unit.forward_action)
        ]

        warnings = []
        warnings.extend(self._check_destructive_operations(unit, statements))
        warnings.extend(self._check_guards(unit, statements))
        if self.db_type == 'sqlite':
            warnings.extend(self._check_sqlite_limitations(unit, statements))
        warnings.extend(self._check_syntax(unit, statements))

        return warnings

    def verify_checksum(
        self,
        unit: MigrationUnit,
        stored_checksum: str
    ) -> List[ValidationWarning]:
        """
        Verify unit checksum matches the checksum stored in the ledger.

        Args:
            unit: Unit with current checksum
            stored_checksum: Checksum recorded when the unit was applied

        Returns:
            List with ERROR warning if mismatch, empty list if match
        """
        if unit.checksum == stored_checksum:
            return []

        return [ValidationWarning(
            level=WarningLevel.ERROR,
            message=f"Unit has been modified after it was applied (checksum mismatch). "
                    f"Expected: {stored_checksum[:8]}..., Got: {unit.checksum[:8]}...",
            unit_id=unit.id,
            category='checksum'
        )]

    def _check_destructive_operations(
        self,
        unit: MigrationUnit,
        statements: List[str]
    ) -> List[ValidationWarning]:
        """
        Check for statements that destroy data.

        All generate WARNING level (not ERROR) to allow execution with
        acknowledgment.
        """
        warnings = []

        for stmt in statements:
            if self.DROP_TABLE_PATTERN.search(stmt):
                message = "Unit drops table (all table data will be deleted)"
            elif self.TRUNCATE_PATTERN.search(stmt):
                message = "Unit truncates table (all rows will be deleted)"
            elif self.DROP_COLUMN_PATTERN.search(stmt):
                message = "Unit drops column (potential data loss)"
            elif self.CASCADE_PATTERN.search(stmt):
                message = "CASCADE also removes dependent objects"
            else:
                continue
            warnings.append(ValidationWarning(
                level=WarningLevel.WARNING,
                message=message,
                unit_id=unit.id,
                category='destructive',
                statement=_head(stmt)
            ))

        return warnings

    def _check_guards(
        self,
        unit: MigrationUnit,
        statements: List[str]
    ) -> List[ValidationWarning]:
        """
        Check for DDL that fails when re-run.

        Units should be safe to re-run even though the ledger prevents it;
        these are WARNING level.
        """
        warnings = []
        dropped_guarded = set()

        def warn(message, stmt):
            warnings.append(ValidationWarning(
                level=WarningLevel.WARNING,
                message=message,
                unit_id=unit.id,
                category='idempotency',
                statement=_head(stmt)
            ))

        for stmt in statements:
            match = self.UNGUARDED_DROP_PATTERN.search(stmt)
            if match:
                warn(f"DROP {match.group(1).upper()} without IF EXISTS", stmt)
                continue

            match = self.UNGUARDED_CREATE_PATTERN.search(stmt)
            if match:
                warn(f"CREATE {match.group(1).upper()} without IF NOT EXISTS", stmt)
                continue

            if self.CREATE_FUNCTION_PATTERN.search(stmt):
                warn("CREATE FUNCTION without OR REPLACE", stmt)
                continue

            match = self.DROP_NAMED_GUARDED_PATTERN.search(stmt)
            if match:
                dropped_guarded.add((match.group(1).upper(), match.group(2).lower()))
                continue

            match = self.CREATE_NAMED_PATTERN.search(stmt)
            if match:
                kind, name = match.group(1).upper(), match.group(2).lower()
                if (kind, name) not in dropped_guarded:
                    warn(
                        f"CREATE {kind} {match.group(2)} not preceded by "
                        f"DROP {kind} IF EXISTS",
                        stmt
                    )

        return warnings

    def _check_sqlite_limitations(
        self,
        unit: MigrationUnit,
        statements: List[str]
    ) -> List[ValidationWarning]:
        """
        Check for operations SQLite does not support.

        These generate ERROR warnings that prevent execution.
        """
        warnings = []

        for stmt in statements:
            if self.ALTER_COLUMN_PATTERN.search(stmt):
                message = ("SQLite does not support ALTER COLUMN directly. "
                           "Use table recreation pattern with modified schema.")
            elif self.ADD_CONSTRAINT_PATTERN.search(stmt):
                message = ("SQLite does not support ADD CONSTRAINT directly. "
                           "Define constraints in CREATE TABLE or use table recreation.")
            elif self.POSTGRES_ONLY_PATTERN.search(stmt):
                message = "PostgreSQL-only statement cannot run on SQLite"
            else:
                continue
            warnings.append(ValidationWarning(
                level=WarningLevel.ERROR,
                message=message,
                unit_id=unit.id,
                category='dialect',
                statement=_head(stmt)
            ))

        return warnings

    def _check_syntax(
        self,
        unit: MigrationUnit,
        statements: List[str]
    ) -> List[ValidationWarning]:
        """
        Check each statement for unbalanced parentheses.

        Parentheses inside string literals, dollar-quoted bodies and
        comments are ignored.
        """
        warnings = []

        for stmt in statements:
            depth = 0
            balanced = True
            for parsed in sqlparse.parse(stmt):
                for token in parsed.flatten():
                    if token.ttype not in T.Punctuation:
                        continue
                    if token.value == '(':
                        depth += 1
                    elif token.value == ')':
                        depth -= 1
                        if depth < 0:
                            balanced = False
            if depth != 0 or not balanced:
                warnings.append(ValidationWarning(
                    level=WarningLevel.ERROR,
                    message="Unmatched parentheses",
                    unit_id=unit.id,
                    category='syntax',
                    statement=_head(stmt)
                ))

        return warnings
