"""
Migration catalog discovery.

This module provides the MigrationManager class which handles:
- Discovery of migration files in a migrations directory
- Parsing of migration files (optional UP/DOWN sections)
- Checksum computation for drift detection

Migration files are named ``<id>_<label>.sql`` or ``<id>-<label>.sql`` where
``<id>`` is a sequence number or timestamp.
Examples: 001-drop-index.sql, 20251109193253_fix_security_issues.sql

The unit id is the filename without extension. The whole file is the
forward action unless it uses section markers:

    -- UP
    DROP INDEX IF EXISTS idx_reports_date;

    -- DOWN
    CREATE INDEX idx_reports_date ON reports(report_date);

The DOWN section is optional and is stored but never executed.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from schemaledger.migrations.migration import (
    MigrationUnit,
    compute_checksum,
    label_from_id,
)

logger = logging.getLogger(__name__)


class MigrationManager:
    """
    Loads the unit catalog from a directory of SQL files.

    Does NOT execute units (see MigrationExecutor).

    Example:
        >>> manager = MigrationManager(Path('supabase/migrations'))
        >>> manager.discover_migrations()
        [<MigrationUnit(20251109193253_fix_security_issues)>]
    """

    # Examples: 001_create_table.sql, 002-fix-policies.sql,
    # 20251109193253_fix_security_issues.sql
    MIGRATION_PATTERN = re.compile(r'^(\d+)[-_]([A-Za-z0-9_.-]+)\.sql$')

    # Section markers in migration files
    UP_MARKER = '-- UP'
    DOWN_MARKER = '-- DOWN'

    def __init__(self, migrations_dir: Path):
        """
        Initialize migration manager.

        Args:
            migrations_dir: Directory containing migration files
        """
        self.migrations_dir = Path(migrations_dir)

    def discover_migrations(self) -> List[MigrationUnit]:
        """
        Discover all migration files in the directory.

        Files not matching the naming pattern are skipped with a warning.

        Returns:
            List of MigrationUnit sorted by id ascending

        Raises:
            ValueError: If two files share the same numeric prefix
        """
        if not self.migrations_dir.exists():
            logger.warning(
                f"Migrations directory does not exist: {self.migrations_dir}"
            )
            return []

        migrations = []
        prefixes_seen = {}

        for file_path in sorted(self.migrations_dir.glob('*.sql')):
            match = self.MIGRATION_PATTERN.match(file_path.name)
            if not match:
                logger.warning(
                    f"Skipping invalid migration filename: {file_path.name}"
                )
                continue

            prefix = int(match.group(1))
            if prefix in prefixes_seen:
                raise ValueError(
                    f"Duplicate migration id prefix {match.group(1)}: "
                    f"{prefixes_seen[prefix]} and {file_path.name}"
                )
            prefixes_seen[prefix] = file_path.name

            try:
                migration = self.parse_migration_file(file_path)
            except Exception as e:
                logger.error(f"Failed to parse {file_path}: {e}")
                raise
            migrations.append(migration)
            logger.debug(f"Discovered migration: {migration}")

        return sorted(migrations)

    def parse_migration_file(self, file_path: Path) -> MigrationUnit:
        """
        Parse a migration file into a unit.

        Args:
            file_path: Path to migration file

        Returns:
            MigrationUnit; checksum covers the whole file, comments included

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If the filename is invalid or the forward SQL is empty
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Migration file not found: {file_path}")

        if not self.MIGRATION_PATTERN.match(file_path.name):
            raise ValueError(f"Invalid migration filename: {file_path.name}")

        content = file_path.read_text(encoding='utf-8')
        up_sql, down_sql = self._parse_sections(content, file_path.name)

        if not up_sql.strip():
            raise ValueError(
                f"Migration {file_path.name} has empty forward section"
            )

        unit_id = file_path.stem
        return MigrationUnit.from_sql(
            unit_id,
            up_sql,
            name=label_from_id(unit_id),
            reverse_sql=down_sql,
            source_path=str(file_path.absolute()),
            checksum=compute_checksum(content),
        )

    def _parse_sections(
        self,
        content: str,
        filename: str
    ) -> Tuple[str, Optional[str]]:
        """
        Split file content into forward and reverse SQL.

        Without markers the whole content is the forward SQL.

        Returns:
            Tuple of (up_sql, down_sql or None)

        Raises:
            ValueError: If DOWN appears before UP
        """
        lines = content.split('\n')

        up_start = None
        down_start = None

        # Find section markers (case-insensitive)
        for i, line in enumerate(lines):
            line_stripped = line.strip().upper()
            if line_stripped == self.UP_MARKER and up_start is None:
                up_start = i + 1
            elif line_stripped == self.DOWN_MARKER and down_start is None:
                down_start = i + 1

        if up_start is None and down_start is None:
            return content.strip(), None

        if up_start is None:
            up_start = 0

        if down_start is None:
            return '\n'.join(lines[up_start:]).strip(), None

        if up_start >= down_start:
            raise ValueError(
                f"Migration {filename} has '{self.DOWN_MARKER}' before "
                f"'{self.UP_MARKER}' (UP at line {up_start}, "
                f"DOWN at line {down_start})"
            )

        up_sql = '\n'.join(lines[up_start:down_start - 1]).strip()
        down_sql = '\n'.join(lines[down_start:]).strip() or None

        return up_sql, down_sql

    def find_migration(self, unit_id: str) -> MigrationUnit:
        """
        Find a unit by id.

        Raises:
            FileNotFoundError: If no file defines that id
        """
        for migration in self.discover_migrations():
            if migration.id == unit_id:
                return migration

        raise FileNotFoundError(f"Migration not found: {unit_id}")
