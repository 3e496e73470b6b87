"""
Unit tests for MigrationManager class.

Tests cover:
- Migration file discovery and sorting
- Migration file parsing (whole-file and UP/DOWN sections)
- Checksum computation
- Error handling and validation
"""

import pytest
from pathlib import Path

from schemaledger.migrations.migration import compute_checksum
from schemaledger.migrations.migration_manager import MigrationManager

POSTGRES_MIGRATION = (
    Path(__file__).parents[2] / "fixtures" / "postgres"
    / "20251109193253_fix_security_issues.sql"
)


class TestMigrationDiscovery:
    """Test migration file discovery."""

    @pytest.fixture
    def temp_migrations_dir(self, tmp_path):
        """Create temporary migrations directory."""
        migrations_dir = tmp_path / "migrations"
        migrations_dir.mkdir()

        (migrations_dir / "001-drop-index.sql").write_text(
            "DROP INDEX IF EXISTS idx_a;\n"
        )
        (migrations_dir / "002_fix_policies.sql").write_text(
            "-- UP\nDROP VIEW IF EXISTS v_dup;\n-- DOWN\nCREATE VIEW v_dup AS SELECT 1;\n"
        )
        (migrations_dir / "010-add-index.sql").write_text(  # Gap in ids - OK
            "CREATE INDEX IF NOT EXISTS idx_b ON t(b);\n"
        )

        # Invalid filename (should be skipped)
        (migrations_dir / "invalid_name.sql").write_text("SELECT 1;\n")

        # Non-SQL file (should be skipped)
        (migrations_dir / "README.md").write_text("# Migrations")

        return migrations_dir

    def test_discover_migrations_success(self, temp_migrations_dir):
        """Test discovering valid migrations."""
        manager = MigrationManager(temp_migrations_dir)
        migrations = manager.discover_migrations()

        assert [m.id for m in migrations] == [
            '001-drop-index', '002_fix_policies', '010-add-index'
        ]
        assert migrations[0].name == 'drop index'
        assert migrations[1].name == 'fix policies'

    def test_discover_orders_by_numeric_prefix(self, tmp_path):
        """Test 10 sorts after 9 even though '10' < '9' as text."""
        (tmp_path / "9_nine.sql").write_text("SELECT 9;")
        (tmp_path / "10_ten.sql").write_text("SELECT 10;")

        migrations = MigrationManager(tmp_path).discover_migrations()

        assert [m.id for m in migrations] == ['9_nine', '10_ten']

    def test_discover_migrations_missing_directory(self, tmp_path):
        """Test discovering when the migrations directory doesn't exist."""
        manager = MigrationManager(tmp_path / 'nonexistent')

        assert manager.discover_migrations() == []

    def test_discover_migrations_no_sql_files(self, tmp_path):
        """Test discovering when directory has no .sql files."""
        (tmp_path / "README.md").write_text("# Migrations")
        (tmp_path / "notes.txt").write_text("Notes")

        assert MigrationManager(tmp_path).discover_migrations() == []

    def test_discover_migrations_skips_invalid_filenames(self, temp_migrations_dir):
        """Test invalid filenames are skipped."""
        migrations = MigrationManager(temp_migrations_dir).discover_migrations()

        ids = [m.id for m in migrations]
        assert 'invalid_name' not in ids
        assert len(ids) == 3

    def test_discover_migrations_duplicate_prefix(self, tmp_path):
        """Test error on duplicate numeric prefixes."""
        (tmp_path / "001_first.sql").write_text("SELECT 1;")
        (tmp_path / "001-duplicate.sql").write_text("SELECT 2;")

        manager = MigrationManager(tmp_path)

        with pytest.raises(ValueError, match="Duplicate migration id prefix 001"):
            manager.discover_migrations()

    def test_discover_migrations_source_path_absolute(self, temp_migrations_dir):
        """Test unit source_path is absolute."""
        for migration in MigrationManager(temp_migrations_dir).discover_migrations():
            assert Path(migration.source_path).is_absolute()

    def test_discover_sample_catalog(self, sample_catalog):
        """Test the bundled three-unit sample catalog."""
        assert [m.id for m in sample_catalog] == [
            '001-drop-index', '002-fix-policies', '003-fix-function'
        ]

    def test_find_migration(self, temp_migrations_dir):
        """Test finding a unit by id."""
        manager = MigrationManager(temp_migrations_dir)

        assert manager.find_migration('010-add-index').id == '010-add-index'
        with pytest.raises(FileNotFoundError, match="Migration not found"):
            manager.find_migration('999-missing')


class TestMigrationParsing:
    """Test migration file parsing."""

    def test_parse_whole_file_is_forward_action(self, tmp_path):
        """Test a file without markers is entirely forward SQL."""
        migration_file = tmp_path / "001_drop.sql"
        migration_file.write_text("-- cleanup\nDROP INDEX IF EXISTS idx_a;\n")

        migration = MigrationManager(tmp_path).parse_migration_file(migration_file)

        assert migration.forward_action == "-- cleanup\nDROP INDEX IF EXISTS idx_a;"
        assert migration.reverse_sql is None

    def test_parse_up_down_sections(self, tmp_path):
        """Test parsing file with UP and DOWN sections."""
        migration_file = tmp_path / "001_create_table.sql"
        migration_file.write_text("""
-- UP
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    username VARCHAR(255) NOT NULL
);
CREATE INDEX idx_users_username ON users(username);

-- DOWN
DROP INDEX idx_users_username;
DROP TABLE users;
""")

        migration = MigrationManager(tmp_path).parse_migration_file(migration_file)

        assert 'CREATE TABLE users' in migration.forward_action
        assert 'CREATE INDEX idx_users_username' in migration.forward_action
        assert 'DROP TABLE' not in migration.forward_action
        assert 'DROP INDEX idx_users_username' in migration.reverse_sql
        assert 'DROP TABLE users' in migration.reverse_sql

    def test_parse_up_without_down(self, tmp_path):
        """Test the DOWN section is optional."""
        migration_file = tmp_path / "001_test.sql"
        migration_file.write_text("-- UP\nCREATE TABLE IF NOT EXISTS t (id INT);\n")

        migration = MigrationManager(tmp_path).parse_migration_file(migration_file)

        assert migration.forward_action == "CREATE TABLE IF NOT EXISTS t (id INT);"
        assert migration.reverse_sql is None

    def test_parse_markers_wrong_order(self, tmp_path):
        """Test error when DOWN comes before UP."""
        migration_file = tmp_path / "001_test.sql"
        migration_file.write_text(
            "-- DOWN\nDROP TABLE test;\n-- UP\nCREATE TABLE test;\n"
        )

        with pytest.raises(ValueError, match="has '-- DOWN' before '-- UP'"):
            MigrationManager(tmp_path).parse_migration_file(migration_file)

    def test_parse_empty_forward_section(self, tmp_path):
        """Test error when the forward SQL is empty."""
        migration_file = tmp_path / "001_test.sql"
        migration_file.write_text("-- UP\n\n-- DOWN\nDROP TABLE test;\n")

        with pytest.raises(ValueError, match="has empty forward section"):
            MigrationManager(tmp_path).parse_migration_file(migration_file)

    def test_parse_case_insensitive_markers(self, tmp_path):
        """Test markers are case-insensitive."""
        migration_file = tmp_path / "001_test.sql"
        migration_file.write_text(
            "-- up\nCREATE TABLE test (id INT);\n-- down\nDROP TABLE test;\n"
        )

        migration = MigrationManager(tmp_path).parse_migration_file(migration_file)

        assert 'CREATE TABLE test' in migration.forward_action
        assert 'DROP TABLE test' in migration.reverse_sql

    def test_parse_file_not_found(self, tmp_path):
        """Test error when file doesn't exist."""
        with pytest.raises(FileNotFoundError, match="Migration file not found"):
            MigrationManager(tmp_path).parse_migration_file(tmp_path / "001_nope.sql")

    def test_parse_invalid_filename(self, tmp_path):
        """Test error when the filename has no numeric id."""
        migration_file = tmp_path / "cleanup.sql"
        migration_file.write_text("SELECT 1;")

        with pytest.raises(ValueError, match="Invalid migration filename"):
            MigrationManager(tmp_path).parse_migration_file(migration_file)

    def test_parse_original_security_fix(self):
        """Test the PostgreSQL security-fix script parses as one unit."""
        manager = MigrationManager(POSTGRES_MIGRATION.parent)
        migration = manager.parse_migration_file(POSTGRES_MIGRATION)

        assert migration.id == '20251109193253_fix_security_issues'
        assert migration.name == 'fix security issues'
        assert 'DO $$' in migration.forward_action
        assert migration.checksum == compute_checksum(POSTGRES_MIGRATION.read_text())


class TestChecksum:
    """Test checksum computation."""

    def test_checksum_covers_whole_file(self, tmp_path):
        """Test comments and the DOWN section both affect the checksum."""
        (tmp_path / "001_a.sql").write_text("-- UP\nSELECT 1;\n-- DOWN\nSELECT 2;\n")
        (tmp_path / "002_b.sql").write_text("-- UP\nSELECT 1;\n-- DOWN\nSELECT 3;\n")

        first, second = MigrationManager(tmp_path).discover_migrations()

        assert first.forward_action == second.forward_action
        assert first.checksum != second.checksum

    def test_checksum_whitespace_sensitive(self):
        """Test checksum changes with whitespace changes."""
        assert compute_checksum("SELECT 1;\n") != compute_checksum("SELECT 1;\n\n")

    def test_checksum_empty_content(self):
        """Test checksum of empty content."""
        checksum = compute_checksum("")

        assert len(checksum) == 64
        # SHA-256 of empty string
        assert checksum == 'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
