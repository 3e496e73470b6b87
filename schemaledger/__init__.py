"""Ordered, idempotent schema migrations tracked in a database ledger."""
from .config import MigrateConfig, configure_logger, load_config
from .database import MigrationDatabase
from .runner import MigrationRunner

__version__ = '0.1.0'

__all__ = ['MigrateConfig', 'MigrationDatabase', 'MigrationRunner',
           'configure_logger', 'load_config']
