#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

import yaml
from packaging import version

from schemaledger.migrations.verifier import VerifyMode

LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

ENV_DATABASE_URL = 'SCHEMALEDGER_DATABASE_URL'
ENV_MIGRATIONS_DIR = 'SCHEMALEDGER_MIGRATIONS_DIR'


class RobustFileHandler(logging.FileHandler):
    """FileHandler that gracefully handles flush errors on Windows"""

    def flush(self):
        """Flush the stream, catching OSError on Windows file handles"""
        try:
            super().flush()
        except OSError as e:
            # Windows can fail to flush with "Invalid argument" when the
            # handle is in an inconsistent state
            if e.errno != 22:  # EINVAL
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=LOG_FORMAT,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    formatter = logging.Formatter(log_format)

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


@dataclass(frozen=True)
class MigrateConfig:
    """Settings for one migration run.

    Attributes:
        database_url: SQLAlchemy URL or SQLite file path
        migrations_dir: Directory holding the unit catalog
        unit_timeout: Per-unit timeout in seconds (None for no limit)
        verify_mode: Precheck mode (off, advisory, enforce)
        applied_by: Recorded in ledger entries
        log_level: Logging level name
        log_file: Log file path (None logs to stderr)
    """
    database_url: str = 'schemaledger.db'
    migrations_dir: str = 'migrations'
    unit_timeout: Optional[float] = None
    verify_mode: VerifyMode = VerifyMode.OFF
    applied_by: str = 'system'
    log_level: str = 'info'
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.unit_timeout is not None:
            timeout = float(self.unit_timeout)
            if timeout <= 0:
                raise ValueError(f"unit_timeout must be positive, got {self.unit_timeout}")
            object.__setattr__(self, 'unit_timeout', timeout)

        try:
            object.__setattr__(self, 'verify_mode', VerifyMode(self.verify_mode))
        except ValueError:
            raise ValueError(
                f"verify_mode must be one of "
                f"{', '.join(m.value for m in VerifyMode)}, got {self.verify_mode!r}"
            ) from None

        if not isinstance(getattr(logging, str(self.log_level).upper(), None), int):
            raise ValueError(f"Unknown log level: {self.log_level!r}")

    @property
    def db_type(self) -> str:
        """'postgresql' or 'sqlite', from the database URL."""
        return 'postgresql' if self.database_url.startswith('postgresql') else 'sqlite'

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level.upper())


def read_config_file(config_file):
    """Load a JSON or YAML config file into a dictionary.

    Args:
        config_file: Path ending in .json, .yaml or .yml

    Returns:
        Configuration dictionary (empty if the file is empty)
    """
    with open(config_file, 'r', encoding='utf-8') as fp:
        if config_file.endswith(('.yaml', '.yml')):
            conf = yaml.safe_load(fp)
        else:
            conf = json.load(fp)
    return conf or {}


def _settings_from_dict(conf):
    """Extract MigrateConfig fields from a v1 (flat) or v2 (nested) dict."""
    config_version = conf.get('version', '1.0')
    is_v2 = version.parse(str(config_version)) >= version.parse('2.0')

    if is_v2:
        database = conf.get('database', {})
        migrations = conf.get('migrations', {})
        logging_config = conf.get('logging', {})
        settings = {
            'database_url': database.get('url'),
            'migrations_dir': migrations.get('dir'),
            'unit_timeout': migrations.get('timeout'),
            'verify_mode': migrations.get('verify'),
            'applied_by': migrations.get('applied_by'),
            'log_level': logging_config.get('level'),
            'log_file': logging_config.get('file'),
        }
    else:
        settings = {
            'database_url': conf.get('database_url'),
            'migrations_dir': conf.get('migrations_dir'),
            'unit_timeout': conf.get('unit_timeout'),
            'verify_mode': conf.get('verify_mode'),
            'applied_by': conf.get('applied_by'),
            'log_level': conf.get('log_level'),
            'log_file': conf.get('log_file'),
        }

    return {key: value for key, value in settings.items() if value is not None}


def load_config(config_file=None, overrides=None, environ=None):
    """Build the run configuration.

    Precedence, lowest to highest: defaults, config file, environment
    (SCHEMALEDGER_DATABASE_URL, SCHEMALEDGER_MIGRATIONS_DIR), overrides
    (CLI flags; None values are ignored).

    Args:
        config_file: Optional JSON/YAML config path
        overrides: Optional dict of MigrateConfig fields
        environ: Environment mapping (defaults to os.environ)

    Returns:
        MigrateConfig

    Raises:
        ValueError: On invalid settings
        FileNotFoundError: If config_file doesn't exist
    """
    environ = os.environ if environ is None else environ
    settings = {}

    if config_file:
        settings.update(_settings_from_dict(read_config_file(config_file)))

    if environ.get(ENV_DATABASE_URL):
        settings['database_url'] = environ[ENV_DATABASE_URL]
    if environ.get(ENV_MIGRATIONS_DIR):
        settings['migrations_dir'] = environ[ENV_MIGRATIONS_DIR]

    if overrides:
        settings.update({k: v for k, v in overrides.items() if v is not None})

    return replace(MigrateConfig(), **settings)
