#!/usr/bin/env python3
"""
Command-line interface.

    schemaledger [options] up        Apply pending units
    schemaledger [options] status    Show applied/pending/drifted units
    schemaledger [options] dry-run   Validate and precheck without committing
    schemaledger [options] unlock    Clear a lock left by a crashed run

Exit codes: 0 success, 1 failure, 2 drift detected, 3 lock held.
"""
import argparse
import asyncio
import json
import logging
import signal
import sys

from sqlalchemy.exc import SQLAlchemyError

from schemaledger.config import LOG_FORMAT, configure_logger, load_config
from schemaledger.database import MigrationDatabase
from schemaledger.errors import DriftDetected, LockHeld, MigrationError
from schemaledger.runner import MigrationRunner

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DRIFT = 2
EXIT_LOCK_HELD = 3

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='schemaledger',
        description='Apply ordered, idempotent SQL migrations and track them in a ledger'
    )
    parser.add_argument(
        '--config',
        help='JSON or YAML config file'
    )
    parser.add_argument(
        '--database-url',
        help='SQLAlchemy URL or SQLite file path (default: schemaledger.db)'
    )
    parser.add_argument(
        '--migrations-dir',
        help='Directory of migration .sql files (default: migrations)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        dest='unit_timeout',
        help='Per-unit timeout in seconds (default: none)'
    )
    parser.add_argument(
        '--verify',
        dest='verify_mode',
        choices=['off', 'advisory', 'enforce'],
        help='Precheck each unit before applying it (default: off)'
    )
    parser.add_argument(
        '--applied-by',
        help='Name recorded in the ledger (default: system)'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warning', 'error'],
        help='Logging level (default: info)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print machine-readable output'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('up', help='Apply pending units')
    subparsers.add_parser('status', help='Show unit states')
    subparsers.add_parser('dry-run', help='Validate and precheck pending units')
    subparsers.add_parser('unlock', help='Clear a stale migration lock')

    return parser


def _install_cancel_handlers(executor) -> None:
    """Turn SIGINT/SIGTERM into a between-units cancellation."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, executor.request_cancel)
        except (NotImplementedError, RuntimeError):
            # Windows event loops don't support signal handlers
            pass


def _print_status(statuses, as_json: bool) -> None:
    if as_json:
        print(json.dumps([s.to_dict() for s in statuses], indent=2))
        return

    marks = {'applied': '✓', 'pending': '·', 'drifted': '✗', 'orphaned': '?'}
    for status in statuses:
        applied_at = f"  {status.applied_at:%Y-%m-%d %H:%M:%S}" if status.applied_at else ''
        print(f"{marks[status.state]} {status.unit_id:<40} {status.state:<9}{applied_at}")


def _print_dry_run(report, as_json: bool) -> None:
    if as_json:
        print(json.dumps({
            'ok': report.ok,
            'plan': report.plan.unit_ids,
            'warnings': {
                unit_id: [w.to_dict() for w in warnings]
                for unit_id, warnings in report.warnings.items()
            },
            'violations': {
                unit_id: v.to_dict() for unit_id, v in report.violations.items()
            },
            'unchecked': report.unchecked,
        }, indent=2))
        return

    if not report.plan:
        print('✓ No pending units')
        return

    print(f'{len(report.plan)} pending unit(s):')
    for unit_id in report.plan.unit_ids:
        violation = report.violations.get(unit_id)
        if violation is not None:
            print(f'  ✗ {unit_id}: {violation.stage} failed: {violation.message}')
        elif unit_id in report.unchecked:
            print(f'  - {unit_id}: not checked (earlier unit failed)')
        else:
            print(f'  ✓ {unit_id}')
        for warning in report.warnings.get(unit_id, []):
            print(f'      [{warning.level.value}] {warning.message}')


async def run(args) -> int:
    """Execute one CLI command. Returns the process exit code."""
    config = load_config(args.config, overrides={
        'database_url': args.database_url,
        'migrations_dir': args.migrations_dir,
        'unit_timeout': args.unit_timeout,
        'verify_mode': args.verify_mode,
        'applied_by': args.applied_by,
        'log_level': args.log_level,
    })

    if config.log_file:
        configure_logger(logging.getLogger(), config.log_file,
                         LOG_FORMAT, config.log_level_value)
    logging.getLogger().setLevel(config.log_level_value)

    database = MigrationDatabase(config.database_url)
    runner = MigrationRunner(database, config)

    try:
        if args.command == 'up':
            _install_cancel_handlers(runner.executor)
            applied = await runner.up()
            if applied:
                print(f'✓ Applied {applied} unit(s)')
            else:
                print('✓ No pending units (already up-to-date)')
            return EXIT_OK

        if args.command == 'status':
            _print_status(await runner.status(), args.json)
            return EXIT_OK

        if args.command == 'dry-run':
            report = await runner.dry_run()
            _print_dry_run(report, args.json)
            return EXIT_OK if report.ok else EXIT_FAILURE

        if args.command == 'unlock':
            holder = await runner.force_unlock()
            print(f'✓ Released lock held by {holder}' if holder else '✓ No lock held')
            return EXIT_OK

    except DriftDetected as e:
        print(f'✗ {e}', file=sys.stderr)
        return EXIT_DRIFT
    except LockHeld as e:
        print(f'✗ {e}', file=sys.stderr)
        return EXIT_LOCK_HELD
    except MigrationError as e:
        print(f'✗ {e}', file=sys.stderr)
        if e.__cause__ is not None:
            print(f'  Cause: {e.__cause__}', file=sys.stderr)
        return EXIT_FAILURE
    finally:
        await database.close()

    raise ValueError(f'Unknown command: {args.command}')


def main(argv=None) -> int:
    """Console script entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        return asyncio.run(run(args))
    except (ValueError, FileNotFoundError) as e:
        print(f'✗ {e}', file=sys.stderr)
        return EXIT_FAILURE
    except SQLAlchemyError as e:
        # Unreachable database, unknown driver or bad URL
        print(f'✗ Database error: {e}', file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print('✗ Interrupted', file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
