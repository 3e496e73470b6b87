"""
Running a unit's forward action inside a session.

SQL actions are split into individual statements because drivers differ in
multi-statement support (SQLite executes one statement at a time, asyncpg
refuses multiple statements in a prepared query). Splitting is done with
sqlparse, which keeps dollar-quoted bodies (``AS $$ ... $$``,
``DO $$ ... $$``) and string literals intact.
"""
import sqlparse
from sqlalchemy.ext.asyncio import AsyncSession

from schemaledger.migrations.migration import MigrationUnit


def split_sql_statements(sql: str) -> list[str]:
    """Split SQL string into individual statements.

    Comment-only chunks are dropped. Statements keep their own comments and
    trailing semicolon.

    Args:
        sql: SQL string with one or more statements

    Returns:
        List of individual SQL statements
    """
    statements = []
    for stmt in sqlparse.split(sql):
        if strip_sql_comments(stmt):
            statements.append(stmt.strip())
    return statements


def strip_sql_comments(sql: str) -> str:
    """Remove -- and /* */ comments, leaving literals untouched."""
    return sqlparse.format(sql, strip_comments=True).strip()


async def run_forward_action(session: AsyncSession, unit: MigrationUnit) -> int:
    """
    Execute a unit's forward action in the session's transaction.

    Does not commit; the caller owns the transaction.

    Args:
        session: Active database session
        unit: Unit to run

    Returns:
        Number of SQL statements executed (0 for callable actions)
    """
    if not unit.is_sql:
        await unit.forward_action(session)
        return 0

    # exec_driver_sql skips bind-parameter parsing, so ':' in function
    # bodies and '::type' casts reach the database untouched.
    conn = await session.connection()
    statements = split_sql_statements(unit.forward_action)
    for stmt in statements:
        await conn.exec_driver_sql(stmt)
    return len(statements)
