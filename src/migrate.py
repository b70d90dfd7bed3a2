"""
State store schema migrations.

Applies forward-only SQL files from migrations/ in version order. Each
file runs in its own transaction, and concurrent runners are serialized
with a PostgreSQL advisory lock.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary constant identifying the migration lock.
ADVISORY_LOCK_ID = 7_340_021

Migration = Tuple[str, str, Path]


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the table recording applied state store versions."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename TEXT NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Find migration files.

    Returns:
        (version, filename, path) tuples sorted by version.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found = {}
    for entry in directory.iterdir():
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{found[version][1]} and {entry.name}"
            )
        found[version] = (version, entry.name, entry)

    return [found[v] for v in sorted(found)]


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Apply one migration and record it, atomically."""
    version, filename, path = migration
    sql = path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            version,
            filename,
        )

    logger.info(f"State store schema migrated to {version} ({filename})")


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Apply all pending migrations in order.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. It is rolled back and
            earlier migrations stay applied.
    """
    all_migrations = discover_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", ADVISORY_LOCK_ID)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in all_migrations if m[0] not in applied]

            if not pending:
                logger.info("State store schema is up to date")
                return 0

            logger.info(f"Migrating state store schema: {len(pending)} pending")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", ADVISORY_LOCK_ID)

    logger.info(f"State store schema now at version {pending[-1][0]}")
    return len(pending)
