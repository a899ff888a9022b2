"""
Schema migrations for the provider store.

SQL files in migrations/ named ``NNN_description.sql`` are applied in order,
each in its own transaction, and recorded in schema_migrations together with
a checksum so edits to already-applied files are detected.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


@dataclass(frozen=True)
class Migration:
    version: str
    filename: str
    path: Path

    @property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Find migration files, ordered by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations: Dict[str, Migration] = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in migrations:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{migrations[version].filename} and {entry.name}"
            )
        migrations[version] = Migration(version, entry.name, entry)

    return [migrations[v] for v in sorted(migrations)]


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to recorded checksum."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Apply one migration and record it, atomically."""
    sql = migration.sql

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                migration.version,
                migration.filename,
                migration.checksum,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(
    pool: asyncpg.Pool, directory: Optional[Path] = None
) -> int:
    """
    Apply all pending migrations in version order.

    Applied migrations whose file content changed are reported but not
    re-run.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    migrations = discover_migrations(directory)
    if not migrations:
        logger.info("No migration files found")
        return 0

    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is not None and recorded != migration.checksum:
            logger.warning(
                f"Migration {migration.filename} changed after it was applied"
            )

    pending = [m for m in migrations if m.version not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    return len(pending)
