"""
Schema migrations for the cluster store.

Forward-only SQL files named NNN_description.sql live in migrations/ and are
applied in version order, each in its own transaction. Applied versions are
tracked in the schema_migrations table.

Run standalone with ``python migrate.py`` (or ``--status`` to list pending
migrations without applying them).
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import List, Set, Tuple

import asyncpg
import click

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

Migration = Tuple[str, str, Path]


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id SERIAL PRIMARY KEY,
            version VARCHAR(255) NOT NULL UNIQUE,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Migration]:
    """
    Find migration files, sorted by version.

    Returns:
        List of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.append((match.group(1), entry.name, entry))
    return found


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    """Get the set of already-applied migration versions."""
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def get_pending_migrations(pool: asyncpg.Pool) -> List[Migration]:
    """Return migrations not yet recorded in schema_migrations."""
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)

    available = discover_migrations()
    if not available:
        return []

    async with pool.acquire() as conn:
        applied = await get_applied_versions(conn)

    return [m for m in available if m[0] not in applied]


async def apply_migration(
    pool: asyncpg.Pool, version: str, filename: str, path: Path
) -> None:
    """
    Apply one migration and record it, atomically.

    Raises:
        asyncpg.PostgresError: The SQL failed; nothing is recorded.
    """
    sql = path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename) " "VALUES ($1, $2)",
                version,
                filename,
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in order.

    A failing migration is rolled back and stops the run; earlier ones
    stay applied.

    Returns:
        Number of migrations applied.
    """
    pending = await get_pending_migrations(pool)
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, path in pending:
        await apply_migration(pool, version, filename, path)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)


async def _migrate(status_only: bool) -> List[Migration]:
    from config import DatabaseConfig

    db_config = DatabaseConfig.from_env()
    pool = await asyncpg.create_pool(
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_size=1,
        max_size=2,
    )
    try:
        if status_only:
            return await get_pending_migrations(pool)
        pending = await get_pending_migrations(pool)
        await run_migrations(pool)
        return pending
    finally:
        await pool.close()


@click.command()
@click.option("--status", "status_only", is_flag=True, help="Only list pending")
def main(status_only):
    """Apply pending database migrations."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    migrations = asyncio.run(_migrate(status_only))
    if not migrations:
        click.echo("No pending migrations")
        return
    verb = "Pending" if status_only else "Applied"
    for _, filename, _ in migrations:
        click.echo(f"{verb}: {filename}")


if __name__ == "__main__":
    main()
