"""Forward-only migration runner and schema version helper."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import asyncpg

from paysync.db.models import Table
from paysync.db.pool import close_pool, get_pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# Arbitrary application-wide advisory lock id for migration runs
_MIGRATION_LOCK_ID = 7_401_001


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {Table.SCHEMA_MIGRATIONS} (
            version INTEGER PRIMARY KEY,
            filename TEXT NOT NULL DEFAULT '',
            applied_at TIMESTAMPTZ DEFAULT now()
        )
    """)


def pending_migrations(migrations_dir: Path, applied: set[int]) -> list[tuple[int, Path]]:
    """
    List migration files not yet applied, ordered by version.

    Files are named ``NNN_description.sql``; anything without a numeric
    prefix is ignored.
    """
    pending = []
    for sql_file in migrations_dir.glob("*.sql"):
        prefix = sql_file.stem.split("_", 1)[0]
        if not prefix.isdigit():
            continue
        version = int(prefix)
        if version not in applied:
            pending.append((version, sql_file))
    return sorted(pending)


async def migrate(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in order, each in its own transaction.

    Holds an advisory lock so two processes booting together do not race.

    Returns:
        int: Number of migrations applied in this run

    Raises:
        FileNotFoundError: If migrations directory not found
        RuntimeError: If another migration run holds the lock
        asyncpg.PostgresError: On database errors
    """
    if not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    pool = await get_pool()
    applied_count = 0

    async with pool.acquire() as conn:
        if not await conn.fetchval("SELECT pg_try_advisory_lock($1)", _MIGRATION_LOCK_ID):
            raise RuntimeError("Another migration is currently running")

        try:
            await _ensure_migrations_table(conn)
            rows = await conn.fetch(f"SELECT version FROM {Table.SCHEMA_MIGRATIONS}")
            applied = {row["version"] for row in rows}

            for version, sql_path in pending_migrations(migrations_dir, applied):
                # asyncpg runs a multi-statement script when no arguments are bound
                async with conn.transaction():
                    await conn.execute(sql_path.read_text(encoding="utf-8"))
                    await conn.execute(
                        f"INSERT INTO {Table.SCHEMA_MIGRATIONS} (version, filename) VALUES ($1, $2)",
                        version,
                        sql_path.name,
                    )
                applied_count += 1
                logger.info(f"Applied migration {version:03d}: {sql_path.name}")
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _MIGRATION_LOCK_ID)

    return applied_count


async def schema_version() -> Optional[int]:
    """Highest applied migration version, or None before the first migration."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await _ensure_migrations_table(conn)
        return await conn.fetchval(f"SELECT MAX(version) FROM {Table.SCHEMA_MIGRATIONS}")


def main() -> None:
    """CLI entry point for running migrations."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def _run():
        try:
            applied = await migrate()
            version = await schema_version()
        finally:
            await close_pool()
        logger.info(f"Applied {applied} migration(s); schema version is {version}")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
