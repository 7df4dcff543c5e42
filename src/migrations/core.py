"""Control database migrations: timestamp-prefixed SQL files tracked in schema_migrations."""

import asyncio
import os
from pathlib import Path
from urllib.parse import urlparse

import asyncpg
import sqlparse

from src.utils.logging import get_logger

logger = get_logger(__name__)

MIGRATION_TABLE = "schema_migrations"


class MigrationError(Exception):
    """Custom exception for migration-related errors."""

    pass


def get_migrations_dir() -> Path:
    """Get the migrations directory path (MIGRATIONS_DIR, default <repo>/migrations)."""
    default_path = Path(__file__).parent.parent.parent / "migrations"
    return Path(os.getenv("MIGRATIONS_DIR", str(default_path)))


def get_control_migrations_dir() -> Path:
    return get_migrations_dir() / "control"


def get_migration_files(directory: Path) -> list[Path]:
    """Get all migration files from a directory, sorted by timestamp."""
    if not directory.exists():
        return []
    # Timestamp prefix ensures filename order is apply order
    return sorted(directory.glob("*.sql"))


def extract_version_from_filename(filename: str) -> str:
    """Extract version timestamp from migration filename."""
    return filename.split("_")[0]


def parse_sql_statements(sql_content: str) -> list[str]:
    """Parse SQL content into individual statements."""
    statements = []
    for statement in sqlparse.split(sql_content):
        stmt = statement.strip()
        if stmt:
            statements.append(stmt)
    return statements


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS public.{MIGRATION_TABLE} (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        );
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    """Get set of applied migration versions."""
    exists = await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = $1
        )
    """,
        MIGRATION_TABLE,
    )
    if not exists:
        return set()

    rows = await conn.fetch(f"SELECT version FROM public.{MIGRATION_TABLE}")
    return {row["version"] for row in rows}


async def apply_migration_file(
    conn: asyncpg.Connection, migration_file: Path, timeout: int = 300, dry_run: bool = False
) -> bool:
    """Apply a single migration file and record it, in one transaction."""
    version = extract_version_from_filename(migration_file.name)
    migration_sql = migration_file.read_text()

    if dry_run:
        statement_count = len(parse_sql_statements(migration_sql))
        logger.info(f"DRY RUN: Would apply {migration_file.name} ({statement_count} statements)")
        return True

    try:
        async with conn.transaction():
            await conn.execute(f"SET LOCAL statement_timeout = '{int(timeout)}s'")
            await conn.execute(migration_sql)
            await conn.execute(
                f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1)", version
            )

        logger.info(f"Applied migration {migration_file.name}")
        return True
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Failed to apply migration {migration_file.name}: {e}")
        return False


async def migrate_database(
    db_url: str,
    migrations_dir: Path,
    timeout: int = 300,
    retries: int = 3,
    dry_run: bool = False,
) -> tuple[int, int, bool]:
    """
    Migrate a single database.
    Returns (applied_count, total_count, success).
    """
    db_name = urlparse(db_url).path.lstrip("/")

    if not migrations_dir.exists():
        logger.warning(f"Migration directory {migrations_dir} not found, skipping {db_name}")
        return 0, 0, False

    migration_files = get_migration_files(migrations_dir)
    if not migration_files:
        logger.info(f"No migrations found for {db_name}")
        return 0, 0, True

    conn = None
    for attempt in range(retries):
        try:
            conn = await asyncpg.connect(db_url)
            break
        except (asyncpg.PostgresError, OSError) as e:
            if attempt == retries - 1:
                logger.error(f"Failed to connect to {db_name} after {retries} attempts: {e}")
                return 0, 0, False
            await asyncio.sleep(2**attempt)  # Exponential backoff

    try:
        if not dry_run:
            await ensure_migrations_table(conn)
        applied_migrations = await get_applied_migrations(conn)

        applied_count = 0
        for migration_file in migration_files:
            version = extract_version_from_filename(migration_file.name)
            if version in applied_migrations:
                logger.info(f"Skipping {migration_file.name} (already applied to {db_name})")
                continue

            logger.info(f"Applying {migration_file.name} to {db_name}...")
            if not await apply_migration_file(conn, migration_file, timeout, dry_run):
                return applied_count, len(migration_files), False
            applied_count += 1

        return applied_count, len(migration_files), True

    finally:
        if conn:
            await conn.close()


async def mark_migration_as_applied(conn: asyncpg.Connection, version: str) -> None:
    """Mark a migration as applied without running it."""
    await ensure_migrations_table(conn)

    exists = await conn.fetchval(
        f"SELECT EXISTS(SELECT 1 FROM public.{MIGRATION_TABLE} WHERE version = $1)", version
    )
    if exists:
        logger.warning(f"Migration {version} is already marked as applied")
        return

    await conn.execute(f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1)", version)
    logger.info(f"Marked migration {version} as applied")


async def unmark_migration_as_applied(conn: asyncpg.Connection, version: str) -> bool:
    """
    Remove a migration from schema_migrations.
    Returns True if migration was unmarked, False if it wasn't applied.
    """
    await ensure_migrations_table(conn)

    result = await conn.execute(f"DELETE FROM public.{MIGRATION_TABLE} WHERE version = $1", version)
    if result == "DELETE 0":
        logger.warning(f"Migration {version} was not marked as applied")
        return False

    logger.info(f"Unmarked migration {version} (removed from applied migrations)")
    return True


def validate_migration_exists(version: str, migrations_dir: Path) -> tuple[bool, str | None]:
    """
    Validate that a migration file exists for the given version.
    Returns (exists, filename) tuple.
    """
    for migration_file in get_migration_files(migrations_dir):
        if extract_version_from_filename(migration_file.name) == version:
            return True, migration_file.name
    return False, None
