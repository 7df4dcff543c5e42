#!/usr/bin/env python3
"""
Chainsink Database Migration CLI

Manages migrations for the control database (indexing jobs, database configs, webhook events).
Sink tables in user databases are created on demand by the indexing worker, not here.
"""

import asyncio
import os
import re
from datetime import datetime
from pathlib import Path

import asyncpg
import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table

from src.migrations.core import (
    MIGRATION_TABLE,
    MigrationError,
    extract_version_from_filename,
    get_applied_migrations,
    get_control_migrations_dir,
    get_migration_files,
    mark_migration_as_applied,
    migrate_database,
    unmark_migration_as_applied,
    validate_migration_exists,
)

load_dotenv()

app = typer.Typer(
    name="migrations",
    help="Control database migration management for Chainsink",
    add_completion=False,
)
console = Console()

CONTROL_MIGRATIONS_DIR = get_control_migrations_dir()


def log_info(message: str) -> None:
    console.print(f"ℹ️  {message}", style="blue")


def log_success(message: str) -> None:
    console.print(f"✅ {message}", style="green")


def log_warning(message: str) -> None:
    console.print(f"⚠️  {message}", style="yellow")


def log_error(message: str) -> None:
    console.print(f"❌ {message}", style="red")


def slugify(text: str) -> str:
    """Convert text to a slug suitable for filenames."""
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower())
    slug = re.sub(r"^_+|_+$", "", slug)
    return re.sub(r"_+", "_", slug)


def generate_timestamp() -> str:
    """Generate timestamp for migration filename."""
    return datetime.now().strftime("%Y%m%d%H%M%S")


def get_control_db_url() -> str:
    control_db_url = os.getenv("CONTROL_DATABASE_URL")
    if not control_db_url:
        raise MigrationError("CONTROL_DATABASE_URL environment variable is required")
    return control_db_url


async def check_database_connectivity(db_url: str, timeout: int = 10) -> bool:
    """Check that we can connect to a database."""
    try:
        conn = await asyncio.wait_for(asyncpg.connect(db_url), timeout=timeout)
        await conn.execute("SELECT 1")
        await conn.close()
        return True
    except (asyncpg.PostgresError, OSError, TimeoutError):
        return False


@app.command()
def create(
    description: str = typer.Argument(..., help="Brief description of the migration"),
) -> None:
    """Create a new control migration file with proper naming and template."""
    CONTROL_MIGRATIONS_DIR.mkdir(parents=True, exist_ok=True)

    filepath = CONTROL_MIGRATIONS_DIR / f"{generate_timestamp()}_{slugify(description)}.sql"
    if filepath.exists():
        log_error(f"File already exists: {filepath}")
        raise typer.Exit(1)

    # Files run inside a transaction opened by the migrator, so no BEGIN/COMMIT here
    filepath.write_text(
        f"""-- Control DB Migration: {description}
-- Created: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}

-- Add your migration SQL here
"""
    )
    log_success(f"Created migration file: {filepath}")

    log_info("Recent control migrations:")
    for file in get_migration_files(CONTROL_MIGRATIONS_DIR)[-5:]:
        console.print(f"  - {file.name}")


@app.command("list")
def list_command() -> None:
    """List available migration files."""
    console.print("[blue]Control Database Migrations:[/blue]")
    control_files = get_migration_files(CONTROL_MIGRATIONS_DIR)
    if not control_files:
        console.print("  No migrations found")
    for file in control_files:
        console.print(f"  {file.name}")


@app.command()
def migrate(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be done without executing"
    ),
    retries: int = typer.Option(3, "--retries", help="Number of retry attempts"),
    timeout: int = typer.Option(300, "--timeout", help="Migration timeout in seconds"),
) -> None:
    """Apply pending control database migrations."""
    try:
        db_url = get_control_db_url()
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)

    log_info("Starting control database migrations...")
    if dry_run:
        console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")

    applied, total, success = asyncio.run(
        migrate_database(
            db_url, CONTROL_MIGRATIONS_DIR, timeout=timeout, retries=retries, dry_run=dry_run
        )
    )

    if not success:
        log_error(f"Control database migration failed after applying {applied} of {total}")
        raise typer.Exit(1)
    log_success(f"Control database up to date ({applied} applied, {total} total)")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show applied timestamps"),
) -> None:
    """Show migration status for the control database."""
    try:
        db_url = get_control_db_url()
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)

    asyncio.run(show_database_status(db_url, CONTROL_MIGRATIONS_DIR, verbose))


async def show_database_status(db_url: str, migrations_dir: Path, verbose: bool) -> None:
    console.print("[cyan]Control Database[/cyan]")

    migration_files = get_migration_files(migrations_dir)
    if not migration_files:
        log_warning(f"No migration files found in {migrations_dir}")
        return

    if not await check_database_connectivity(db_url):
        log_error("Cannot connect to control database")
        raise typer.Exit(1)

    conn = await asyncpg.connect(db_url)
    try:
        applied_migrations = await get_applied_migrations(conn)
        applied_at_by_version: dict[str, datetime] = {}
        if verbose and applied_migrations:
            rows = await conn.fetch(f"SELECT version, applied_at FROM public.{MIGRATION_TABLE}")
            applied_at_by_version = {row["version"]: row["applied_at"] for row in rows}
    finally:
        await conn.close()

    table = Table(box=box.ROUNDED)
    table.add_column("Version", style="dim")
    table.add_column("Status", justify="center")
    table.add_column("Applied At", style="dim")
    table.add_column("Description")

    pending_count = 0
    for migration_file in migration_files:
        version = extract_version_from_filename(migration_file.name)
        description = (
            migration_file.name.replace(f"{version}_", "").replace(".sql", "").replace("_", " ")
        )
        if version in applied_migrations:
            applied_at = applied_at_by_version.get(version)
            table.add_row(
                version,
                "[green]APPLIED[/green]",
                applied_at.strftime("%Y-%m-%d %H:%M:%S") if applied_at else "",
                description,
            )
        else:
            pending_count += 1
            table.add_row(version, "[red]PENDING[/red]", "", description)

    console.print(table)
    summary_style = "green" if pending_count == 0 else "yellow"
    console.print(
        f"[{summary_style}]Summary: {len(migration_files) - pending_count} applied, "
        f"{pending_count} pending, {len(migration_files)} total[/{summary_style}]"
    )


@app.command()
def mark(
    apply_version: str | None = typer.Option(
        None, "--apply", help="Mark migration version as applied"
    ),
    unapply_version: str | None = typer.Option(
        None, "--unapply", help="Unmark migration version (remove from applied)"
    ),
    force: bool = typer.Option(
        False, "--force", help="Skip checking that the migration file exists"
    ),
) -> None:
    """Mark or unmark a migration as applied in the schema_migrations table."""
    if bool(apply_version) == bool(unapply_version):
        log_error("Must specify exactly one of: --apply or --unapply")
        raise typer.Exit(1)

    version = apply_version or unapply_version
    assert version is not None

    if not force:
        exists, filename = validate_migration_exists(version, CONTROL_MIGRATIONS_DIR)
        if not exists:
            log_error(f"No migration file found for version {version} (use --force to override)")
            raise typer.Exit(1)
        log_info(f"Found migration file: {filename}")

    try:
        db_url = get_control_db_url()
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)

    async def run() -> None:
        conn = await asyncpg.connect(db_url)
        try:
            if apply_version:
                await mark_migration_as_applied(conn, version)
                log_success(f"Marked {version} as applied")
            elif await unmark_migration_as_applied(conn, version):
                log_success(f"Unmarked {version}")
            else:
                log_warning(f"Migration {version} was not marked as applied")
        finally:
            await conn.close()

    asyncio.run(run())


if __name__ == "__main__":
    app()
