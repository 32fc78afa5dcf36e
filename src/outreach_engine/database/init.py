"""
Database initialization and migrations.

Applies pending SQL migrations from ``outreach_engine/database/migrations/``
in version order and records them in ``schema_migrations``. Safe to run
repeatedly: already-applied versions are skipped.

Usage:
    from outreach_engine.database.init import init_database

    applied = await init_database()
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Tuple

import asyncpg
from rich.console import Console

from outreach_engine.errors import ConfigurationError

console = Console()

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


async def create_schema_migrations_table(conn: asyncpg.Connection) -> None:
    """Create schema_migrations if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return {row["version"] for row in rows}


def get_pending_migrations(
    applied: set[str], migrations_dir: Path = MIGRATIONS_DIR
) -> List[Tuple[str, Path]]:
    """
    List migration files not yet applied, sorted by version.

    Files are named ``NNN_description.sql``; anything without a numeric
    prefix is skipped.

    Args:
        applied: Versions already recorded in schema_migrations.
        migrations_dir: Directory holding the .sql files.

    Returns:
        (version, path) tuples for pending migrations.
    """
    if not migrations_dir.exists():
        console.print(f"[yellow]Migrations directory not found: {migrations_dir}[/yellow]")
        return []

    pending: List[Tuple[str, Path]] = []
    for file_path in sorted(migrations_dir.glob("*.sql")):
        version = file_path.stem.split("_")[0]
        if not version.isdigit():
            console.print(f"[yellow]Skipping non-numeric version: {file_path.name}[/yellow]")
            continue
        if version not in applied:
            pending.append((version, file_path))

    return sorted(pending, key=lambda x: x[0])


async def apply_migration(conn: asyncpg.Connection, version: str, file_path: Path) -> None:
    """
    Apply one migration file inside a transaction and record it.

    Raises:
        RuntimeError: If the file is unreadable or empty. SQL errors propagate
                      and the transaction is rolled back.
    """
    console.print(f"  [cyan]Applying migration {version}: {file_path.name}[/cyan]")

    try:
        sql = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RuntimeError(f"Failed to read migration file {file_path}: {e}") from e

    if not sql.strip():
        raise RuntimeError(f"Migration file is empty: {file_path}")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES ($1, NOW())",
            version,
        )

    console.print(f"  [green]✓[/green] Migration {version} applied")


async def run_migrations(database_url: Optional[str] = None) -> int:
    """
    Run all pending database migrations.

    Args:
        database_url: Connection string; falls back to DATABASE_URL.

    Returns:
        Number of migrations applied.

    Raises:
        ConfigurationError: If no database URL is configured.
        RuntimeError: If the connection fails.
    """
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise ConfigurationError(
            "DATABASE_URL environment variable is not set. "
            "Please set it in your .env file."
        )

    try:
        conn = await asyncpg.connect(database_url, timeout=10)
    except (asyncpg.PostgresError, OSError) as e:
        raise RuntimeError(f"Failed to connect to database: {e}") from e

    try:
        await create_schema_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        pending = get_pending_migrations(applied)

        if not pending:
            console.print("[dim]No pending migrations[/dim]")
            return 0

        console.print(f"[bold]Found {len(pending)} pending migration(s)[/bold]")
        for version, file_path in pending:
            await apply_migration(conn, version, file_path)
        return len(pending)
    finally:
        await conn.close()


async def init_database(database_url: Optional[str] = None) -> int:
    """Bring the schema up to date. Called once at daemon startup."""
    return await run_migrations(database_url)
