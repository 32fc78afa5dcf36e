# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "asyncpg>=0.29.0",
#   "python-dotenv>=1.0.0",
# ]
# ///
"""
asyncpg connection pool shared by the Postgres repository and migrations.

Usage:
    from outreach_engine.database.pool import get_pool, close_pool

    pool = await get_pool()
    async with pool.acquire() as conn:
        ...
    await close_pool()
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from dotenv import load_dotenv

from outreach_engine.errors import ConfigurationError

load_dotenv()

# =============================================================================
# CONNECTION POOL
# =============================================================================

_pool: Optional[asyncpg.Pool] = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns into Python objects."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def get_pool(database_url: Optional[str] = None, max_size: int = 10) -> asyncpg.Pool:
    """
    Get or create the database connection pool.

    Args:
        database_url: Connection string; falls back to DATABASE_URL.
        max_size: Upper bound on pooled connections. Should be at least the
                  sweep worker count so workers don't queue on the pool.

    Returns:
        asyncpg.Pool: Database connection pool.

    Raises:
        ConfigurationError: If no database URL is configured.
    """
    global _pool
    if _pool is None:
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable is not set")
        _pool = await asyncpg.create_pool(
            database_url,
            min_size=1,
            max_size=max_size,
            init=_init_connection,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """
    Get a database connection from the pool.

    Yields:
        asyncpg.Connection: Database connection.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn
