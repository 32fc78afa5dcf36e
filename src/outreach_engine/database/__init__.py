"""Storage: repository interface, Postgres pool and migrations."""

from outreach_engine.database.init import init_database, run_migrations
from outreach_engine.database.repository import EngineRepository

__all__ = [
    "EngineRepository",
    "init_database",
    "run_migrations",
]
