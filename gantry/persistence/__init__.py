"""Audit log of pipeline runs: one row per run, one row per job transition."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GantryConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import RunInstance, TransitionRecord
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

SQLITE_SCHEME = "sqlite://"

# shared by the scheduler and the ``gantry runs`` commands within a process
_repository_instance: RunRepository | None = None


def _database_url(database_url: Optional[str], config: Optional[GantryConfig]) -> Optional[str]:
    if database_url:
        return database_url
    env_url = os.getenv("GANTRY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    return (config or load_config()).database_url


def open_repository(database_url: Optional[str]) -> RunRepository:
    """Open the backend named by ``database_url``; no URL means in-memory.

    Raises:
        ValueError: the URL names a backend gantry does not ship.
    """
    if not database_url:
        return InMemoryRunRepository()
    if database_url.startswith(SQLITE_SCHEME):
        return SQLiteRunRepository(database_url[len(SQLITE_SCHEME) :])
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[GantryConfig] = None
) -> RunRepository:
    """Return the run repository for this process.

    Called with no arguments, the repository opened last is reused so runs
    recorded by the scheduler stay visible to later lookups. Otherwise the URL
    is taken from ``database_url``, then ``GANTRY_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``, and the opened repository
    becomes the shared one.
    """
    global _repository_instance
    if _repository_instance is None or database_url is not None or config is not None:
        _repository_instance = open_repository(_database_url(database_url, config))
    return _repository_instance


__all__ = [
    "InMemoryRunRepository",
    "RunInstance",
    "RunRepository",
    "SQLiteRunRepository",
    "TransitionRecord",
    "get_repository",
    "open_repository",
]
