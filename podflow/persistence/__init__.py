"""Persistence layer for podflow workflows."""

from __future__ import annotations

import logging
from typing import Optional

from ..config import PodflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None


def create_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Build a repository for ``database_url`` without caching it.

    ``sqlite://<path>`` selects SQLite, ``postgres://`` or ``postgresql://``
    selects PostgreSQL and an empty URL keeps everything in memory.
    """
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise ValueError(f"Malformed database URL: {database_url}")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest)
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {scheme}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[PodflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, creating it on first use.

    An explicit ``database_url`` or ``config`` always builds a fresh backend
    and replaces the cached one. Otherwise the URL comes from
    :func:`~podflow.config.load_config`, which honours ``PODFLOW_DATABASE_URL``
    and ``DATABASE_URL``.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        database_url = (config or load_config()).database_url
    _repository_instance = create_repository(database_url)
    logger.debug(f"Using {type(_repository_instance).__name__}")
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "create_repository",
    "get_repository",
    "reset_repository",
]
