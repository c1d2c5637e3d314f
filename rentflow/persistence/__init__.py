"""Storage for workflows, executions, the firing ledger and execution locks."""

from __future__ import annotations

import os
from typing import Optional
from urllib.parse import urlsplit

from ..config import RentflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

DATABASE_URL_ENVS = ("RENTFLOW_DATABASE_URL", "DATABASE_URL")

# Process-wide repository shared by the CLI commands, keyed by its database URL.
_repository_instance: WorkflowRepository | None = None
_repository_url: str | None = None


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[RentflowConfig] = None
) -> Optional[str]:
    """Pick the database URL: explicit argument, then env vars, then config."""
    if database_url:
        return database_url
    for name in DATABASE_URL_ENVS:
        if os.getenv(name):
            return os.getenv(name)
    return (config or load_config()).database_url


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Build a new repository for ``database_url``.

    ``sqlite://<path>`` and ``postgres(ql)://...`` select the durable backends;
    no URL or ``memory://`` gives a process-local in-memory repository.
    """
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme = urlsplit(database_url).scheme
    if scheme == "memory":
        return InMemoryWorkflowRepository()
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(database_url[len("sqlite://"):])
    if scheme in ("postgres", "postgresql"):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available (install asyncpg)")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RentflowConfig] = None
) -> WorkflowRepository:
    """Return the shared repository for the resolved database URL.

    The repository is reused while the URL stays the same, so every component
    wired in one process sees the same workflows, ledger and locks. Resolving
    to a different URL replaces the shared instance.
    """
    global _repository_instance, _repository_url
    url = resolve_database_url(database_url, config)
    if _repository_instance is not None and url == _repository_url:
        return _repository_instance

    _repository_instance = open_repository(url)
    _repository_url = url
    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
    "resolve_database_url",
]
