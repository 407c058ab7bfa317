"""Persistence layer for playbook runs, steps and their bookkeeping records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DATABASE_URL_ENV_VARS, OrchestratorConfig, load_config
from ..exceptions import ConfigurationError
from .inmemory import InMemoryPlaybookRepository
from .models import (
    AuditEntry,
    IdempotencyRecord,
    IdempotencyStatus,
    Run,
    StepInstance,
    TaskAssignment,
    TaskStatus,
)
from .repository import PlaybookRepository
from .sqlite import SQLitePlaybookRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresPlaybookRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresPlaybookRepository = None  # type: ignore

_repository_instance: PlaybookRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[OrchestratorConfig] = None
) -> PlaybookRepository:
    """Factory function to obtain a playbook repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PLAYBOOK_ORCHESTRATOR_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    env_url = next((os.getenv(v) for v in DATABASE_URL_ENV_VARS if os.getenv(v)), None)
    database_url = database_url or env_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryPlaybookRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLitePlaybookRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresPlaybookRepository is None:
            raise ConfigurationError("Postgres support not available (install asyncpg)")
        _repository_instance = PostgresPlaybookRepository(database_url)
    else:
        raise ConfigurationError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "AuditEntry",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "Run",
    "StepInstance",
    "TaskAssignment",
    "TaskStatus",
    "PlaybookRepository",
    "InMemoryPlaybookRepository",
    "SQLitePlaybookRepository",
    "PostgresPlaybookRepository",
    "get_repository",
]
