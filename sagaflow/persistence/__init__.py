"""Persistence layer for sagaflow workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryStateRepository
from .repository import StateRepository
from .sqlite import SQLiteStateRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresStateRepository
except Exception:  # pragma: no cover - optional dependency
    PostgresStateRepository = None  # type: ignore

from .redis import RedisStateRepository

_repository_instance: StateRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> StateRepository:
    """Factory function to obtain a state repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SAGAFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAGAFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryStateRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteStateRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresStateRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresStateRepository(database_url)
    elif database_url.startswith("redis://") or database_url.startswith("rediss://"):
        redis_conf = config.redis
        _repository_instance = RedisStateRepository(
            key_prefix=redis_conf.key_prefix,
            ttl_seconds=redis_conf.ttl_seconds,
            url=database_url,
        )
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "StateRepository",
    "InMemoryStateRepository",
    "SQLiteStateRepository",
    "PostgresStateRepository",
    "RedisStateRepository",
    "get_repository",
]
