"""Persistence layer for custodian requests."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CustodianConfig, load_config
from .inmemory import InMemoryRequestRepository
from .repository import RequestRepository
from .sqlite import SQLiteRequestRepository

_repository_instance: RequestRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[CustodianConfig] = None
) -> RequestRepository:
    """Factory function to obtain a request repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``CUSTODIAN_DATABASE_URL``,
    or from loaded configuration. When no database is configured, an
    in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CUSTODIAN_DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRequestRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRequestRepository(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "RequestRepository",
    "InMemoryRequestRepository",
    "SQLiteRequestRepository",
    "get_repository",
]
