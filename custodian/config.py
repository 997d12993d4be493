from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .contracts import RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for the Redis event sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel: str = "custodian:events"


class EventsConfig(BaseModel):
    """Event sink configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Tick cadence, fan-out cap and retention of terminal requests."""

    tick_interval: float = 60.0
    purge_interval: float = 3600.0
    concurrency: int = 5
    retention_days: float = 90.0


class CustodianConfig(BaseModel):
    """Top-level configuration model."""

    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryPolicy = RetryPolicy()
    validation_retry_delay: float = 5.0
    events: EventsConfig = EventsConfig()
    database_url: Optional[str] = None
    definitions_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> CustodianConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CUSTODIAN_CONFIG env
            variable or 'custodian.yaml' in the current directory.
    """

    config_path = path or os.getenv("CUSTODIAN_CONFIG", "custodian.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CustodianConfig(**data)
    else:
        config = CustodianConfig()

    env_db_url = os.getenv("CUSTODIAN_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
