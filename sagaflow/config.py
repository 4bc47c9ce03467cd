from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CRON_TICK_INTERVAL,
    DEFAULT_REDIS_KEY_PREFIX,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INITIAL_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_STATE_TTL_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis state repository."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = DEFAULT_REDIS_KEY_PREFIX
    ttl_seconds: Optional[int] = DEFAULT_STATE_TTL_SECONDS


class EngineConfig(BaseModel):
    """Engine behaviour settings."""

    fail_on_save_error: bool = False
    approval_sweep_interval: Optional[float] = None
    default_approval_timeout: Optional[float] = None
    cron_tick_interval: float = DEFAULT_CRON_TICK_INTERVAL


class RetryConfig(BaseModel):
    """Default values for action retry policies."""

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    multiplier: float = DEFAULT_RETRY_MULTIPLIER
    jitter: float = 0.0


class SagaflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    journal_url: Optional[str] = None
    log_level: str = "INFO"
    redis: RedisConfig = RedisConfig()
    engine: EngineConfig = EngineConfig()
    retry: RetryConfig = RetryConfig()


def load_config(path: Optional[str] = None) -> SagaflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGAFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGAFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagaflowConfig(**data)
    else:
        config = SagaflowConfig()

    env_db_url = os.getenv("SAGAFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_journal_url = os.getenv("SAGAFLOW_JOURNAL_URL")
    if env_journal_url:
        config.journal_url = env_journal_url
    env_log_level = os.getenv("SAGAFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
