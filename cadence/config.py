from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CLAIM_TIMEOUT,
    FIRST_ANCHOR_OFFSET_DAYS,
    SECOND_ANCHOR_OFFSET_DAYS,
)
from .contracts import Subject


class RedisConfig(BaseModel):
    """Configuration for the Redis delay queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key: str = "cadence:delayed"


class ExecutorConfig(BaseModel):
    """Delayed executor settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    poll_interval: float = 0.5
    reconcile_on_start: bool = True
    reconcile_interval: Optional[float] = 300.0
    claim_timeout: float = Field(default=DEFAULT_CLAIM_TIMEOUT, gt=0)


class StoreConfig(BaseModel):
    """Persistence backend settings."""

    database_url: Optional[str] = None


class TriggerConfig(BaseModel):
    """External generation trigger endpoints."""

    base_url: Optional[str] = None
    primary_path: str = "/api/workflows/script-generation"
    fallback_path: str = "/api/scripts/generate-from-response"
    timeout: float = 30.0


class ScheduleConfig(BaseModel):
    """Shape of the per-subject schedule."""

    first_offset_days: int = FIRST_ANCHOR_OFFSET_DAYS
    second_offset_days: int = SECOND_ANCHOR_OFFSET_DAYS
    eager_backstop: bool = True
    timezone: str = "UTC"


class RetryConfig(BaseModel):
    """Bounded retry applied around the external trigger call."""

    max_attempts: int = Field(default=3, ge=1)
    base: float = 1.5
    jitter: float = 0.5


class CadenceConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    executor: ExecutorConfig = ExecutorConfig()
    trigger: TriggerConfig = TriggerConfig()
    schedule: ScheduleConfig = ScheduleConfig()
    retry: RetryConfig = RetryConfig()
    subjects: List[Subject] = Field(default_factory=list)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CadenceConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CADENCE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CADENCE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CadenceConfig(**data)
    else:
        config = CadenceConfig()

    env_db_url = os.getenv("CADENCE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url

    env_executor = os.getenv("CADENCE_EXECUTOR")
    if env_executor:
        config.executor.backend = env_executor.lower()

    env_app_url = os.getenv("CADENCE_APP_URL") or os.getenv("APP_URL")
    if env_app_url:
        config.trigger.base_url = env_app_url
    return config
