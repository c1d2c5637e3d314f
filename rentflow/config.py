from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .constants import (
    DEFAULT_ACTION_TIMEOUT,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_CAP,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_EVENTS_TOPIC,
    DEFAULT_EXECUTION_TIMEOUT,
    DEFAULT_LOCK_TTL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_PARALLEL_ACTIONS,
    DEFAULT_TICK_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Domain-event transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_EVENTS_TOPIC
    poll_interval: float = Field(default=0.05, gt=0)
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Backoff policy for transient action failures."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    factor: float = Field(default=DEFAULT_BACKOFF_FACTOR, ge=1)
    max_delay: float = Field(default=DEFAULT_BACKOFF_CAP, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class EngineConfig(BaseModel):
    """Timeouts and locking for workflow executions."""

    action_timeout: float = Field(default=DEFAULT_ACTION_TIMEOUT, gt=0)
    execution_timeout: float = Field(default=DEFAULT_EXECUTION_TIMEOUT, gt=0)
    lock_ttl: float = Field(default=DEFAULT_LOCK_TTL, gt=0)
    max_parallel_actions: int = Field(default=DEFAULT_MAX_PARALLEL_ACTIONS, ge=1)

    @model_validator(mode="after")
    def _lock_outlives_execution(self) -> "EngineConfig":
        if self.lock_ttl < self.execution_timeout:
            raise ValueError("lock_ttl must be at least execution_timeout")
        return self


class SchedulerConfig(BaseModel):
    """Trigger evaluator tick, fire window and shard assignment."""

    tick_seconds: float = Field(default=DEFAULT_TICK_SECONDS, gt=0)
    grace_seconds: Optional[float] = Field(default=None, gt=0)
    timezone: str = "UTC"
    shard_index: int = Field(default=0, ge=0)
    shard_count: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _shard_in_range(self) -> "SchedulerConfig":
        if self.shard_index >= self.shard_count:
            raise ValueError("shard_index must be lower than shard_count")
        return self

    @property
    def fire_window(self) -> float:
        """Seconds after the scheduled time during which a schedule may fire."""
        return self.grace_seconds or self.tick_seconds * 2


class WebhookConfig(BaseModel):
    connect_timeout: float = Field(default=5.0, gt=0)
    read_timeout: float = Field(default=10.0, gt=0)


class RentflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    webhook: WebhookConfig = WebhookConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> RentflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RENTFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RENTFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RentflowConfig(**data)
    else:
        config = RentflowConfig()

    env_db_url = os.getenv("RENTFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("RENTFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
