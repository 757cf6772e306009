from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BASE_DELAY,
    DEFAULT_EMAIL_TIMEOUT,
    DEFAULT_FROM_EMAIL,
    DEFAULT_FROM_NAME,
    DEFAULT_LEASE_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_DELAY,
    DEFAULT_MAX_STEPS_PER_TICK,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PURGE_INTERVAL,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_WEBHOOK_TIMEOUT,
)


class RetryConfig(BaseModel):
    """Backoff policy for failed email sends."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    backoff_factor: float = Field(default=DEFAULT_BACKOFF_FACTOR, ge=1)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)


class SchedulerConfig(BaseModel):
    """Poll loop and retention settings."""

    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    retention_days: float = Field(default=DEFAULT_RETENTION_DAYS, ge=0)
    purge_interval: float = Field(default=DEFAULT_PURGE_INTERVAL, gt=0)
    max_steps_per_tick: int = Field(default=DEFAULT_MAX_STEPS_PER_TICK, ge=1)
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    lease_timeout: float = Field(default=DEFAULT_LEASE_TIMEOUT, gt=0)


class TimeoutConfig(BaseModel):
    email: float = DEFAULT_EMAIL_TIMEOUT
    webhook: float = DEFAULT_WEBHOOK_TIMEOUT


class SenderConfig(BaseModel):
    from_name: str = DEFAULT_FROM_NAME
    from_email: str = DEFAULT_FROM_EMAIL


class SendGridConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://api.sendgrid.com"


class RedisConfig(BaseModel):
    """Configuration for the Redis event transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class EventsConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "events"
    redis: RedisConfig = RedisConfig()


class MailflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    timeouts: TimeoutConfig = TimeoutConfig()
    sender: SenderConfig = SenderConfig()
    sendgrid: SendGridConfig = SendGridConfig()
    events: EventsConfig = EventsConfig()


def load_config(path: Optional[str] = None) -> MailflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to MAILFLOW_CONFIG env
            variable or 'mailflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("MAILFLOW_CONFIG", "mailflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = MailflowConfig(**data)
    else:
        config = MailflowConfig()

    env_db_url = os.getenv("MAILFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_api_key = os.getenv("SENDGRID_API_KEY")
    if env_api_key and not config.sendgrid.api_key:
        config.sendgrid.api_key = env_api_key
    return config
