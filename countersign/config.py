from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_ENV = "COUNTERSIGN_CONFIG"
DEFAULT_CONFIG_PATH = "countersign.yaml"


class RedisConfig(BaseModel):
    """Connection settings for the Redis notifier."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel: str = "countersign:state-changes"


class NotifierConfig(BaseModel):
    """Where state-change notifications are published."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    max_workers: int = Field(default=4, ge=1)


class RuntimeConfig(BaseModel):
    """Instance runtime tuning."""

    max_cas_retries: int = Field(default=5, ge=1)
    retry_backoff_seconds: float = Field(default=0.005, ge=0)
    default_timeout_hours: Optional[float] = Field(default=72.0, gt=0)


class SweeperConfig(BaseModel):
    interval_seconds: float = Field(default=60.0, gt=0)


class CountersignConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    runtime: RuntimeConfig = RuntimeConfig()
    sweeper: SweeperConfig = SweeperConfig()
    notifier: NotifierConfig = NotifierConfig()


def load_config(path: Optional[str] = None) -> CountersignConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to COUNTERSIGN_CONFIG env
            variable or 'countersign.yaml' in the current directory.
    """

    config_path = path or os.getenv(CONFIG_ENV, DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CountersignConfig(**data)
    else:
        config = CountersignConfig()

    env_db_url = os.getenv("COUNTERSIGN_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
