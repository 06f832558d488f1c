from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_MAX_POLL_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RUNNING_POLL_INTERVAL,
    DEFAULT_WAITING_POLL_INTERVAL,
)


class EngineConfig(BaseModel):
    """Defaults applied to nodes that do not carry their own retry policy."""

    default_max_attempts: int = 1
    default_backoff: Literal["fixed", "exponential"] = "fixed"
    default_retry_delay: float = DEFAULT_RETRY_DELAY
    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY


class PollingConfig(BaseModel):
    """Client-side status polling cadence."""

    running_interval: float = DEFAULT_RUNNING_POLL_INTERVAL
    waiting_interval: float = DEFAULT_WAITING_POLL_INTERVAL
    max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS


class ApiConfig(BaseModel):
    """HTTP control surface settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    base_url: Optional[str] = None


class PodflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    polling: PollingConfig = PollingConfig()
    api: ApiConfig = ApiConfig()


def load_config(path: Optional[str] = None) -> PodflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PODFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PODFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PodflowConfig(**data)
    else:
        config = PodflowConfig()

    env_db_url = os.getenv("PODFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
