from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class BusConfig(BaseModel):
    """Configuration for the event bus."""

    history_size: int = Field(default=1000, ge=1)
    request_timeout_ms: float = Field(default=30000, gt=0)
    history_max_age_ms: float = Field(default=24 * 60 * 60 * 1000, gt=0)


class RetryConfig(BaseModel):
    """Default retry policy applied to workflow definitions."""

    max_retries: int = Field(default=3, ge=0)
    delay_ms: float = Field(default=1000, ge=0)
    backoff: float = Field(default=1.0, ge=1.0)


class EngineConfig(BaseModel):
    """Workflow engine settings."""

    default_timeout_ms: float = Field(default=30000, gt=0)
    retry: RetryConfig = RetryConfig()
    instance_retention_ms: float = Field(default=60 * 60 * 1000, ge=0)


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    bus: BusConfig = BusConfig()
    engine: EngineConfig = EngineConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_log_level = os.getenv("STEPWISE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    env_history_size = os.getenv("STEPWISE_HISTORY_SIZE")
    if env_history_size:
        config.bus.history_size = int(env_history_size)
    return config
