from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_CANCEL_GRACE_PERIOD,
    DEFAULT_CONFIG_PATH,
    DEFAULT_MAX_CONCURRENCY,
)


class SchedulerConfig(BaseModel):
    """Limits applied by the scheduler."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    cancel_grace_period: float = DEFAULT_CANCEL_GRACE_PERIOD

    @field_validator("max_concurrency")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrency must be at least 1")
        return value


class CollaboratorConfig(BaseModel):
    """Configuration of one named collaborator."""

    kind: Literal["static", "command", "argocd"] = "static"

    # static
    status: Literal["succeeded", "failed"] = "succeeded"
    outputs: Dict[str, str] = Field(default_factory=dict)
    message: Optional[str] = None

    # command
    command: Optional[str] = None
    cwd: Optional[str] = None

    # argocd
    server: Optional[str] = None
    app_prefix: Optional[str] = None
    verify_tls: bool = True
    timeout: float = 30.0

    # declared interface
    inputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)


class GantryConfig(BaseModel):
    """Top-level configuration model."""

    scheduler: SchedulerConfig = SchedulerConfig()
    database_url: Optional[str] = None
    log_level: str = "WARNING"
    collaborators: Dict[str, CollaboratorConfig] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> GantryConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GANTRY_CONFIG env
            variable or 'gantry.yaml' in the current directory.
    """

    config_path = path or os.getenv("GANTRY_CONFIG", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GantryConfig(**data)
    else:
        config = GantryConfig()

    env_db_url = os.getenv("GANTRY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_concurrency = os.getenv("GANTRY_MAX_CONCURRENCY")
    if env_concurrency:
        config.scheduler = SchedulerConfig(
            max_concurrency=int(env_concurrency),
            cancel_grace_period=config.scheduler.cancel_grace_period,
        )
    return config
