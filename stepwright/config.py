from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_LEASE_MAX_REQUEUES,
    DEFAULT_LEASE_REQUEUE_DELAY_MS,
    DEFAULT_LEASE_TTL_MS,
    DEFAULT_RUNTIME_DIR,
    DEFAULT_SWEEP_INTERVAL_S,
)


class LeaseConfig(BaseModel):
    """Lease manager settings."""

    default_ttl_ms: int = DEFAULT_LEASE_TTL_MS
    max_requeues: int = DEFAULT_LEASE_MAX_REQUEUES
    requeue_delay_ms: int = DEFAULT_LEASE_REQUEUE_DELAY_MS
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S


class DaemonConfig(BaseModel):
    """Process control settings for the orchestrator daemon."""

    runtime_dir: str = DEFAULT_RUNTIME_DIR
    pid_file: str = "daemon.pid"
    log_file: str = "daemon.log"
    stop_timeout_s: float = 5.0

    @property
    def pid_path(self) -> Path:
        return Path(self.runtime_dir) / self.pid_file

    @property
    def log_path(self) -> Path:
        return Path(self.runtime_dir) / self.log_file


class StepwrightConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    lease: LeaseConfig = LeaseConfig()
    daemon: DaemonConfig = DaemonConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StepwrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWRIGHT_CONFIG env
            variable or 'stepwright.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWRIGHT_CONFIG", "stepwright.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwrightConfig(**data)
    else:
        config = StepwrightConfig()

    env_db_url = os.getenv("STEPWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
