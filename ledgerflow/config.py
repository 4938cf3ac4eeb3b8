from __future__ import annotations

import logging
import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "ledgerflow"
    # Names the processing list; a restarted worker reclaims its own leftovers.
    consumer: str = "default"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = "ledgerflow.events"


class EngineConfig(BaseModel):
    """Execution engine tuning."""

    snapshot_interval: int = Field(default=20, ge=0)
    action_claim_timeout_seconds: float = Field(default=300.0, gt=0)


class InboxConfig(BaseModel):
    """Defaults applied to task definitions created on the fly."""

    default_sla_days: int = Field(default=3, ge=0)
    default_priority: str = "medium"


class WorkerConfig(BaseModel):
    """Retry policy of the event delivery worker."""

    max_retries: int = 5
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 30.0


class LedgerflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    inbox: InboxConfig = InboxConfig()
    worker: WorkerConfig = WorkerConfig()
    # Modules exposing ``register_actions(actions)``, imported at start-up.
    action_modules: List[str] = Field(default_factory=list)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> LedgerflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEDGERFLOW_CONFIG env
            variable or 'ledgerflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEDGERFLOW_CONFIG", "ledgerflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LedgerflowConfig(**data)
    else:
        config = LedgerflowConfig()

    env_db_url = os.getenv("LEDGERFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("LEDGERFLOW_TRANSPORT")
    if env_transport:
        config.transport = config.transport.model_copy(update={"backend": env_transport})
    env_modules = os.getenv("LEDGERFLOW_ACTION_MODULES")
    if env_modules:
        config.action_modules = [m.strip() for m in env_modules.split(",") if m.strip()]
    env_level = os.getenv("LEDGERFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the CLI and worker processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
