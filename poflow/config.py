from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_ACCEPTANCE_THRESHOLD,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_REATTEMPTS,
    DEFAULT_METADATA_TTL_SECONDS,
    DEFAULT_STAGE_CONCURRENCY,
    DEFAULT_STALENESS_THRESHOLD_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
)

ExecutionModeName = Literal["queued", "sequential"]


class RedisConfig(BaseModel):
    """Connection settings for Redis."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class QueueConfig(BaseModel):
    """Stage queue backend settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    key_prefix: str = "poflow:queue"


class MetadataConfig(BaseModel):
    """Metadata store settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    key_prefix: str = "poflow:meta"
    ttl_seconds: int = DEFAULT_METADATA_TTL_SECONDS


class StageConfig(BaseModel):
    """Per-stage worker settings."""

    concurrency: int = 1
    max_attempts: Optional[int] = None


class RetryConfig(BaseModel):
    """Exponential backoff applied to transient stage failures."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.1
    quota_delay_multiplier: float = 5.0


class RecoveryConfig(BaseModel):
    """Stuck-workflow sweep settings."""

    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS
    acceptance_threshold: float = DEFAULT_ACCEPTANCE_THRESHOLD
    max_reattempts: int = DEFAULT_MAX_REATTEMPTS
    batch_size: int = 50


class ExecutionConfig(BaseModel):
    """Selects queue-driven or sequential execution per owner."""

    default_mode: ExecutionModeName = "queued"
    owners: Dict[str, ExecutionModeName] = Field(default_factory=dict)
    sequential_max_concurrency: int = 4

    def mode_for(self, owner_id: Optional[str]) -> ExecutionModeName:
        if owner_id is not None and owner_id in self.owners:
            return self.owners[owner_id]
        return self.default_mode


class CollaboratorsConfig(BaseModel):
    """Dotted ``module:attribute`` references to collaborator factories."""

    extraction: Optional[str] = None
    aggregates: Optional[str] = None
    sync: Optional[str] = None
    enrichment: Optional[str] = None
    storage: Optional[str] = None


def _default_stages() -> Dict[str, StageConfig]:
    return {
        name: StageConfig(concurrency=concurrency)
        for name, concurrency in DEFAULT_STAGE_CONCURRENCY.items()
    }


class PoflowConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    metadata: MetadataConfig = MetadataConfig()
    database_url: Optional[str] = None
    stages: Dict[str, StageConfig] = Field(default_factory=_default_stages)
    retry: RetryConfig = RetryConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    execution: ExecutionConfig = ExecutionConfig()
    collaborators: CollaboratorsConfig = CollaboratorsConfig()

    @field_validator("stages", mode="before")
    @classmethod
    def _merge_default_stages(cls, value):
        """Overlay configured stages on the built-in table, key by key."""
        if not isinstance(value, dict):
            return value
        merged = {
            name: {"concurrency": concurrency}
            for name, concurrency in DEFAULT_STAGE_CONCURRENCY.items()
        }
        for name, overrides in value.items():
            if isinstance(overrides, StageConfig):
                overrides = overrides.model_dump(exclude_unset=True)
            merged[name] = {**merged.get(name, {}), **(overrides or {})}
        return merged

    def stage_concurrency(self, stage_name: str) -> int:
        stage = self.stages.get(stage_name)
        if stage is None:
            return DEFAULT_STAGE_CONCURRENCY.get(stage_name, 1)
        return max(1, stage.concurrency)

    def stage_max_attempts(self, stage_name: str) -> int:
        stage = self.stages.get(stage_name)
        if stage is not None and stage.max_attempts is not None:
            return stage.max_attempts
        return self.retry.max_attempts


def load_config(path: Optional[str] = None) -> PoflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to POFLOW_CONFIG env
            variable or 'poflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("POFLOW_CONFIG", "poflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PoflowConfig(**data)
    else:
        config = PoflowConfig()

    env_db_url = os.getenv("POFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_queue = os.getenv("POFLOW_QUEUE_BACKEND")
    if env_queue:
        config.queue.backend = env_queue.lower()
    env_metadata = os.getenv("POFLOW_METADATA_BACKEND")
    if env_metadata:
        config.metadata.backend = env_metadata.lower()
    return config
