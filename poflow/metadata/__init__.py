"""Metadata store factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PoflowConfig, load_config
from .base import MetadataStore, stage_key
from .inmemory import InMemoryMetadataStore


def get_metadata_store(
    backend: Optional[str] = None, config: Optional[PoflowConfig] = None
) -> MetadataStore:
    """Factory function to get the configured metadata store."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("POFLOW_METADATA_BACKEND")
        or config.metadata.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryMetadataStore(default_ttl=config.metadata.ttl_seconds)
    elif backend == "redis":
        from .redis import RedisMetadataStore

        redis_conf = config.metadata.redis
        return RedisMetadataStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=config.metadata.key_prefix,
            default_ttl=config.metadata.ttl_seconds,
        )
    else:
        raise ValueError(f"Unsupported metadata backend: {backend}")


__all__ = ["MetadataStore", "InMemoryMetadataStore", "get_metadata_store", "stage_key"]
