"""Queue backend factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PoflowConfig, load_config
from .base import BaseQueueBackend, JobHandler
from .inmemory import InMemoryQueueBackend


def get_queue_backend(
    backend: Optional[str] = None, config: Optional[PoflowConfig] = None
) -> BaseQueueBackend:
    """Factory function to get the configured queue backend."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("POFLOW_QUEUE_BACKEND")
        or config.queue.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryQueueBackend()
    elif backend == "redis":
        from .redis import RedisQueueBackend

        redis_conf = config.queue.redis
        return RedisQueueBackend(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=config.queue.key_prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseQueueBackend", "InMemoryQueueBackend", "JobHandler", "get_queue_backend"]
