"""Redis-backed metadata store."""

from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as redis

from .base import MetadataStore


class RedisMetadataStore(MetadataStore):
    """Store stage outputs as JSON strings with ``SETEX`` expiry."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "poflow:meta",
        default_ttl: int = 7200,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._redis: Optional[Any] = None

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if not self._redis:
            await self.connect()
        ttl = ttl_seconds or self.default_ttl
        await self._redis.set(self._key(key), json.dumps(value), ex=ttl)

    async def get(self, key: str) -> Any | None:
        if not self._redis:
            await self.connect()
        raw = await self._redis.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.delete(self._key(key))
