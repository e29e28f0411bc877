"""In-memory metadata store for tests and single-process runs."""

from __future__ import annotations

import copy
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import MetadataStore


class InMemoryMetadataStore(MetadataStore):
    """Dictionary-backed store honouring TTLs.

    Expired entries are dropped when read and purged on every write, so keys
    nobody reads again do not accumulate.
    """

    def __init__(
        self,
        default_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._default_ttl = default_ttl
        self._clock = clock

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        now = self._clock()
        self._purge_expired(now)
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = now + ttl if ttl else None
        self._entries[key] = (copy.deepcopy(value), expires_at)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def _purge_expired(self, now: float) -> None:
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
