"""Base interface for the stage metadata store."""

from __future__ import annotations

import abc
from typing import Any, Optional


def stage_key(workflow_id: str, stage_name: str) -> str:
    """Key under which ``stage_name`` publishes its output for ``workflow_id``."""
    return f"{workflow_id}:{stage_name}"


class MetadataStore(metaclass=abc.ABCMeta):
    """Expiring key/value cache used to hand stage outputs to later stages.

    Values must be JSON-serializable. Every key has a single writer, so
    last-writer-wins is the only conflict rule.
    """

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    @abc.abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl_seconds``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under ``key`` or ``None`` if missing or expired."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        raise NotImplementedError
