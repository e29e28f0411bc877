"""Interfaces of the external services the pipeline calls.

Implementations live outside this package. They are wired in through
``CollaboratorsConfig`` as dotted ``module:attribute`` references, or passed
directly to ``build_runtime``.
"""

from __future__ import annotations

import importlib
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .config import CollaboratorsConfig
from .errors import FatalConfigurationError


class ExtractionResult(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = None
    model_used: Optional[str] = None


class AggregateUpsert(BaseModel):
    aggregate_id: str
    child_record_count: int = 0


class AggregateSummary(BaseModel):
    """What the persistence layer currently holds for one workflow."""

    aggregate_id: str
    child_record_count: int = 0
    confidence_score: Optional[float] = None


class SyncAck(BaseModel):
    external_id: Optional[str] = None
    synced: bool = True


@runtime_checkable
class ExtractionService(Protocol):
    async def extract(
        self, document: bytes, workflow_id: str, options: Dict[str, Any]
    ) -> ExtractionResult:
        """Turn document bytes into structured fields.

        Raises ``QuotaExceededError`` when the provider is rate limited.
        """


@runtime_checkable
class AggregateStore(Protocol):
    async def upsert_aggregate(
        self, workflow_id: str, fields: Dict[str, Any]
    ) -> AggregateUpsert:
        """Create or replace the purchase order (and its lines) of a workflow."""

    async def describe(self, workflow_id: str) -> AggregateSummary | None:
        """Summary of persisted data for ``workflow_id``, if any."""


@runtime_checkable
class SyncService(Protocol):
    async def push(self, aggregate_id: str) -> SyncAck:
        """Send the aggregate to the external commerce platform."""


@runtime_checkable
class Enricher(Protocol):
    async def enrich(self, aggregate_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Return additional attributes for the aggregate."""


@runtime_checkable
class DocumentStorage(Protocol):
    async def download(self, document_ref: str) -> bytes:
        """Fetch an uploaded document from object storage."""


class Collaborators(BaseModel):
    """Bundle of collaborator instances handed to the pipeline."""

    extraction: Optional[Any] = None
    aggregates: Optional[Any] = None
    sync: Optional[Any] = None
    enrichment: Optional[Any] = None
    storage: Optional[Any] = None

    def require(self, name: str) -> Any:
        value = getattr(self, name)
        if value is None:
            raise FatalConfigurationError(f"No {name} collaborator configured")
        return value


def load_object(reference: str) -> Any:
    """Resolve ``package.module:attribute`` and instantiate it if callable.

    Classes and factory functions are called without arguments; any other
    attribute is returned as is.
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{reference}'")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to load collaborator '{reference}': {e}") from e
    return target() if callable(target) else target


def load_collaborators(config: CollaboratorsConfig) -> Collaborators:
    """Instantiate every collaborator named in ``config``."""
    loaded = {
        name: load_object(reference)
        for name, reference in config.model_dump().items()
        if reference
    }
    return Collaborators(**loaded)
