"""Shared fixtures: fake collaborators and a fully in-memory runtime."""

import pytest

from fixtures.collaborators import (
    FakeAggregateStore,
    FakeDocumentStorage,
    FakeEnricher,
    FakeExtractionService,
    FakeSyncService,
)
from poflow.collaborators import Collaborators
from poflow.config import PoflowConfig, RetryConfig
from poflow.metadata.inmemory import InMemoryMetadataStore
from poflow.persistence import InMemoryWorkflowRepository
from poflow.queues.inmemory import InMemoryQueueBackend
from poflow.runtime import build_runtime


@pytest.fixture
def extraction():
    return FakeExtractionService()


@pytest.fixture
def aggregates():
    return FakeAggregateStore()


@pytest.fixture
def sync_service():
    return FakeSyncService()


@pytest.fixture
def enricher():
    return FakeEnricher()


@pytest.fixture
def storage():
    return FakeDocumentStorage()


@pytest.fixture
def collaborators(extraction, aggregates, sync_service, enricher, storage):
    return Collaborators(
        extraction=extraction,
        aggregates=aggregates,
        sync=sync_service,
        enrichment=enricher,
        storage=storage,
    )


@pytest.fixture
def config():
    """Config whose retries are immediately due, so run_until_idle drives them."""
    return PoflowConfig(retry=RetryConfig(base_delay=0.0, jitter=0.0))


@pytest.fixture
def runtime(config, collaborators):
    return build_runtime(
        config,
        collaborators=collaborators,
        repository=InMemoryWorkflowRepository(),
        metadata_store=InMemoryMetadataStore(),
        queue_backend=InMemoryQueueBackend(),
    )
