"""Explicit construction of every poflow component from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .collaborators import Collaborators, load_collaborators
from .config import PoflowConfig, load_config
from .dispatch import WorkflowDispatcher
from .executors import QueueExecutor, SequentialExecutor
from .metadata import MetadataStore, get_metadata_store
from .persistence import WorkflowRepository, get_repository
from .pipeline import PurchaseOrderPipeline
from .queues import BaseQueueBackend, get_queue_backend
from .recovery import RecoverySweep
from .stages import DEFAULT_STAGES, StageSequence

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Wired set of components sharing one repository and metadata store."""

    config: PoflowConfig
    repository: WorkflowRepository
    metadata_store: MetadataStore
    queue_backend: BaseQueueBackend
    collaborators: Collaborators
    pipeline: PurchaseOrderPipeline
    queued: QueueExecutor
    sequential: SequentialExecutor
    dispatcher: WorkflowDispatcher
    sweep: RecoverySweep

    async def connect(self) -> None:
        await self.metadata_store.connect()
        await self.queue_backend.connect()

    async def close(self) -> None:
        await self.queue_backend.disconnect()
        await self.metadata_store.disconnect()

    async def __aenter__(self) -> "Runtime":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def build_runtime(
    config: Optional[PoflowConfig] = None,
    collaborators: Optional[Collaborators] = None,
    repository: Optional[WorkflowRepository] = None,
    metadata_store: Optional[MetadataStore] = None,
    queue_backend: Optional[BaseQueueBackend] = None,
    stages: StageSequence = DEFAULT_STAGES,
) -> Runtime:
    """Build a ``Runtime``; any component passed in is used instead of the configured one."""
    config = config or load_config()
    repository = repository or get_repository(config.database_url, config)
    metadata_store = metadata_store or get_metadata_store(config=config)
    queue_backend = queue_backend or get_queue_backend(config=config)
    collaborators = collaborators or load_collaborators(config.collaborators)

    pipeline = PurchaseOrderPipeline(
        collaborators, acceptance_threshold=config.recovery.acceptance_threshold
    )
    queued = QueueExecutor(
        queue_backend, repository, metadata_store, pipeline, stages, config
    )
    sequential = SequentialExecutor(repository, metadata_store, pipeline, stages, config)
    dispatcher = WorkflowDispatcher(
        repository,
        metadata_store,
        {queued.mode: queued, sequential.mode: sequential},
        stages,
        config,
    )
    sweep = RecoverySweep(
        repository, collaborators.aggregates, stages, config.recovery
    )
    logger.debug(
        f"Built runtime: repository={type(repository).__name__}, "
        f"queue={type(queue_backend).__name__}, "
        f"metadata={type(metadata_store).__name__}"
    )
    return Runtime(
        config=config,
        repository=repository,
        metadata_store=metadata_store,
        queue_backend=queue_backend,
        collaborators=collaborators,
        pipeline=pipeline,
        queued=queued,
        sequential=sequential,
        dispatcher=dispatcher,
        sweep=sweep,
    )
