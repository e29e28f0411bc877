"""Base interface for stage queue backends."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..contracts import FailedJob, Job, QueueCounts

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[object]]


class BaseQueueBackend(metaclass=abc.ABCMeta):
    """Abstract job queue with named, independently consumed queues.

    Backends implement the storage primitives (``enqueue``, ``fetch``,
    ``complete``, ``fail``); the consumer loop in ``process`` is shared.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(self, queue_name: str, job: Job, delay: float = 0) -> str:
        """Add ``job`` to ``queue_name``, available after ``delay`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch(self, queue_name: str) -> Optional[Job]:
        """Claim the next ready job, or return ``None`` if none or paused."""
        raise NotImplementedError

    @abc.abstractmethod
    async def complete(self, queue_name: str, job: Job) -> None:
        """Mark a claimed job as completed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fail(self, queue_name: str, job: Job, error: str) -> None:
        """Mark a claimed job as failed and keep it for inspection."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pause(self, queue_name: str) -> None:
        """Stop handing out jobs from ``queue_name`` without discarding them."""
        raise NotImplementedError

    @abc.abstractmethod
    async def resume(self, queue_name: str) -> None:
        """Continue handing out jobs from ``queue_name``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def counts(self, queue_name: str) -> QueueCounts:
        """Return waiting/active/completed/failed/delayed counts."""
        raise NotImplementedError

    @abc.abstractmethod
    async def drain_failed(self, queue_name: str) -> list[FailedJob]:
        """Remove and return the failed jobs of ``queue_name``."""
        raise NotImplementedError

    async def run_job(self, queue_name: str, job: Job, handler: JobHandler) -> bool:
        """Run ``handler`` for a claimed job and settle it; never raises."""
        try:
            await handler(job)
        except Exception as exc:
            logger.error(
                f"Job {job.job_id} on queue {queue_name} failed "
                f"for workflow_id={job.workflow_id}: {exc}"
            )
            await self.fail(queue_name, job, str(exc) or exc.__class__.__name__)
            return False
        await self.complete(queue_name, job)
        return True

    async def process(
        self,
        queue_name: str,
        concurrency: int,
        handler: JobHandler,
        lifespan: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> None:
        """Consume ``queue_name`` with up to ``concurrency`` jobs in flight.

        Args:
            queue_name: The queue to consume.
            concurrency: Number of jobs handled in parallel.
            handler: Coroutine invoked per job.
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
            poll_interval: Sleep between polls of an empty queue.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        async def worker() -> None:
            while deadline is None or loop.time() < deadline:
                job = await self.fetch(queue_name)
                if job is None:
                    await asyncio.sleep(poll_interval)
                    continue
                await self.run_job(queue_name, job, handler)

        await asyncio.gather(*(worker() for _ in range(max(1, concurrency))))
