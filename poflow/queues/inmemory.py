"""In-memory queue backend for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional

from ..contracts import FailedJob, Job, QueueCounts
from .base import BaseQueueBackend


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _QueueState:
    waiting: Deque[Job] = field(default_factory=deque)
    delayed: List[Job] = field(default_factory=list)
    active: Dict[str, Job] = field(default_factory=dict)
    failed: List[FailedJob] = field(default_factory=list)
    completed: int = 0
    paused: bool = False


class InMemoryQueueBackend(BaseQueueBackend):
    """Simple in-process queues for unit tests and single-process runs."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._queues: Dict[str, _QueueState] = defaultdict(_QueueState)
        self._lock = asyncio.Lock()
        self._clock = clock

    async def enqueue(self, queue_name: str, job: Job, delay: float = 0) -> str:
        """Publish job to in-memory queue."""
        async with self._lock:
            state = self._queues[queue_name]
            if delay > 0:
                job = job.model_copy(
                    update={"available_at": self._clock() + timedelta(seconds=delay)}
                )
                state.delayed.append(job)
                state.delayed.sort(key=lambda j: j.available_at)
            else:
                state.waiting.append(job)
        return job.job_id

    def _promote_due(self, state: _QueueState) -> None:
        now = self._clock()
        while state.delayed and state.delayed[0].available_at <= now:
            state.waiting.append(state.delayed.pop(0))

    async def fetch(self, queue_name: str) -> Optional[Job]:
        async with self._lock:
            state = self._queues[queue_name]
            if state.paused:
                return None
            self._promote_due(state)
            if not state.waiting:
                return None
            job = state.waiting.popleft()
            state.active[job.job_id] = job
            return job

    async def complete(self, queue_name: str, job: Job) -> None:
        async with self._lock:
            state = self._queues[queue_name]
            state.active.pop(job.job_id, None)
            state.completed += 1

    async def fail(self, queue_name: str, job: Job, error: str) -> None:
        async with self._lock:
            state = self._queues[queue_name]
            state.active.pop(job.job_id, None)
            state.failed.append(FailedJob(job=job, error=error))

    async def pause(self, queue_name: str) -> None:
        async with self._lock:
            self._queues[queue_name].paused = True

    async def resume(self, queue_name: str) -> None:
        async with self._lock:
            self._queues[queue_name].paused = False

    async def counts(self, queue_name: str) -> QueueCounts:
        async with self._lock:
            state = self._queues[queue_name]
            return QueueCounts(
                waiting=len(state.waiting),
                active=len(state.active),
                completed=state.completed,
                failed=len(state.failed),
                delayed=len(state.delayed),
                paused=state.paused,
            )

    async def drain_failed(self, queue_name: str) -> list[FailedJob]:
        async with self._lock:
            state = self._queues[queue_name]
            drained, state.failed = state.failed, []
            return drained

    def pending_jobs(self, queue_name: str) -> list[Job]:
        """Waiting and delayed jobs of ``queue_name``, for inspection."""
        state = self._queues[queue_name]
        return list(state.waiting) + list(state.delayed)
