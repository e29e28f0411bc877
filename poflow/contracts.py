"""Core message contracts for the poflow stage queues."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """Small descriptor dispatched through a stage queue.

    Bulk content never travels in a job: ``payload_ref`` addresses the
    metadata store entry the stage reads its input from.
    """

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    stage_name: str
    attempts_made: int = 0
    payload_ref: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=_now)
    available_at: datetime = Field(default_factory=_now)

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Job":
        """Deserialize job from JSON."""
        return cls.model_validate_json(data)

    def next_attempt(self) -> "Job":
        """Copy of this job for a retry, with a fresh id and bumped attempt."""
        return self.model_copy(
            update={
                "job_id": uuid.uuid4().hex,
                "attempts_made": self.attempts_made + 1,
                "enqueued_at": _now(),
            }
        )


class FailedJob(BaseModel):
    """A job whose handler raised, kept until drained."""

    job: Job
    error: str
    failed_at: datetime = Field(default_factory=_now)


class QueueCounts(BaseModel):
    """Point-in-time job counts for one stage queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()
