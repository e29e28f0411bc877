"""Workflow executors."""

from .base import BaseExecutor, StageFailure
from .queued import QueueExecutor
from .sequential import RunResult, SequentialExecutor

__all__ = [
    "BaseExecutor",
    "QueueExecutor",
    "RunResult",
    "SequentialExecutor",
    "StageFailure",
]
