"""poflow: staged, recoverable processing of uploaded purchase orders."""

from .collaborators import Collaborators
from .config import PoflowConfig, load_config
from .dispatch import WorkflowDispatcher
from .executors import QueueExecutor, RunResult, SequentialExecutor
from .metadata import get_metadata_store
from .persistence import WorkflowRecord, WorkflowStatus, get_repository
from .queues import get_queue_backend
from .recovery import RecoverySweep, SweepReport
from .runtime import Runtime, build_runtime
from .stages import DEFAULT_STAGES

__version__ = "0.1.0"
__all__ = [
    "Collaborators",
    "DEFAULT_STAGES",
    "PoflowConfig",
    "QueueExecutor",
    "RecoverySweep",
    "RunResult",
    "Runtime",
    "SequentialExecutor",
    "SweepReport",
    "WorkflowDispatcher",
    "WorkflowRecord",
    "WorkflowStatus",
    "build_runtime",
    "get_metadata_store",
    "get_queue_backend",
    "get_repository",
    "load_config",
]
