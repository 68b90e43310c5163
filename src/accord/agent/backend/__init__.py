"""External worker backends."""

from accord.agent.backend.base import WorkerBackend, WorkerRunRequest, WorkerRunResult
from accord.agent.backend.cli_backend import SubprocessWorkerBackend, WorkerLaunchError

__all__ = [
    "SubprocessWorkerBackend",
    "WorkerBackend",
    "WorkerLaunchError",
    "WorkerRunRequest",
    "WorkerRunResult",
]
