"""Backend interface for external worker execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class WorkerRunRequest:
    """Inputs required to execute one processing attempt."""

    command_template: str
    prompt: str
    prompt_file: Path
    request_file: Path
    cwd: Path
    timeout_seconds: int
    stdout_path: Path
    stderr_path: Path
    grace_seconds: float = 2.0
    env: dict[str, str] | None = None
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class WorkerRunResult:
    """Execution outcome from the backend runner."""

    exit_code: int
    timed_out: bool
    duration_seconds: float
    stdout_path: Path
    stderr_path: Path
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.interrupted


class WorkerBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        """Run one attempt and return execution metadata."""
