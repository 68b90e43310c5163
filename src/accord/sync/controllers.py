"""Controllers for `accord sync` CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from accord.config import Deployment, Settings, detect_deployment
from accord.sync.hub import HubSync, SyncReport, build_sync


@dataclass(slots=True)
class SyncCommand:
    """CLI input for sync operations."""

    target_dir: Path
    message: str | None = None


@dataclass(slots=True)
class SyncResult:
    lines: list[str]
    success: bool


def _render(label: str, deployment: Deployment, report: SyncReport) -> SyncResult:
    via = "hub" if deployment.uses_hub else "repository"
    return SyncResult(lines=[f"{label} ({via}):", *report.lines()], success=report.ok)


class SyncCliController:
    """Pull and push request/contract state through git."""

    def init(self, command: SyncCommand) -> SyncResult:
        deployment, sync = self._sync(command)
        report = sync.init() if isinstance(sync, HubSync) else sync.pull()
        return _render("Sync init", deployment, report)

    def pull(self, command: SyncCommand) -> SyncResult:
        deployment, sync = self._sync(command)
        return _render("Sync pull", deployment, sync.pull())

    def push(self, command: SyncCommand) -> SyncResult:
        deployment, sync = self._sync(command)
        return _render("Sync push", deployment, sync.push(command.message))

    def _sync(self, command: SyncCommand):
        deployment = detect_deployment(command.target_dir)
        settings = Settings.from_env(deployment.project)
        settings.validate()
        return deployment, build_sync(deployment, settings.sync)
