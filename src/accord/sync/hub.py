"""Synchronization protocol between a repository and the shared hub.

Multi-repo services keep a clone of the hub under `.accord/hub/` and exchange
contracts, registry entries and requests with it:

- pull: refresh the clone, then copy other parties' contracts and registry
  entries (only over missing files or untouched scaffolds) and inbound
  requests (never ones already archived locally);
- push: copy own contracts, registry entries, outbound requests and the
  archive into the clone, drop archived requests from hub inboxes, commit and
  push with a bounded rebase-and-retry loop.

Monorepos and the orchestrator have no separate hub; `RepositorySync` only
pulls and pushes the repository itself.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from accord.config import AccordLayout, Deployment, SyncSettings
from accord.protocol.contracts import is_scaffold
from accord.protocol.document import RequestFormatError
from accord.protocol.models import (
    Priority,
    RequestStatus,
    RequestType,
    Scope,
    iso_timestamp,
)
from accord.protocol.records import Request
from accord.protocol.store import REQUEST_GLOB, RequestStore, write_text_atomic
from accord.sync.git import GitError, GitRepository

logger = logging.getLogger(__name__)

GITKEEP = ".gitkeep"
# Runtime files that never belong in a commit.
_RUNTIME_EXCLUDES = ("hub", "log", ".agent.pid", ".agent.lock", ".last-tick")


@dataclass(slots=True)
class SyncReport:
    """What one pull or push did."""

    ok: bool = True
    pulled_requests: list[str] = field(default_factory=list)
    updated_files: list[str] = field(default_factory=list)
    protected_files: list[str] = field(default_factory=list)
    removed_from_hub: list[str] = field(default_factory=list)
    notifications: list[str] = field(default_factory=list)
    committed: bool = False
    pushed: bool = False
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str, *args: object) -> None:
        text = message % args if args else message
        logger.warning(text)
        self.warnings.append(text)

    def lines(self) -> list[str]:
        lines = [
            f"ok={self.ok} committed={self.committed} pushed={self.pushed}",
            f"requests pulled: {len(self.pulled_requests)}",
            f"files updated: {len(self.updated_files)}",
            f"customized files kept: {len(self.protected_files)}",
        ]
        if self.removed_from_hub:
            lines.append(f"archived requests removed from hub: {len(self.removed_from_hub)}")
        if self.notifications:
            lines.append(f"join notifications: {', '.join(self.notifications)}")
        lines.extend(f"warning: {warning}" for warning in self.warnings)
        return lines


class SyncProtocol(Protocol):
    """What the daemon needs from a synchronization strategy."""

    def pull(self) -> SyncReport:
        """Bring remote state into the local repository."""

    def push(self, message: str | None = None) -> SyncReport:
        """Publish local state."""


def _same_content(source: Path, destination: Path) -> bool:
    return destination.is_file() and destination.read_bytes() == source.read_bytes()


def _copy(source: Path, destination: Path) -> bool:
    """Copy when content differs; True if the destination changed."""

    if _same_content(source, destination):
        return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    return True


def _state_pathspecs(layout: AccordLayout, repository_root: Path) -> list[str]:
    try:
        relative = layout.state_dir.relative_to(repository_root)
    except ValueError:
        relative = Path(".")
    base = relative.as_posix() if relative != Path(".") else "."
    specs = [base]
    for name in _RUNTIME_EXCLUDES:
        excluded = name if base == "." else f"{base}/{name}"
        specs.append(f":(exclude){excluded}")
    return specs


def commit_state(
    layout: AccordLayout,
    message: str,
    *,
    timeout_seconds: int,
) -> GitRepository | None:
    """Commit changes under the state directory; returns the repo if it committed."""

    repository = GitRepository(layout.target_dir, timeout_seconds=timeout_seconds)
    if not repository.is_repo():
        logger.debug("%s is not a git repository; skipping commit", layout.target_dir)
        return None
    root = repository.toplevel().resolve()
    if repository.commit_all(message, pathspecs=_state_pathspecs(layout, root)):
        return repository
    return None


class RepositorySync:
    """Sync for monorepos and the orchestrator: the repository is the hub."""

    def __init__(self, *, layout: AccordLayout, settings: SyncSettings) -> None:
        self.layout = layout
        self.settings = settings
        self.repository = GitRepository(
            layout.target_dir,
            timeout_seconds=settings.git_timeout_seconds,
        )

    def pull(self) -> SyncReport:
        report = SyncReport()
        if not self.repository.is_repo():
            report.warn("%s is not a git repository; working local-only", self.layout.target_dir)
            report.ok = False
            return report
        if not self.repository.has_upstream():
            logger.debug("No upstream for %s; nothing to pull", self.layout.target_dir)
            return report
        try:
            self.repository.pull_rebase()
        except GitError as error:
            self.repository.abort_rebase()
            report.warn("Pull failed, continuing with local state: %s", error)
            report.ok = False
        return report

    def push(self, message: str | None = None) -> SyncReport:
        report = SyncReport()
        if not self.repository.is_repo():
            report.warn("%s is not a git repository; nothing to push", self.layout.target_dir)
            report.ok = False
            return report
        try:
            report.committed = (
                commit_state(
                    self.layout,
                    message or "accord: sync",
                    timeout_seconds=self.settings.git_timeout_seconds,
                )
                is not None
            )
            if not self.repository.has_remote():
                logger.debug("No remote for %s; commit stays local", self.layout.target_dir)
                return report
            if self.repository.is_ahead():
                report.pushed = self.repository.push_with_retry(
                    max_attempts=self.settings.push_max_retries,
                )
                if not report.pushed:
                    report.ok = False
                    report.warn("Push did not reach the remote; will retry next sync")
        except GitError as error:
            report.ok = False
            report.warn("Push failed: %s", error)
        return report


class HubSync:
    """Sync for a multi-repo service through its cached hub clone."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        layout: AccordLayout,
        hub_url: str,
        own_service: str,
        own_names: list[str],
        participants: list[str],
        settings: SyncSettings,
    ) -> None:
        self.layout = layout
        self.hub_url = hub_url
        self.own_service = own_service
        self.own_names = own_names
        self.participants = participants
        self.settings = settings
        self.store = RequestStore(layout)
        self.hub = GitRepository(layout.hub_dir, timeout_seconds=settings.git_timeout_seconds)

    @property
    def hub_dir(self) -> Path:
        return self.layout.hub_dir

    @property
    def is_cloned(self) -> bool:
        return (self.hub_dir / ".git").exists()

    def init(self) -> SyncReport:
        """Clone (or refresh) the hub, seed an empty hub, announce this service, push."""

        report = SyncReport()
        if not self._refresh(report):
            return report
        if not (self.hub_dir / "contracts").is_dir():
            logger.info("Hub is empty; creating initial structure")
            self._seed_structure()
        self._ensure_hub_inbox(self.own_service)
        self._merge_inbound(report)
        self.announce_join(report)
        pushed = self.push(f"accord-sync({self.own_service}): join")
        _merge_reports(report, pushed)
        return report

    def pull(self) -> SyncReport:
        report = SyncReport()
        if self._refresh(report):
            self._merge_inbound(report)
        return report

    def push(self, message: str | None = None) -> SyncReport:
        report = SyncReport()
        try:
            committed = commit_state(
                self.layout,
                message or f"accord-sync({self.own_service}): local state",
                timeout_seconds=self.settings.git_timeout_seconds,
            )
            report.committed = committed is not None
        except GitError as error:
            report.warn("Local commit failed: %s", error)

        if not self.is_cloned and not self._refresh(report):
            return report
        if self.hub.has_upstream():
            try:
                self.hub.pull_rebase()
            except GitError as error:
                self.hub.abort_rebase()
                report.warn("Hub pull before push failed: %s", error)

        self._copy_outbound(report)
        try:
            if self.hub.commit_all(message or f"accord-sync({self.own_service}): push"):
                report.committed = True
            if self.hub.is_ahead():
                report.pushed = self.hub.push_with_retry(
                    max_attempts=self.settings.push_max_retries,
                )
                if not report.pushed:
                    report.ok = False
                    report.warn("Hub push did not go through; will retry next sync")
        except GitError as error:
            report.ok = False
            report.warn("Hub push failed: %s", error)
        return report

    def announce_join(self, report: SyncReport | None = None) -> list[Path]:
        """Leave a low-priority notice in every other participant's hub inbox.

        The file name is derived from this service's name, so repeated joins
        find the notice already present (or already archived) and skip it.
        """

        written: list[Path] = []
        request_id = f"req-000-service-joined-{self.own_service}"
        for participant in self.participants:
            if participant == self.own_service:
                continue
            target = self.hub_dir / "comms" / "inbox" / participant / f"{request_id}.md"
            archived = self.hub_dir / "comms" / "archive" / f"{request_id}.md"
            if target.exists() or archived.exists():
                continue
            timestamp = iso_timestamp()
            notice = Request(
                id=request_id,
                from_=self.own_service,
                to=participant,
                scope=Scope.EXTERNAL.value,
                type=RequestType.OTHER.value,
                priority=Priority.LOW.value,
                status=RequestStatus.PENDING,
                created=timestamp,
                updated=timestamp,
                body=_join_body(self.own_service),
            )
            write_text_atomic(target, notice.to_text())
            written.append(target)
            if report is not None:
                report.notifications.append(participant)
        return written

    def _refresh(self, report: SyncReport) -> bool:
        try:
            if not self.is_cloned:
                GitRepository.clone(
                    self.hub_url,
                    self.hub_dir,
                    timeout_seconds=self.settings.git_timeout_seconds,
                )
            elif self.hub.has_upstream():
                self.hub.pull_rebase()
        except GitError as error:
            if self.is_cloned:
                self.hub.abort_rebase()
            report.warn("Hub %s unreachable, working local-only: %s", self.hub_url, error)
            report.ok = False
            return False
        return True

    def _seed_structure(self) -> None:
        for relative in ("contracts", "contracts/internal", "registry", "comms/archive"):
            (self.hub_dir / relative).mkdir(parents=True, exist_ok=True)
            (self.hub_dir / relative / GITKEEP).touch()
        for participant in self.participants:
            self._ensure_hub_inbox(participant)

    def _ensure_hub_inbox(self, name: str) -> None:
        inbox = self.hub_dir / "comms" / "inbox" / name
        inbox.mkdir(parents=True, exist_ok=True)
        (inbox / GITKEEP).touch()

    def _merge_inbound(self, report: SyncReport) -> None:
        self._merge_contracts(report)
        self._merge_registry(report)
        self._merge_requests(report)
        self._settle_outbound(report)

    def _merge_protected(self, source: Path, destination: Path, report: SyncReport) -> None:
        if _same_content(source, destination):
            return
        if destination.exists() and not is_scaffold(destination):
            report.protected_files.append(str(destination))
            logger.debug("Keeping customized %s", destination)
            return
        _copy(source, destination)
        report.updated_files.append(str(destination))

    def _merge_contracts(self, report: SyncReport) -> None:
        hub_contracts = self.hub_dir / "contracts"
        if not hub_contracts.is_dir():
            return
        for source in sorted(hub_contracts.glob("*.yaml")):
            if source.stem in self.own_names:
                continue
            self._merge_protected(source, self.layout.contracts_dir / source.name, report)
        hub_internal = hub_contracts / "internal"
        if not hub_internal.is_dir():
            return
        for owner_dir in sorted(path for path in hub_internal.iterdir() if path.is_dir()):
            if owner_dir.name == self.own_service:
                continue
            for source in sorted(owner_dir.glob("*.md")):
                destination = self.layout.internal_contracts_dir / owner_dir.name / source.name
                self._merge_protected(source, destination, report)

    def _merge_registry(self, report: SyncReport) -> None:
        hub_registry = self.hub_dir / "registry"
        if not hub_registry.is_dir():
            return
        for source in sorted(hub_registry.glob("*.md")):
            if source.stem in self.own_names:
                continue
            self._merge_protected(source, self.layout.registry_dir / source.name, report)

    def _merge_requests(self, report: SyncReport) -> None:
        archived = self.store.archived_ids()
        for name in self.own_names:
            hub_inbox = self.hub_dir / "comms" / "inbox" / name
            if not hub_inbox.is_dir():
                continue
            for source in sorted(hub_inbox.glob(REQUEST_GLOB)):
                if source.stem in archived or _request_id(source) in archived:
                    continue
                destination = self.layout.inbox_dir(name) / source.name
                if destination.exists():
                    continue
                _copy(source, destination)
                report.pulled_requests.append(source.stem)
                logger.info("Pulled request %s into inbox %s", source.stem, name)

    def _settle_outbound(self, report: SyncReport) -> None:
        """Move outbound requests the recipient archived into the local archive."""

        hub_archive = self.hub_dir / "comms" / "archive"
        if not hub_archive.is_dir():
            return
        for name in self.store.inbox_names():
            if name in self.own_names:
                continue
            for local in sorted(self.layout.inbox_dir(name).glob(REQUEST_GLOB)):
                archived = hub_archive / local.name
                if not archived.is_file():
                    continue
                _copy(archived, self.layout.archive_dir / local.name)
                local.unlink()
                report.updated_files.append(str(self.layout.archive_dir / local.name))
                logger.info("Outbound request %s was archived by its recipient", local.stem)

    def _copy_outbound(self, report: SyncReport) -> None:
        hub_contracts = self.hub_dir / "contracts"
        own_contract = self.layout.contracts_dir / f"{self.own_service}.yaml"
        if own_contract.is_file() and _copy(own_contract, hub_contracts / own_contract.name):
            report.updated_files.append(str(hub_contracts / own_contract.name))
        if self.layout.internal_contracts_dir.is_dir():
            for source in sorted(self.layout.internal_contracts_dir.glob("*.md")):
                destination = hub_contracts / "internal" / self.own_service / source.name
                if _copy(source, destination):
                    report.updated_files.append(str(destination))
        for name in self.own_names:
            source = self.layout.registry_dir / f"{name}.md"
            destination = self.hub_dir / "registry" / source.name
            if source.is_file() and _copy(source, destination):
                report.updated_files.append(str(destination))

        hub_archive = self.hub_dir / "comms" / "archive"
        for name in self.store.inbox_names():
            for source in sorted(self.layout.inbox_dir(name).glob(REQUEST_GLOB)):
                if (hub_archive / source.name).exists():
                    continue
                destination = self.hub_dir / "comms" / "inbox" / name / source.name
                if _copy(source, destination):
                    report.updated_files.append(str(destination))

        if not self.layout.archive_dir.is_dir():
            return
        hub_inboxes = self.hub_dir / "comms" / "inbox"
        for source in sorted(self.layout.archive_dir.glob(REQUEST_GLOB)):
            if hub_inboxes.is_dir():
                for stale in hub_inboxes.glob(f"*/{source.name}"):
                    stale.unlink()
                    report.removed_from_hub.append(source.stem)
                    logger.info("Removed archived %s from hub inbox", source.stem)
            _copy(source, hub_archive / source.name)


def _request_id(path: Path) -> str | None:
    try:
        return Request.load(path).id
    except RequestFormatError:
        return None


def _merge_reports(target: SyncReport, other: SyncReport) -> None:
    target.ok = target.ok and other.ok
    target.committed = target.committed or other.committed
    target.pushed = target.pushed or other.pushed
    target.updated_files.extend(other.updated_files)
    target.removed_from_hub.extend(other.removed_from_hub)
    target.warnings.extend(other.warnings)


def _join_body(service: str) -> str:
    return (
        "\n"
        "## What\n\n"
        f"Service **{service}** has joined the project. Run `accord sync pull` to fetch "
        "the latest contracts.\n\n"
        "## Proposed Change\n\n"
        "No contract changes. This is an informational notification.\n\n"
        "## Why\n\n"
        "A new participant registered with the hub; other services should pull to see "
        "its contract.\n\n"
        "## Impact\n\n"
        "None. Approve or withdraw at your convenience.\n"
    )


def build_sync(deployment: Deployment, settings: SyncSettings) -> HubSync | RepositorySync:
    """Pick the sync strategy for a deployment."""

    if deployment.uses_hub and deployment.own_service is not None:
        return HubSync(
            layout=deployment.layout,
            hub_url=deployment.project.hub or "",
            own_service=deployment.own_service,
            own_names=deployment.inbox_names(),
            participants=deployment.project.service_names,
            settings=settings,
        )
    return RepositorySync(layout=deployment.layout, settings=settings)
