"""Request processing daemon: one tick pulls, scans, processes and pushes."""

from __future__ import annotations

import dataclasses
import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from accord.agent.backend import (
    SubprocessWorkerBackend,
    WorkerBackend,
    WorkerLaunchError,
    WorkerRunRequest,
    WorkerRunResult,
)
from accord.agent.commands import run_diagnostic
from accord.agent.prompt import build_worker_prompt
from accord.config import ORCHESTRATOR_INBOX, Deployment, Role, Settings
from accord.protocol import state_machine
from accord.protocol.contracts import contract_fingerprint, resolve_contract_path
from accord.protocol.directives import DirectiveTracker
from accord.protocol.document import RequestFormatError
from accord.protocol.history import HistoryWriter
from accord.protocol.models import Actor, RequestStatus, iso_timestamp
from accord.protocol.records import Request
from accord.protocol.state_machine import Transition, TransitionError
from accord.protocol.store import RequestStore, write_text_atomic
from accord.sync.git import GitError
from accord.sync.hub import SyncProtocol, build_sync

logger = logging.getLogger(__name__)

_DAEMON = Actor.DAEMON.value


@dataclass(slots=True)
class TickSummary:
    """Counters for one tick (or a whole run of ticks)."""

    scanned: int = 0
    processed: int = 0
    completed: int = 0
    commands: int = 0
    retried: int = 0
    failed: int = 0
    escalated: int = 0
    skipped: int = 0
    malformed: int = 0
    timeouts: int = 0

    def add(self, other: TickSummary) -> None:
        for item in dataclasses.fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))

    def lines(self) -> list[str]:
        return [f"{item.name}={getattr(self, item.name)}" for item in dataclasses.fields(self)]


class RequestDaemon:
    """Drives eligible requests of one deployment toward a terminal or retry state.

    The daemon never approves or rejects. It acts on requests that are
    `approved`, `in-progress` (resumed after a crash) or `pending` that it
    put back itself (`awaiting_retry`), and on diagnostic command requests,
    which need no approval.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        deployment: Deployment,
        settings: Settings,
        backend: WorkerBackend | None = None,
        sync: SyncProtocol | None = None,
        service: str | None = None,
    ) -> None:
        self.deployment = deployment
        self.layout = deployment.layout
        self.settings = settings
        self.backend = backend or SubprocessWorkerBackend()
        self.sync = sync if sync is not None else build_sync(deployment, settings.sync)
        self.service = service or deployment.own_service or _fallback_name(deployment)
        self.inbox_names = deployment.inbox_names(service)
        self.store = RequestStore(self.layout)
        self.history = HistoryWriter(self.layout.history_dir)
        self.directives = DirectiveTracker(
            layout=self.layout,
            store=self.store,
            history=self.history,
        )
        self._stop_requested = False

    def tick(self) -> TickSummary:
        """One pass: pull, process every eligible request once, roll up, push."""

        summary = TickSummary()
        self._sync("pull")

        scan = self.store.scan(self.inbox_names)
        summary.scanned = len(scan.requests)
        summary.malformed = len(scan.malformed)
        logger.info(
            "Tick for %s: %d request(s) in %s",
            self.service,
            summary.scanned,
            ", ".join(self.inbox_names) or "no inboxes",
        )

        for request in scan.requests:
            if self._stop_requested:
                logger.info("Stop requested; leaving remaining requests for the next tick")
                break
            try:
                self._process(request, summary)
            except (TransitionError, RequestFormatError) as error:
                logger.error("Skipping %s: %s", request.id, error)
                summary.skipped += 1

        directive_changes = []
        if self.deployment.role is Role.ORCHESTRATOR:
            directive_changes = self.directives.refresh()

        message = None
        if summary.processed or directive_changes:
            message = f"accord-agent({self.service}): process {summary.processed} request(s)"
        self._sync("push", message)
        write_text_atomic(self.layout.tick_stamp_file, f"{iso_timestamp()}\n")
        logger.info("Tick for %s done: %s", self.service, " ".join(summary.lines()))
        return summary

    run_once = tick

    def run_loop(self, *, max_ticks: int | None = None) -> TickSummary:
        """Tick every poll interval until stopped by a signal or `max_ticks`."""

        aggregate = TickSummary()
        ticks = 0
        with self._signal_handlers():
            while not self._stop_requested:
                aggregate.add(self.tick())
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep_with_stop(self.settings.daemon.poll_interval_seconds)
        logger.info("Daemon for %s stopped after %d tick(s)", self.service, ticks)
        return aggregate

    def _sync(self, action: str, *args: object) -> None:
        try:
            getattr(self.sync, action)(*args)
        except GitError as error:
            logger.warning("Sync %s failed; continuing with local state: %s", action, error)

    def request_stop(self) -> None:
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _process(self, request: Request, summary: TickSummary) -> None:
        if request.is_diagnostic and not request.related_contract:
            if request.status in {
                RequestStatus.PENDING,
                RequestStatus.APPROVED,
                RequestStatus.IN_PROGRESS,
            }:
                self._run_command(request, summary)
            return
        if not _eligible_for_worker(request):
            return

        command = self.settings.daemon.worker_command
        if not command:
            logger.warning("No worker command configured; leaving %s untouched", request.id)
            summary.skipped += 1
            return
        summary.processed += 1
        self._run_worker(request, command, summary)

    def _run_command(self, request: Request, summary: TickSummary) -> None:
        summary.processed += 1
        summary.commands += 1
        detail = f"command: {request.command}"
        report = run_diagnostic(
            request.command or "",
            layout=self.layout,
            project_name=self.deployment.project.project_name,
        )
        transitions: list[Transition] = []
        if request.status is not RequestStatus.IN_PROGRESS:
            transitions.append(state_machine.start(request, actor=_DAEMON))
        transitions.append(
            state_machine.complete(
                request,
                actor=_DAEMON,
                contract_updated=True,
                result=f"{report}\n\nExecuted by: {self.service} at {iso_timestamp()}",
            ),
        )
        self.store.archive(request)
        for transition in transitions:
            self.history.record(dataclasses.replace(transition, detail=detail))
        summary.completed += 1
        logger.info("Command %s answered for %s", request.command, request.id)

    def _run_worker(self, request: Request, command: str, summary: TickSummary) -> None:
        inbox_path = request.path
        contract_path = (
            resolve_contract_path(self.layout, request.related_contract)
            if request.related_contract
            else None
        )
        before = contract_fingerprint(contract_path) if contract_path else None

        if request.status is not RequestStatus.IN_PROGRESS:
            transition = state_machine.start(request, actor=_DAEMON)
            self.store.save(request)
            self.history.record(transition)
        else:
            logger.info("Resuming %s left in-progress by an earlier run", request.id)

        attempt = request.attempts + 1
        try:
            result = self.backend.run(self._run_request(request, command, attempt))
        except WorkerLaunchError as error:
            logger.warning("Worker for %s could not start: %s", request.id, error)
            self._fail_attempt(request, inbox_path, str(error), summary)
            return

        current = self._reclaim(request)
        if result.interrupted:
            transition = state_machine.revert(
                current,
                actor=_DAEMON,
                reason="daemon stopping; worker interrupted",
            )
            self._save_in_inbox(current, inbox_path)
            self.history.record(transition)
            logger.info("Worker for %s interrupted; request back to pending", request.id)
            return
        if result.timed_out:
            summary.timeouts += 1
            self._fail_attempt(
                current,
                inbox_path,
                f"worker timed out after {self.settings.daemon.request_timeout_seconds}s",
                summary,
            )
            return
        if not result.succeeded:
            self._fail_attempt(
                current,
                inbox_path,
                f"worker exited with code {result.exit_code}",
                summary,
            )
            return

        contract_updated = contract_path is None or contract_fingerprint(contract_path) != before
        if not contract_updated:
            self._fail_attempt(
                current,
                inbox_path,
                f"related contract {request.related_contract} was not updated",
                summary,
            )
            return

        transition = state_machine.complete(
            current,
            actor=_DAEMON,
            contract_updated=True,
            result=_worker_result(result, service=self.service, attempt=attempt),
        )
        self.store.archive(current)
        self.history.record(transition)
        summary.completed += 1
        logger.info("Completed %s in %.1fs", request.id, result.duration_seconds)

    def _run_request(self, request: Request, command: str, attempt: int) -> WorkerRunRequest:
        stem = f"{request.id}.attempt-{attempt}"
        log_dir = self.layout.worker_log_dir
        request_file = request.path or self.layout.inbox_dir(request.to) / request.filename
        return WorkerRunRequest(
            command_template=command,
            prompt=build_worker_prompt(request=request, service=self.service, layout=self.layout),
            prompt_file=log_dir / f"{stem}.prompt.md",
            request_file=request_file,
            cwd=self.layout.target_dir,
            timeout_seconds=self.settings.daemon.request_timeout_seconds,
            stdout_path=log_dir / f"{stem}.stdout.log",
            stderr_path=log_dir / f"{stem}.stderr.log",
            grace_seconds=self.settings.daemon.worker_grace_seconds,
            env={"ACCORD_SERVICE": self.service, "ACCORD_REQUEST_ID": request.id},
            shutdown_requested=lambda: self._stop_requested,
        )

    def _reclaim(self, request: Request) -> Request:
        """Re-read the request after the worker ran; keep our status bookkeeping."""

        found = self.store.find(request.id)
        if found is None:
            logger.warning("%s disappeared while the worker ran; restoring it", request.id)
            return request
        if self.store.is_archived(found):
            logger.info("Worker archived %s itself; adopting the archived copy", request.id)
        found.status = request.status
        found.attempts = request.attempts
        found.awaiting_retry = request.awaiting_retry
        found.updated = request.updated
        return found

    def _save_in_inbox(self, request: Request, inbox_path: Path | None) -> None:
        """Persist an open request, moving it back if the worker archived it."""

        archived_copy = request.path if self.store.is_archived(request) else None
        if inbox_path is not None:
            request.path = inbox_path
        self.store.save(request)
        if archived_copy is not None and archived_copy != request.path:
            archived_copy.unlink(missing_ok=True)

    def _fail_attempt(
        self,
        request: Request,
        inbox_path: Path | None,
        reason: str,
        summary: TickSummary,
    ) -> None:
        transition = state_machine.record_failed_attempt(
            request,
            max_attempts=self.settings.daemon.max_attempts,
            reason=reason,
        )
        self._save_in_inbox(request, inbox_path)
        self.history.record(transition)
        if request.status is RequestStatus.FAILED:
            summary.failed += 1
            logger.warning(
                "%s failed after %d attempt(s): %s",
                request.id,
                request.attempts,
                reason,
            )
            if self.store.escalate(request, service=request.to, reason=reason) is not None:
                summary.escalated += 1
            return
        summary.retried += 1
        logger.info(
            "%s attempt %d/%d failed (%s); will retry",
            request.id,
            request.attempts,
            self.settings.daemon.max_attempts,
            reason,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current request", name)
            self._stop_requested = True

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _eligible_for_worker(request: Request) -> bool:
    if request.status in {RequestStatus.APPROVED, RequestStatus.IN_PROGRESS}:
        return True
    return request.status is RequestStatus.PENDING and request.awaiting_retry


def _fallback_name(deployment: Deployment) -> str:
    if deployment.role is Role.ORCHESTRATOR:
        return ORCHESTRATOR_INBOX
    return deployment.project.project_name


def _worker_result(result: WorkerRunResult, *, service: str, attempt: int) -> str:
    return (
        f"Processed by the worker in {result.duration_seconds:.1f}s (attempt {attempt}).\n\n"
        f"- stdout: `{result.stdout_path}`\n"
        f"- stderr: `{result.stderr_path}`\n\n"
        f"Executed by: {service} at {iso_timestamp()}"
    )
