"""Controllers for `accord request` and `accord history` CLI commands."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from accord.config import detect_deployment
from accord.protocol import state_machine
from accord.protocol.history import HistoryWriter, read_history
from accord.protocol.models import Priority, RequestStatus, RequestType, Scope, iso_timestamp
from accord.protocol.records import Request
from accord.protocol.store import REQUEST_GLOB, RequestStore

logger = logging.getLogger(__name__)

_NUMBERED_ID = re.compile(r"^req-(\d+)-")
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class RequestListCommand:
    """CLI input for listing requests."""

    target_dir: Path
    status: str | None = None
    include_archive: bool = False


@dataclass(slots=True)
class RequestCreateCommand:
    """CLI input for a new request."""

    target_dir: Path
    from_: str
    to: str
    what: str
    type: str = RequestType.OTHER.value
    scope: str = Scope.EXTERNAL.value
    priority: str = Priority.MEDIUM.value
    proposed_change: str | None = None
    why: str | None = None
    related_contract: str | None = None
    command: str | None = None
    request_id: str | None = None
    directive: str | None = None


@dataclass(slots=True)
class RequestMutateCommand:
    """CLI input for approve/reject/revert/withdraw."""

    target_dir: Path
    request_id: str
    actor: str = "human"
    reason: str | None = None


@dataclass(slots=True)
class HistoryCommand:
    target_dir: Path
    request_id: str | None = None


class RequestCliController:
    """Human-side request operations; every transition lands in history."""

    def list_requests(self, command: RequestListCommand) -> list[str]:
        store = _store(command.target_dir)
        requests = store.scan(store.inbox_names()).requests
        if command.include_archive and store.layout.archive_dir.is_dir():
            for path in sorted(store.layout.archive_dir.glob(REQUEST_GLOB)):
                requests.append(Request.load(path))
        if command.status:
            requests = [request for request in requests if request.status.value == command.status]
        if not requests:
            return ["No requests."]
        lines = []
        for request in requests:
            where = "archive"
            if request.path is not None and not store.is_archived(request):
                where = f"inbox/{request.path.parent.name}"
            attempts = f" attempts={request.attempts}" if request.attempts else ""
            lines.append(
                f"{request.id}  {request.status.value}  {request.priority}  "
                f"{request.from_} -> {request.to}  [{where}]{attempts}  {request.summary}",
            )
        return lines

    def create(self, command: RequestCreateCommand) -> list[str]:
        store = _store(command.target_dir)
        now = iso_timestamp()
        request_type = RequestType.COMMAND.value if command.command else command.type
        body = f"\n## What\n\n{command.what.strip()}\n"
        if command.proposed_change:
            body += f"\n## Proposed Change\n\n{command.proposed_change.strip()}\n"
        if command.why:
            body += f"\n## Why\n\n{command.why.strip()}\n"
        request = Request(
            id=command.request_id or next_request_id(store, command.what),
            from_=command.from_,
            to=command.to,
            scope=command.scope,
            type=request_type,
            priority=command.priority,
            status=RequestStatus.PENDING,
            created=now,
            updated=now,
            related_contract=command.related_contract,
            command=command.command,
            directive=command.directive,
            body=body,
        )
        path = store.create(request)
        logger.info("Created %s at %s", request.id, path)
        return [f"Created {request.id}: {path}"]

    def approve(self, command: RequestMutateCommand) -> list[str]:
        store, request = _open_request(command)
        transition = state_machine.approve(request, actor=command.actor)
        store.save(request)
        _history(store).record(transition)
        return [f"{request.id}: {transition.from_status} -> {transition.to_status}"]

    def reject(self, command: RequestMutateCommand) -> list[str]:
        store, request = _open_request(command)
        transition = state_machine.reject(request, actor=command.actor, reason=command.reason)
        store.archive(request)
        _history(store).record(transition)
        return [f"{request.id}: rejected and archived"]

    def revert(self, command: RequestMutateCommand) -> list[str]:
        store, request = _open_request(command)
        transition = state_machine.revert(request, actor=command.actor, reason=command.reason)
        store.save(request)
        _history(store).record(transition)
        return [f"{request.id}: {transition.from_status} -> {transition.to_status}"]

    def withdraw(self, command: RequestMutateCommand) -> list[str]:
        store, request = _open_request(command)
        transition = state_machine.withdraw(request, actor=command.actor)
        store.delete(request)
        _history(store).record(transition)
        return [f"{request.id}: withdrawn"]

    def history(self, command: HistoryCommand) -> list[str]:
        layout = detect_deployment(command.target_dir).layout
        entries = read_history(layout.history_dir, request_id=command.request_id)
        if not entries:
            return ["No history."]
        lines = []
        for entry in entries:
            subject = entry.request_id or entry.directive_id
            detail = f" ({entry.detail})" if entry.detail else ""
            lines.append(
                f"{entry.ts}  {entry.actor}  {subject}: "
                f"{entry.from_status} -> {entry.to_status}{detail}",
            )
        return lines


def next_request_id(store: RequestStore, what: str) -> str:
    """`req-NNN-<slug>` with NNN one above the highest number in use."""

    highest = 0
    directories = [store.layout.inbox_dir(name) for name in store.inbox_names()]
    directories.append(store.layout.archive_dir)
    for directory in directories:
        if not directory.is_dir():
            continue
        for path in directory.glob(REQUEST_GLOB):
            match = _NUMBERED_ID.match(path.name)
            if match:
                highest = max(highest, int(match.group(1)))
    slug = _SLUG_CHARS.sub("-", what.lower()).strip("-")[:40].strip("-") or "request"
    return f"req-{highest + 1:03d}-{slug}"


def _store(target_dir: Path) -> RequestStore:
    return RequestStore(detect_deployment(target_dir).layout)


def _history(store: RequestStore) -> HistoryWriter:
    return HistoryWriter(store.layout.history_dir)


def _open_request(command: RequestMutateCommand) -> tuple[RequestStore, Request]:
    store = _store(command.target_dir)
    request = store.find(command.request_id)
    if request is None:
        raise LookupError(f"Request not found: {command.request_id}")
    if store.is_archived(request):
        raise state_machine.TransitionError(
            f"{request.id} is archived ({request.status.value}); it can no longer change",
        )
    return store, request
