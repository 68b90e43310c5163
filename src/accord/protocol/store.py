"""File-backed request store: per-recipient inboxes plus an archive."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from accord.config import ORCHESTRATOR_INBOX, AccordLayout
from accord.protocol.document import RequestFormatError
from accord.protocol.models import (
    Priority,
    RequestStatus,
    RequestType,
    Scope,
    iso_timestamp,
    utc_now,
)
from accord.protocol.records import Request

logger = logging.getLogger(__name__)

REQUEST_GLOB = "req-*.md"


def write_text_atomic(path: Path, text: str) -> None:
    """Write via a sibling temp file and `os.replace`."""

    path.parent.mkdir(parents=True, exist_ok=True)
    descriptor, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


@dataclass(slots=True)
class ScanResult:
    """Requests found by one scan, in processing order."""

    requests: list[Request] = field(default_factory=list)
    malformed: list[RequestFormatError] = field(default_factory=list)


class RequestStore:
    """Reads and writes request files under one repository's state directory.

    A request lives either in `comms/inbox/<recipient>/` or in
    `comms/archive/`, never in both.
    """

    def __init__(self, layout: AccordLayout) -> None:
        self.layout = layout

    def inbox_names(self) -> list[str]:
        if not self.layout.inbox_root.is_dir():
            return []
        return sorted(path.name for path in self.layout.inbox_root.iterdir() if path.is_dir())

    def scan(self, inbox_names: Iterable[str]) -> ScanResult:
        """Load every request in the given inboxes.

        Within one inbox requests are ordered by priority, then creation
        time, then file name; inboxes keep the order they were given in.
        """

        result = ScanResult()
        seen: set[str] = set()
        for name in inbox_names:
            if name in seen:
                continue
            seen.add(name)
            inbox = self.layout.inbox_dir(name)
            if not inbox.is_dir():
                continue
            loaded: list[Request] = []
            for path in sorted(inbox.glob(REQUEST_GLOB)):
                try:
                    loaded.append(Request.load(path))
                except RequestFormatError as error:
                    logger.warning("Skipping malformed request: %s", error)
                    result.malformed.append(error)
            loaded.sort(key=lambda request: request.sort_key())
            result.requests.extend(loaded)
        return result

    def load(self, path: Path) -> Request:
        return Request.load(path)

    def save(self, request: Request) -> Path:
        if request.path is None:
            raise ValueError(f"{request.id}: request has no location; use create()")
        write_text_atomic(request.path, request.to_text())
        return request.path

    def create(self, request: Request, *, inbox: str | None = None) -> Path:
        """Write a new request into `inbox` (defaults to its recipient)."""

        if self.find(request.id) is not None:
            raise FileExistsError(f"Request {request.id} already exists")
        request.path = self.layout.inbox_dir(inbox or request.to) / request.filename
        return self.save(request)

    def find(self, request_id: str) -> Request | None:
        """Locate a request by id in any inbox, then in the archive."""

        filename = f"{request_id}.md"
        candidates = [self.layout.inbox_dir(name) / filename for name in self.inbox_names()]
        candidates.append(self.layout.archive_dir / filename)
        for path in candidates:
            if path.is_file():
                return Request.load(path)
        return None

    def is_archived(self, request: Request) -> bool:
        return request.path is not None and request.path.parent == self.layout.archive_dir

    def archive(self, request: Request) -> Path:
        """Persist `request` and move it into the archive in one rename."""

        if request.path is None:
            raise ValueError(f"{request.id}: request has no location")
        destination = self.layout.archive_dir / request.filename
        self.save(request)
        if request.path == destination:
            return destination
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.replace(request.path, destination)
        logger.info("Archived %s", request.id)
        request.path = destination
        return destination

    def delete(self, request: Request) -> None:
        if request.path is None:
            raise ValueError(f"{request.id}: request has no location")
        request.path.unlink(missing_ok=True)
        logger.info("Deleted %s", request.id)

    def archived_ids(self) -> set[str]:
        """Ids present in the archive, by file name and by header."""

        ids: set[str] = set()
        if not self.layout.archive_dir.is_dir():
            return ids
        for path in self.layout.archive_dir.glob(REQUEST_GLOB):
            ids.add(path.stem)
            try:
                ids.add(Request.load(path).id)
            except RequestFormatError:
                continue
        return ids

    def orchestrator_inbox(self) -> Path | None:
        """Where escalations go: the hub clone's orchestrator inbox, else the local one."""

        for candidate in (
            self.layout.hub_dir / "comms" / "inbox" / ORCHESTRATOR_INBOX,
            self.layout.inbox_dir(ORCHESTRATOR_INBOX),
        ):
            if candidate.is_dir():
                return candidate
        return None

    def escalate(
        self,
        request: Request,
        *,
        service: str,
        reason: str,
        now: datetime | None = None,
    ) -> Path | None:
        """Write a high-priority escalation about `request` for the orchestrator.

        Returns the new file, or `None` when there is no orchestrator inbox.
        """

        inbox = self.orchestrator_inbox()
        if inbox is None:
            logger.warning(
                "No orchestrator inbox found; escalation for %s not delivered",
                request.id,
            )
            return None

        moment = now or utc_now()
        timestamp = iso_timestamp(moment)
        escalation = Request(
            id=f"req-escalation-{request.id}-{moment.strftime('%Y%m%d%H%M%S')}",
            from_=service,
            to=ORCHESTRATOR_INBOX,
            scope=Scope.EXTERNAL.value,
            type=RequestType.OTHER.value,
            priority=Priority.HIGH.value,
            status=RequestStatus.PENDING,
            created=timestamp,
            updated=timestamp,
            directive=request.directive,
            originated_from=request.id,
            body=_escalation_body(request, service=service, reason=reason, layout=self.layout),
        )
        escalation.path = inbox / escalation.filename
        if escalation.path.exists():
            logger.info("Escalation %s already present", escalation.id)
            return escalation.path
        write_text_atomic(escalation.path, escalation.to_text())
        logger.warning("Escalated %s to %s", request.id, escalation.path)
        return escalation.path


def _escalation_body(
    request: Request,
    *,
    service: str,
    reason: str,
    layout: AccordLayout,
) -> str:
    location = request.path or layout.inbox_dir(request.to) / request.filename
    try:
        location = location.relative_to(layout.target_dir)
    except ValueError:
        pass
    return (
        "\n"
        "## What\n\n"
        f"Processing failed for request `{request.id}` after {request.attempts} attempt(s); "
        "the request is frozen in `failed`.\n\n"
        "## Detail\n\n"
        f"- **Reason**: {reason}\n"
        f"- **Request**: `{request.id}` ({request.summary})\n"
        f"- **Location**: `{location}`\n"
        f"- **Service**: {service}\n\n"
        "## Proposed Change\n\n"
        "Manual review needed. Inspect the request and the worker logs, fix the cause "
        "and issue a new request, or close this one by hand.\n\n"
        "## Why\n\n"
        "The request exhausted its retry budget and cannot make progress without a human.\n"
    )
