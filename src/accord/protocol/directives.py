"""Directive status rollup from the requests derived from each directive."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from accord.config import AccordLayout
from accord.protocol.document import RequestFormatError, append_section, has_section
from accord.protocol.history import HistoryWriter
from accord.protocol.models import DirectiveStatus, RequestStatus, iso_timestamp
from accord.protocol.records import Directive
from accord.protocol.store import RequestStore, write_text_atomic

logger = logging.getLogger(__name__)

_ACTIVE = {RequestStatus.APPROVED, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED}
_BROKEN = {RequestStatus.FAILED, RequestStatus.REJECTED}


def rollup_status(
    current: DirectiveStatus,
    request_statuses: list[RequestStatus | None],
) -> DirectiveStatus:
    """Directive status implied by its requests (`None` = request not found)."""

    if not request_statuses:
        return current
    if any(status in _BROKEN for status in request_statuses):
        return DirectiveStatus.FAILED
    if all(status is RequestStatus.COMPLETED for status in request_statuses):
        return DirectiveStatus.COMPLETED
    if any(status in _ACTIVE for status in request_statuses):
        return DirectiveStatus.IN_PROGRESS
    return current


@dataclass(slots=True, frozen=True)
class DirectiveChange:
    directive_id: str
    from_status: str
    to_status: str


class DirectiveTracker:
    """Keeps `directives/dir-*.md` in step with their derived requests."""

    def __init__(
        self,
        *,
        layout: AccordLayout,
        store: RequestStore,
        history: HistoryWriter,
        actor: str = "orchestrator",
    ) -> None:
        self.layout = layout
        self.store = store
        self.history = history
        self.actor = actor

    def load_all(self) -> list[Directive]:
        directives: list[Directive] = []
        if not self.layout.directives_dir.is_dir():
            return directives
        for path in sorted(self.layout.directives_dir.glob("dir-*.md")):
            try:
                directives.append(Directive.load(path))
            except RequestFormatError as error:
                logger.warning("Skipping malformed directive: %s", error)
        return directives

    def refresh(self, *, now: datetime | None = None) -> list[DirectiveChange]:
        changes: list[DirectiveChange] = []
        for directive in self.load_all():
            if directive.status in {DirectiveStatus.COMPLETED, DirectiveStatus.FAILED}:
                continue
            statuses: dict[str, RequestStatus | None] = {}
            for request_id in directive.requests:
                request = self.store.find(request_id)
                statuses[request_id] = request.status if request else None
            target = rollup_status(directive.status, list(statuses.values()))
            if target is directive.status:
                continue

            previous = directive.status
            directive.status = target
            directive.updated = iso_timestamp(now)
            if target is DirectiveStatus.FAILED and not has_section(
                directive.body,
                "Failure Reason",
            ):
                broken = ", ".join(
                    f"`{request_id}` ({status.value})"
                    for request_id, status in statuses.items()
                    if status in _BROKEN
                )
                directive.body = append_section(
                    directive.body,
                    "Failure Reason",
                    f"Derived request(s) did not complete: {broken}.",
                )
            if directive.path is not None:
                write_text_atomic(directive.path, directive.to_text())
            self.history.record_directive(
                directive_id=directive.id,
                from_status=previous.value,
                to_status=target.value,
                actor=self.actor,
                now=now,
            )
            logger.info("Directive %s: %s -> %s", directive.id, previous.value, target.value)
            changes.append(
                DirectiveChange(
                    directive_id=directive.id,
                    from_status=previous.value,
                    to_status=target.value,
                ),
            )
        return changes
