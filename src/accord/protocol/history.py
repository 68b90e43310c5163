"""Append-only JSONL audit trail of request transitions."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from accord.protocol.models import iso_timestamp, utc_now
from accord.protocol.state_machine import Transition

logger = logging.getLogger(__name__)

_UNSAFE_ACTOR_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """One line of a history file."""

    ts: str
    request_id: str | None
    from_status: str
    to_status: str
    actor: str
    directive_id: str | None = None
    detail: str | None = None

    def to_json(self) -> str:
        payload: dict[str, str] = {
            "ts": self.ts,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
        }
        if self.request_id is not None:
            payload["request_id"] = self.request_id
        if self.directive_id is not None:
            payload["directive_id"] = self.directive_id
        if self.detail:
            payload["detail"] = self.detail
        return json.dumps(payload, ensure_ascii=False)


class HistoryWriter:
    """Writes entries to `<history_dir>/<YYYY-MM-DD>-<actor>.jsonl`."""

    def __init__(self, history_dir: Path) -> None:
        self.history_dir = history_dir

    def record(self, transition: Transition, *, now: datetime | None = None) -> HistoryEntry:
        return self.append(
            HistoryEntry(
                ts=iso_timestamp(now),
                request_id=transition.request_id,
                from_status=transition.from_status,
                to_status=transition.to_status,
                actor=transition.actor,
                directive_id=transition.directive_id,
                detail=transition.detail,
            ),
            now=now,
        )

    def record_directive(  # noqa: PLR0913
        self,
        *,
        directive_id: str,
        from_status: str,
        to_status: str,
        actor: str,
        detail: str | None = None,
        now: datetime | None = None,
    ) -> HistoryEntry:
        return self.append(
            HistoryEntry(
                ts=iso_timestamp(now),
                request_id=None,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                directive_id=directive_id,
                detail=detail,
            ),
            now=now,
        )

    def append(self, entry: HistoryEntry, *, now: datetime | None = None) -> HistoryEntry:
        day = (now or utc_now()).strftime("%Y-%m-%d")
        actor = _UNSAFE_ACTOR_CHARS.sub("_", entry.actor) or "unknown"
        path = self.history_dir / f"{day}-{actor}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(entry.to_json() + "\n")
        logger.debug(
            "history %s: %s -> %s (%s)",
            entry.request_id or entry.directive_id,
            entry.from_status,
            entry.to_status,
            entry.actor,
        )
        return entry


def read_history(history_dir: Path, *, request_id: str | None = None) -> list[HistoryEntry]:
    """All entries, oldest first; malformed lines are skipped with a warning."""

    entries: list[HistoryEntry] = []
    if not history_dir.is_dir():
        return entries
    for path in sorted(history_dir.glob("*.jsonl")):
        for line_no, line in enumerate(path.read_text("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                entry = HistoryEntry(
                    ts=str(payload["ts"]),
                    request_id=payload.get("request_id"),
                    from_status=str(payload["from_status"]),
                    to_status=str(payload["to_status"]),
                    actor=str(payload["actor"]),
                    directive_id=payload.get("directive_id"),
                    detail=payload.get("detail"),
                )
            except (json.JSONDecodeError, KeyError, TypeError) as error:
                logger.warning("Skipping malformed history line %s:%d: %s", path, line_no, error)
                continue
            if request_id is not None and request_id not in {entry.request_id, entry.directive_id}:
                continue
            entries.append(entry)
    entries.sort(key=lambda item: item.ts)
    return entries
