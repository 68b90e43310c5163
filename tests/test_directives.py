from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from helpers import make_request, place_request, write_hub_repo

from accord.config import AccordLayout
from accord.protocol.directives import DirectiveTracker, rollup_status
from accord.protocol.history import HistoryWriter, read_history
from accord.protocol.models import DirectiveStatus, RequestStatus
from accord.protocol.records import Directive
from accord.protocol.store import RequestStore

pytestmark = [
    allure.epic("Protocol"),
    allure.feature("Directives"),
]

NOW = datetime(2026, 3, 2, 8, 15, tzinfo=UTC)


@pytest.mark.parametrize(
    ("current", "statuses", "expected"),
    [
        (DirectiveStatus.PENDING, [], DirectiveStatus.PENDING),
        (DirectiveStatus.PENDING, [RequestStatus.PENDING, None], DirectiveStatus.PENDING),
        (
            DirectiveStatus.PENDING,
            [RequestStatus.APPROVED, RequestStatus.PENDING],
            DirectiveStatus.IN_PROGRESS,
        ),
        (
            DirectiveStatus.IN_PROGRESS,
            [RequestStatus.COMPLETED, RequestStatus.COMPLETED],
            DirectiveStatus.COMPLETED,
        ),
        (
            DirectiveStatus.IN_PROGRESS,
            [RequestStatus.COMPLETED, None],
            DirectiveStatus.IN_PROGRESS,
        ),
        (
            DirectiveStatus.IN_PROGRESS,
            [RequestStatus.COMPLETED, RequestStatus.REJECTED],
            DirectiveStatus.FAILED,
        ),
        (DirectiveStatus.PENDING, [RequestStatus.FAILED], DirectiveStatus.FAILED),
    ],
)
def test_rollup_status(
    current: DirectiveStatus,
    statuses: list[RequestStatus | None],
    expected: DirectiveStatus,
) -> None:
    assert rollup_status(current, statuses) is expected


def _write_directive(
    layout: AccordLayout,
    directive_id: str,
    status: str,
    requests: list[str],
) -> Path:
    layout.directives_dir.mkdir(parents=True, exist_ok=True)
    path = layout.directives_dir / f"{directive_id}.md"
    listed = "".join(f"- {request_id}\n" for request_id in requests)
    path.write_text(
        f"---\nid: {directive_id}\ntitle: Login\npriority: high\nstatus: {status}\n"
        "created: 2026-02-10T14:30:00Z\nupdated: 2026-02-10T14:30:00Z\n"
        f"requests:\n{listed}---\n\n## Requirement\n\nUsers log in.\n",
        "utf-8",
    )
    return path


def _tracker(layout: AccordLayout) -> DirectiveTracker:
    return DirectiveTracker(
        layout=layout,
        store=RequestStore(layout),
        history=HistoryWriter(layout.history_dir),
    )


@pytest.fixture()
def hub(tmp_path: Path) -> AccordLayout:
    return write_hub_repo(tmp_path / "hub", services=[{"name": "svc-a"}, {"name": "svc-b"}])


def test_refresh_moves_directive_forward(hub: AccordLayout) -> None:
    path = _write_directive(hub, "dir-001-login", "pending", ["req-001-a", "req-002-b"])
    place_request(hub, make_request("req-001-a", status=RequestStatus.APPROVED), inbox="svc-a")

    changes = _tracker(hub).refresh(now=NOW)

    assert [(change.directive_id, change.to_status) for change in changes] == [
        ("dir-001-login", "in-progress"),
    ]
    directive = Directive.load(path)
    assert directive.status is DirectiveStatus.IN_PROGRESS
    assert directive.updated == "2026-03-02T08:15:00Z"
    assert directive.requests == ["req-001-a", "req-002-b"]
    entry = read_history(hub.history_dir, request_id="dir-001-login")[0]
    assert (entry.from_status, entry.to_status, entry.actor) == (
        "pending",
        "in-progress",
        "orchestrator",
    )


def test_refresh_records_failure_reason(hub: AccordLayout) -> None:
    path = _write_directive(hub, "dir-002-audit", "in-progress", ["req-003-a", "req-004-b"])
    rejected = make_request("req-003-a", status=RequestStatus.REJECTED)
    (hub.archive_dir / rejected.filename).write_text(rejected.to_text(), "utf-8")
    place_request(hub, make_request("req-004-b", status=RequestStatus.COMPLETED), inbox="svc-b")

    _tracker(hub).refresh(now=NOW)

    directive = Directive.load(path)
    assert directive.status is DirectiveStatus.FAILED
    assert (
        "## Failure Reason\n\nDerived request(s) did not complete: `req-003-a` (rejected)."
        in directive.body
    )


def test_refresh_leaves_settled_and_unchanged_directives(hub: AccordLayout) -> None:
    done = _write_directive(hub, "dir-003-done", "completed", ["req-009-gone"])
    waiting = _write_directive(hub, "dir-004-wait", "pending", ["req-010-later"])
    (hub.directives_dir / "dir-005-broken.md").write_text("no header\n", "utf-8")
    before = (done.read_text("utf-8"), waiting.read_text("utf-8"))

    changes = _tracker(hub).refresh(now=NOW)

    assert changes == []
    assert (done.read_text("utf-8"), waiting.read_text("utf-8")) == before
    assert read_history(hub.history_dir) == []
