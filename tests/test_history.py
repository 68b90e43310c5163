from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure

from accord.protocol.history import HistoryWriter, read_history
from accord.protocol.state_machine import Transition

pytestmark = [
    allure.epic("Protocol"),
    allure.feature("Audit History"),
]


def _transition(request_id: str, from_status: str, to_status: str, actor: str) -> Transition:
    return Transition(
        request_id=request_id,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
    )


def test_entries_go_to_daily_per_actor_files(tmp_path: Path) -> None:
    writer = HistoryWriter(tmp_path / "history")
    day = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    writer.record(_transition("req-001-a", "pending", "approved", "human"), now=day)
    writer.record(_transition("req-001-a", "approved", "in-progress", "daemon"), now=day)
    writer.record(_transition("req-001-a", "in-progress", "completed", "daemon"), now=day)

    daemon_file = tmp_path / "history" / "2026-03-01-daemon.jsonl"
    assert sorted(path.name for path in (tmp_path / "history").iterdir()) == [
        "2026-03-01-daemon.jsonl",
        "2026-03-01-human.jsonl",
    ]
    lines = daemon_file.read_text("utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0]) == {
        "ts": "2026-03-01T09:00:00Z",
        "from_status": "approved",
        "to_status": "in-progress",
        "actor": "daemon",
        "request_id": "req-001-a",
    }


def test_unsafe_actor_names_are_sanitized(tmp_path: Path) -> None:
    writer = HistoryWriter(tmp_path)
    day = datetime(2026, 3, 1, tzinfo=UTC)

    writer.record(_transition("req-001-a", "pending", "approved", "ops/team lead"), now=day)

    assert (tmp_path / "2026-03-01-ops_team_lead.jsonl").is_file()


def test_read_history_filters_and_orders(tmp_path: Path) -> None:
    writer = HistoryWriter(tmp_path)
    writer.record(
        _transition("req-002-b", "pending", "approved", "human"),
        now=datetime(2026, 3, 2, tzinfo=UTC),
    )
    writer.record(
        _transition("req-001-a", "pending", "approved", "human"),
        now=datetime(2026, 3, 1, tzinfo=UTC),
    )
    writer.record_directive(
        directive_id="dir-001-x",
        from_status="pending",
        to_status="in-progress",
        actor="orchestrator",
        now=datetime(2026, 3, 3, tzinfo=UTC),
    )
    (tmp_path / "2026-03-04-human.jsonl").write_text("{broken\n\n", "utf-8")

    everything = read_history(tmp_path)
    only_a = read_history(tmp_path, request_id="req-001-a")
    directive = read_history(tmp_path, request_id="dir-001-x")

    assert [entry.request_id for entry in everything] == ["req-001-a", "req-002-b", None]
    assert [entry.to_status for entry in only_a] == ["approved"]
    assert directive[0].directive_id == "dir-001-x"


def test_read_history_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert read_history(tmp_path / "nope") == []
