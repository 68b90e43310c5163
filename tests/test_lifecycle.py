from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

import allure
import pytest
from helpers import write_hub_repo, write_service_repo

from accord.agent.lifecycle import (
    DaemonAlreadyRunningError,
    DaemonOptions,
    DaemonState,
    DaemonSupervisor,
    PidFile,
    daemon_lock,
    on_action_due,
    service_checkouts,
    serving,
)
from accord.config import AccordLayout, detect_deployment

pytestmark = [
    allure.epic("Agent"),
    allure.feature("Daemon Lifecycle"),
]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def test_pid_file_round_trip(tmp_path: Path) -> None:
    pid_file = PidFile(tmp_path / ".agent.pid")
    assert pid_file.read() is None

    pid_file.write(os.getpid())

    assert pid_file.read() == os.getpid()
    assert pid_file.live_pid() == os.getpid()
    pid_file.remove(only_pid=os.getpid() + 1)
    assert pid_file.path.exists()
    pid_file.remove(only_pid=os.getpid())
    assert not pid_file.path.exists()


def test_malformed_pid_file_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / ".agent.pid"
    path.write_text("not-a-pid\n", "utf-8")

    assert PidFile(path).read() is None


def test_status_reports_stale_pid(service_repo: AccordLayout) -> None:
    PidFile(service_repo.pid_file).write(_dead_pid())

    status = DaemonSupervisor(service_repo).status()

    assert status.state is DaemonState.NOT_STARTED
    assert status.pid is None
    assert status.describe().startswith("Not running (stale PID file for ")


def test_stop_when_not_running(service_repo: AccordLayout) -> None:
    supervisor = DaemonSupervisor(service_repo)

    assert supervisor.stop().message == "Not running"

    pid = _dead_pid()
    PidFile(service_repo.pid_file).write(pid)
    result = supervisor.stop()

    assert result.ok
    assert result.message == f"Not running (removed stale PID {pid})"
    assert not service_repo.pid_file.exists()


def test_start_reports_already_running(service_repo: AccordLayout) -> None:
    PidFile(service_repo.pid_file).write(os.getpid())

    result = DaemonSupervisor(service_repo).start()

    assert result.ok
    assert not result.changed
    assert result.message == f"Already running (pid {os.getpid()})"


@pytest.mark.skipif(os.name == "nt", reason="flock is POSIX only")
def test_daemon_lock_is_exclusive(tmp_path: Path) -> None:
    lock_path = tmp_path / ".agent.lock"

    with daemon_lock(lock_path):
        with pytest.raises(DaemonAlreadyRunningError):
            with daemon_lock(lock_path):
                pass

    with daemon_lock(lock_path):
        pass


def test_serving_publishes_and_removes_pid(service_repo: AccordLayout) -> None:
    with serving(service_repo) as pid:
        assert PidFile(service_repo.pid_file).read() == pid == os.getpid()

    assert not service_repo.pid_file.exists()


def test_daemon_options_forward_overrides() -> None:
    options = DaemonOptions(agent_cmd="claude -p", timeout=60, interval=2.5, service="svc-a")

    assert options.to_cli_args() == [
        "--agent-cmd",
        "claude -p",
        "--timeout",
        "60",
        "--interval",
        "2.5",
        "--service",
        "svc-a",
    ]


def test_on_action_due_honours_min_interval(service_repo: AccordLayout) -> None:
    assert on_action_due(service_repo, min_interval_seconds=300)

    service_repo.tick_stamp_file.write_text("now\n", "utf-8")

    assert not on_action_due(service_repo, min_interval_seconds=300)
    assert on_action_due(service_repo, min_interval_seconds=0)


def test_service_checkouts_resolve_next_to_hub(tmp_path: Path) -> None:
    hub = write_hub_repo(
        tmp_path / "hub",
        services=[{"name": "svc-a"}, {"name": "svc-b", "directory": "code/svc-b"}],
    )
    hub.registry_dir.mkdir(parents=True)
    (hub.registry_dir / "svc-c.md").write_text("---\nname: svc-c\ntype: service\n---\n", "utf-8")
    (hub.registry_dir / "lib.md").write_text("---\nname: lib\ntype: module\n---\n", "utf-8")
    write_service_repo(tmp_path / "svc-a", services=[{"name": "svc-a"}])

    checkouts = service_checkouts(hub, detect_deployment(hub.target_dir).project)

    assert [(item.name, item.directory, item.initialized) for item in checkouts] == [
        ("svc-a", tmp_path / "svc-a", True),
        ("svc-b", tmp_path / "code" / "svc-b", False),
        ("svc-c", tmp_path / "svc-c", False),
    ]


@pytest.mark.skipif(os.name == "nt", reason="detached start relies on POSIX sessions")
def test_start_and_stop_detached_daemon(service_repo: AccordLayout) -> None:
    supervisor = DaemonSupervisor(service_repo, start_timeout_seconds=30, stop_grace_seconds=5)

    started = supervisor.start(DaemonOptions(interval=0.5))
    try:
        assert started.ok, started.message
        assert started.changed
        assert DaemonSupervisor(service_repo).status().running
        again = DaemonSupervisor(service_repo).start(DaemonOptions(interval=0.5))
        assert again.message == f"Already running (pid {started.pid})"
    finally:
        stopped = supervisor.stop()

    assert stopped.message == f"Stopped (pid {started.pid})"
    assert not service_repo.pid_file.exists()
    deadline = time.monotonic() + 5
    while DaemonSupervisor(service_repo).status().running and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not DaemonSupervisor(service_repo).status().running
