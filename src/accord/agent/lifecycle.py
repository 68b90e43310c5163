"""Daemon lifecycle: PID file, single-instance lock, detached start and stop.

A served daemon takes an exclusive lock on `.accord/.agent.lock` and then
publishes its PID in `.accord/.agent.pid`. The lock closes the race between
two near-simultaneous starts; the PID file is what `status` and `stop` read.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO

from accord.agent.process import pid_alive, process_group_kwargs, terminate_pid_tree
from accord.config import STATE_DIR_NAME, AccordLayout, ProjectConfig
from accord.log import tail_daemon_log
from accord.protocol.contracts import load_registry

logger = logging.getLogger(__name__)

ALREADY_RUNNING_EXIT = 3


class DaemonState(str, Enum):
    """Lifecycle state as seen by a supervisor."""

    NOT_STARTED = "not-started"
    RUNNING = "running"
    STOPPING = "stopping"


class DaemonAlreadyRunningError(RuntimeError):
    """Another daemon holds the lock for this state directory."""


class PidFile:
    """`.agent.pid`: a single decimal PID."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> int | None:
        try:
            text = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            logger.warning("Ignoring malformed PID file %s: %r", self.path, text)
            return None

    def write(self, pid: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp = self.path.with_name(f"{self.path.name}.tmp")
        temp.write_text(f"{pid}\n", "utf-8")
        os.replace(temp, self.path)

    def remove(self, *, only_pid: int | None = None) -> None:
        """Delete the file; with `only_pid`, only while it still names that PID."""

        if only_pid is not None and self.read() != only_pid:
            return
        self.path.unlink(missing_ok=True)

    def live_pid(self) -> int | None:
        pid = self.read()
        if pid is None or not pid_alive(pid):
            return None
        return pid


@contextmanager
def daemon_lock(path: Path) -> Iterator[IO[str]]:
    """Hold an exclusive, non-blocking lock on `path` for the daemon's lifetime."""

    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+", encoding="utf-8")
    try:
        if os.name != "nt":
            import fcntl

            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as error:
                raise DaemonAlreadyRunningError(f"{path} is held by another daemon") from error
        yield handle
    finally:
        handle.close()


@dataclass(slots=True)
class DaemonOptions:
    """CLI overrides forwarded to a detached `agent serve`."""

    agent_cmd: str | None = None
    timeout: int | None = None
    interval: float | None = None
    max_attempts: int | None = None
    service: str | None = None
    verbose: bool = False

    def to_cli_args(self) -> list[str]:
        args: list[str] = []
        if self.agent_cmd:
            args += ["--agent-cmd", self.agent_cmd]
        if self.timeout is not None:
            args += ["--timeout", str(self.timeout)]
        if self.interval is not None:
            args += ["--interval", str(self.interval)]
        if self.max_attempts is not None:
            args += ["--max-attempts", str(self.max_attempts)]
        if self.service:
            args += ["--service", self.service]
        return args


@dataclass(slots=True)
class LifecycleResult:
    ok: bool
    message: str
    pid: int | None = None
    changed: bool = False


@dataclass(slots=True)
class DaemonStatus:
    state: DaemonState
    pid: int | None
    stale_pid: int | None = None
    log_tail: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.state is DaemonState.RUNNING

    def describe(self) -> str:
        if self.pid is not None:
            return f"Running (pid {self.pid})"
        if self.stale_pid is not None:
            return f"Not running (stale PID file for {self.stale_pid})"
        return "Not running"


class DaemonSupervisor:
    """Starts, stops and inspects the daemon of one repository."""

    def __init__(
        self,
        layout: AccordLayout,
        *,
        launch_argv: list[str] | None = None,
        start_timeout_seconds: float = 15.0,
        stop_grace_seconds: float = 10.0,
    ) -> None:
        self.layout = layout
        self.pid_file = PidFile(layout.pid_file)
        self.launch_argv = launch_argv or [sys.executable, "-m", "accord.main"]
        self.start_timeout_seconds = start_timeout_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.state = DaemonState.NOT_STARTED
        self._process: subprocess.Popen[bytes] | None = None

    def refresh(self) -> DaemonState:
        if self.state is not DaemonState.STOPPING:
            live = self.pid_file.live_pid()
            self.state = DaemonState.RUNNING if live is not None else DaemonState.NOT_STARTED
        return self.state

    def status(self) -> DaemonStatus:
        recorded = self.pid_file.read()
        live = self.pid_file.live_pid()
        self.refresh()
        return DaemonStatus(
            state=self.state,
            pid=live,
            stale_pid=recorded if live is None else None,
            log_tail=tail_daemon_log(self.layout.log_dir),
        )

    def start(self, options: DaemonOptions | None = None) -> LifecycleResult:
        """Launch `agent serve` detached; a live daemon makes this a no-op."""

        live = self.pid_file.live_pid()
        if live is not None:
            self.state = DaemonState.RUNNING
            return LifecycleResult(ok=True, message=f"Already running (pid {live})", pid=live)
        if self.pid_file.read() is not None:
            logger.info("Removing stale PID file %s", self.pid_file.path)
            self.pid_file.remove()

        argv = [
            *self.launch_argv,
            *(["--verbose"] if options and options.verbose else []),
            "agent",
            "serve",
            "--target-dir",
            str(self.layout.target_dir),
            *(options.to_cli_args() if options else []),
        ]
        self.layout.log_dir.mkdir(parents=True, exist_ok=True)
        with (self.layout.log_dir / "agent-serve.stderr.log").open("ab") as stderr_handle:
            self._process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=self.layout.target_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr_handle,
                **process_group_kwargs(),
            )
        logger.info("Launched daemon process %d: %s", self._process.pid, " ".join(argv))

        deadline = time.monotonic() + self.start_timeout_seconds
        while time.monotonic() < deadline:
            pid = self.pid_file.read()
            if pid == self._process.pid:
                self.state = DaemonState.RUNNING
                return LifecycleResult(
                    ok=True,
                    message=f"Started (pid {pid})",
                    pid=pid,
                    changed=True,
                )
            returncode = self._process.poll()
            if returncode is not None:
                return self._early_exit(returncode)
            time.sleep(0.05)

        logger.warning("Daemon %d did not publish its PID in time", self._process.pid)
        return LifecycleResult(
            ok=False,
            message=(
                f"Daemon did not report ready within {self.start_timeout_seconds:.0f}s; "
                f"see {self.layout.log_dir}"
            ),
            pid=self._process.pid,
        )

    def stop(self) -> LifecycleResult:
        """Terminate the recorded daemon and its process group; stale files are cleaned up."""

        pid = self.pid_file.read()
        if pid is None:
            self.state = DaemonState.NOT_STARTED
            return LifecycleResult(ok=True, message="Not running")
        if not pid_alive(pid):
            self.pid_file.remove()
            self.state = DaemonState.NOT_STARTED
            return LifecycleResult(ok=True, message=f"Not running (removed stale PID {pid})")

        self.state = DaemonState.STOPPING
        terminate_pid_tree(pid, grace_seconds=self.stop_grace_seconds)
        if self._process is not None and self._process.pid == pid:
            try:
                self._process.wait(timeout=self.stop_grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning("Daemon %d still running after stop", pid)
        self.pid_file.remove()
        self.state = DaemonState.NOT_STARTED
        return LifecycleResult(ok=True, message=f"Stopped (pid {pid})", pid=pid, changed=True)

    def _early_exit(self, returncode: int) -> LifecycleResult:
        if returncode == ALREADY_RUNNING_EXIT:
            live = self.pid_file.live_pid()
            self.state = DaemonState.RUNNING
            suffix = f" (pid {live})" if live is not None else ""
            return LifecycleResult(ok=True, message=f"Already running{suffix}", pid=live)
        self.state = DaemonState.NOT_STARTED
        return LifecycleResult(
            ok=False,
            message=(
                f"Daemon exited during startup with code {returncode}; "
                f"see {self.layout.log_dir / 'agent-serve.stderr.log'}"
            ),
        )


@contextmanager
def serving(layout: AccordLayout) -> Iterator[int]:
    """Run as the daemon of `layout`: hold the lock and publish our PID until exit."""

    pid = os.getpid()
    pid_file = PidFile(layout.pid_file)
    with daemon_lock(layout.lock_file):
        pid_file.write(pid)
        logger.info("Daemon %d serving %s", pid, layout.target_dir)
        try:
            yield pid
        finally:
            pid_file.remove(only_pid=pid)


def on_action_due(layout: AccordLayout, *, min_interval_seconds: int) -> bool:
    """Whether enough time passed since the last tick for an on-action trigger."""

    try:
        last = layout.tick_stamp_file.stat().st_mtime
    except FileNotFoundError:
        return True
    return time.time() - last >= min_interval_seconds


@dataclass(slots=True)
class ServiceCheckout:
    """Where a service of a multi-repo project lives next to the hub."""

    name: str
    directory: Path

    @property
    def initialized(self) -> bool:
        return (self.directory / STATE_DIR_NAME).is_dir()


def service_checkouts(hub_layout: AccordLayout, project: ProjectConfig) -> list[ServiceCheckout]:
    """Services listed in the hub config (or its registry), as sibling checkouts."""

    parent = hub_layout.target_dir.parent
    checkouts: list[ServiceCheckout] = []
    seen: set[str] = set()
    for service in project.services:
        directory = Path(service.directory) if service.directory else Path(service.name)
        checkouts.append(
            ServiceCheckout(
                name=service.name,
                directory=directory if directory.is_absolute() else parent / directory,
            ),
        )
        seen.add(service.name)
    for entry in load_registry(hub_layout.registry_dir):
        if entry.name in seen or entry.type not in {None, "service"}:
            continue
        directory = Path(entry.directory) if entry.directory else Path(entry.name)
        checkouts.append(
            ServiceCheckout(
                name=entry.name,
                directory=directory if directory.is_absolute() else parent / directory,
            ),
        )
        seen.add(entry.name)
    return checkouts
