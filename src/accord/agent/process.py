"""Spawning and terminating whole process trees.

Workers and daemons are started as leaders of their own process group
(session on POSIX, new process group on Windows) so that stopping them also
stops everything they spawned.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time

logger = logging.getLogger(__name__)


def process_group_kwargs(os_name: str | None = None) -> dict[str, object]:
    """`Popen` keyword arguments that make the child a process-group leader."""

    if (os_name or os.name) == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def pid_alive(pid: int) -> bool:
    """Whether `pid` is a live process (reaping it first if it is our zombie child)."""

    if pid <= 0:
        return False
    if os.name == "nt":
        result = subprocess.run(  # noqa: S603
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],  # noqa: S607
            capture_output=True,
            text=True,
            check=False,
        )
        return str(pid) in result.stdout
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_process_tree(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    *,
    grace_seconds: float = 2.0,
) -> None:
    """Stop a child we spawned as group leader, then anything left in its group."""

    if os.name == "nt":
        _taskkill(process.pid)
        _wait_quietly(process, grace_seconds)
        return

    _signal_group(process.pid, signal.SIGTERM)
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.debug("Process group %d ignored SIGTERM; killing", process.pid)
        _signal_group(process.pid, signal.SIGKILL)
        _wait_quietly(process, 2.0)
    # the leader may be gone while children linger in its group
    _signal_group(process.pid, signal.SIGKILL)


def terminate_pid_tree(pid: int, *, grace_seconds: float = 2.0) -> bool:
    """Stop a process we did not spawn ourselves (for example from a PID file).

    Returns True if the process was alive when asked to stop.
    """

    if not pid_alive(pid):
        return False
    if os.name == "nt":
        _taskkill(pid)
        return True

    try:
        group_leader = os.getpgid(pid) == pid
    except ProcessLookupError:
        return False
    _send(pid, signal.SIGTERM, group=group_leader)
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            break
        time.sleep(0.05)
    else:
        logger.debug("Process %d ignored SIGTERM; killing", pid)
        _send(pid, signal.SIGKILL, group=group_leader)
        kill_deadline = time.monotonic() + 2.0
        while pid_alive(pid) and time.monotonic() < kill_deadline:
            time.sleep(0.05)
    if group_leader:
        _signal_group(pid, signal.SIGKILL)
    return True


def _send(pid: int, signum: int, *, group: bool) -> None:
    if group:
        _signal_group(pid, signum)
        return
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        return


def _signal_group(pgid: int, signum: int) -> None:
    try:
        os.killpg(pgid, signum)
    except (ProcessLookupError, PermissionError):
        return


def _taskkill(pid: int) -> None:
    subprocess.run(  # noqa: S603
        ["taskkill", "/T", "/F", "/PID", str(pid)],  # noqa: S607
        capture_output=True,
        check=False,
    )


def _wait_quietly(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    timeout: float,
) -> None:
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d did not exit after kill", process.pid)
