"""Logging setup for the CLI and the served daemon."""

from __future__ import annotations

import logging
import sys
from datetime import date
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_CLI_HANDLER_NAME = "accord-cli"
_DAEMON_HANDLER_NAME = "accord-daemon-file"


def configure_cli_logging(*, verbose: bool = False) -> None:
    """Root logger to stderr; DEBUG with `--verbose`, WARNING otherwise.

    Safe to call more than once: the handler is replaced, not stacked.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _CLI_HANDLER_NAME:
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_CLI_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    level = logging.DEBUG if verbose else logging.WARNING
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)


def daemon_log_path(log_dir: Path, *, day: date | None = None) -> Path:
    return log_dir / f"agent-{(day or date.today()).isoformat()}.log"


def attach_daemon_log(log_dir: Path, *, debug: bool = False) -> Path:
    """Also write INFO (DEBUG with `debug`) records to the daily daemon log."""

    path = daemon_log_path(log_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    detach_daemon_log()
    root = logging.getLogger()
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.set_name(_DAEMON_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    level = logging.DEBUG if debug else logging.INFO
    handler.setLevel(level)
    root.addHandler(handler)
    if root.level > level or root.level == logging.NOTSET:
        root.setLevel(level)
    return path


def detach_daemon_log() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _DAEMON_HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()


def tail_daemon_log(log_dir: Path, *, lines: int = 10) -> list[str]:
    """Last lines of the newest daemon log, oldest first."""

    if not log_dir.is_dir():
        return []
    logs = sorted(log_dir.glob("agent-????-??-??.log"))
    if not logs:
        return []
    return logs[-1].read_text("utf-8", errors="replace").splitlines()[-lines:]
