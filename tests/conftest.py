"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

import pytest
from helpers import write_service_repo

from accord.config import AccordLayout
from accord.log import detach_daemon_log

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

_ACCORD_ENV = (
    "ACCORD_AGENT_CMD",
    "ACCORD_REQUEST_TIMEOUT_SECONDS",
    "ACCORD_POLL_INTERVAL_SECONDS",
    "ACCORD_MAX_ATTEMPTS",
    "ACCORD_PUSH_MAX_RETRIES",
    "ACCORD_GIT_TIMEOUT_SECONDS",
    "ACCORD_ON_ACTION_MIN_INTERVAL_SECONDS",
    "ACCORD_WORKER_GRACE_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_accord_env(monkeypatch):
    for name in _ACCORD_ENV:
        monkeypatch.delenv(name, raising=False)
    # worker and daemon subprocesses import accord from the source tree
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [str(SRC_DIR), os.environ.get("PYTHONPATH")])),
    )
    yield
    detach_daemon_log()
    logging.getLogger().setLevel(logging.WARNING)


@pytest.fixture()
def service_repo(tmp_path: Path) -> AccordLayout:
    return write_service_repo(tmp_path / "project")


@pytest.fixture()
def git_identity(monkeypatch, tmp_path: Path):
    """Isolated git configuration; skips the test when git is unavailable."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "git-home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    (home / ".gitconfig").write_text(
        "[init]\n\tdefaultBranch = main\n[user]\n\tname = Test Author\n"
        "\temail = author@example.com\n",
        "utf-8",
    )
    return home
