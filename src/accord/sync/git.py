"""Thin wrapper over the git CLI."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_NAME = "accord-agent"
DEFAULT_AUTHOR_EMAIL = "accord-agent@localhost"


class GitError(RuntimeError):
    """A git invocation failed."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


class GitRepository:
    """Working tree at `path`, driven through `git -C <path> ...`."""

    def __init__(self, path: Path, *, timeout_seconds: int = 120) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds

    @classmethod
    def clone(cls, url: str, destination: Path, *, timeout_seconds: int = 120) -> GitRepository:
        destination.parent.mkdir(parents=True, exist_ok=True)
        command = ["git", "clone", "--quiet", url, str(destination)]
        _run(command, timeout_seconds=timeout_seconds)
        logger.info("Cloned %s into %s", url, destination)
        return cls(destination, timeout_seconds=timeout_seconds)

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(
            ["git", "-C", str(self.path), *args],
            timeout_seconds=self.timeout_seconds,
            check=check,
        )

    def is_repo(self) -> bool:
        if not self.path.is_dir():
            return False
        try:
            result = self.run("rev-parse", "--is-inside-work-tree", check=False)
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def toplevel(self) -> Path:
        return Path(self.run("rev-parse", "--show-toplevel").stdout.strip())

    def has_commits(self) -> bool:
        return self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False).returncode == 0

    def has_upstream(self) -> bool:
        result = self.run(
            "rev-parse",
            "--abbrev-ref",
            "--symbolic-full-name",
            "@{u}",
            check=False,
        )
        return result.returncode == 0

    def has_remote(self, name: str = "origin") -> bool:
        return self.run("remote", "get-url", name, check=False).returncode == 0

    def is_ahead(self) -> bool:
        """Local commits not yet on the upstream (any commit when there is none)."""

        if not self.has_commits():
            return False
        if not self.has_upstream():
            return True
        result = self.run("rev-list", "--count", "@{u}..HEAD")
        return int(result.stdout.strip() or "0") > 0

    def pull_rebase(self) -> None:
        self.run("pull", "--rebase", "--autostash", "--quiet")

    def abort_rebase(self) -> None:
        self.run("rebase", "--abort", check=False)

    def commit_all(self, message: str, *, pathspecs: list[str] | None = None) -> bool:
        """Stage `pathspecs` (everything by default) and commit; False if nothing changed."""

        self.run("add", "-A", "--", *(pathspecs or ["."]))
        if self.run("diff", "--cached", "--quiet", check=False).returncode == 0:
            return False
        self.run(*self._identity_args(), "commit", "--quiet", "-m", message)
        logger.info("Committed in %s: %s", self.path, message)
        return True

    def push(self) -> None:
        if self.has_upstream():
            self.run("push", "--quiet")
        else:
            self.run("push", "--quiet", "-u", "origin", "HEAD")

    def push_with_retry(self, *, max_attempts: int) -> bool:
        """Push, rebasing onto the remote and retrying when it moved on.

        Returns False when every attempt was rejected or the rebase hit a
        conflict; the caller logs and carries on.
        """

        for attempt in range(1, max_attempts + 1):
            try:
                self.push()
            except GitError as error:
                logger.warning(
                    "Push from %s rejected (attempt %d/%d): %s",
                    self.path,
                    attempt,
                    max_attempts,
                    error.stderr.strip() or error,
                )
            else:
                return True
            if attempt == max_attempts:
                break
            try:
                self.pull_rebase()
            except GitError as error:
                logger.warning("Rebase onto remote failed in %s: %s", self.path, error)
                self.abort_rebase()
                return False
        logger.warning("Giving up push from %s after %d attempts", self.path, max_attempts)
        return False

    def _identity_args(self) -> list[str]:
        args: list[str] = []
        if self.run("config", "user.name", check=False).returncode != 0:
            args += ["-c", f"user.name={DEFAULT_AUTHOR_NAME}"]
        if self.run("config", "user.email", check=False).returncode != 0:
            args += ["-c", f"user.email={DEFAULT_AUTHOR_EMAIL}"]
        return args


def _run(
    command: list[str],
    *,
    timeout_seconds: int,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            env=_git_env(),
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        raise GitError(f"{' '.join(command[:4])} timed out after {timeout_seconds}s") from error
    except FileNotFoundError as error:
        raise GitError("git executable not found") from error
    if check and result.returncode != 0:
        raise GitError(
            f"{' '.join(command)} failed with exit code {result.returncode}: "
            f"{result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result
