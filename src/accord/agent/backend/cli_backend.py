"""Subprocess-based backend that runs the configured worker command."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path

from accord.agent.backend.base import WorkerRunRequest, WorkerRunResult
from accord.agent.process import process_group_kwargs, terminate_process_tree

TIMEOUT_EXIT_CODE = 124
_PLACEHOLDERS = ("{prompt}", "{prompt_file}", "{request_file}")


class WorkerLaunchError(RuntimeError):
    """Worker command could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SubprocessWorkerBackend:
    """Run the worker as its own process group, bounded by a wall-clock timeout."""

    def run(self, request: WorkerRunRequest) -> WorkerRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")

        run_args, command_head = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
            request_file=request.request_file,
        )
        env = os.environ.copy()
        env.update(request.env or {})
        env["ACCORD_REQUEST_FILE"] = str(request.request_file)
        env["ACCORD_PROMPT_FILE"] = str(request.prompt_file)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_with_timeout(
                    run_args=run_args,
                    request=request,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise WorkerLaunchError(
                f"Worker command not found: {command_head}",
                transient=False,
            ) from error
        except PermissionError as error:
            raise WorkerLaunchError(
                f"Worker command is not executable: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerLaunchError(f"Worker failed to start: {error}", transient=True) from error


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    request_file: Path,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    """Turn the command template into process arguments.

    Templates with `{prompt}`, `{prompt_file}` or `{request_file}` are
    rendered; otherwise the prompt is appended as the final argument.
    """

    stripped = command_template.strip()
    if not stripped:
        raise WorkerLaunchError("Worker command is empty.", transient=False)
    values = {
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "request_file": str(request_file),
    }
    templated = any(placeholder in stripped for placeholder in _PLACEHOLDERS)

    if (os_name or os.name) == "nt":
        if templated:
            rendered = _format(
                stripped,
                {key: subprocess.list2cmdline([value]) for key, value in values.items()},
            )
        else:
            rendered = f"{stripped} {subprocess.list2cmdline([prompt])}"
        return rendered, rendered.split(maxsplit=1)[0]

    if templated:
        argv = shlex.split(
            _format(stripped, {key: shlex.quote(value) for key, value in values.items()}),
        )
    else:
        argv = [*shlex.split(stripped), prompt]
    if not argv:
        raise WorkerLaunchError("Worker command rendered empty.", transient=False)
    return argv, argv[0]


def _format(template: str, values: dict[str, str]) -> str:
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError) as error:
        raise WorkerLaunchError(
            f"Unsupported worker command placeholder: {error}",
            transient=False,
        ) from error


def _run_with_timeout(
    *,
    run_args: str | list[str],
    request: WorkerRunRequest,
    env: dict[str, str],
    stdout_handle,
    stderr_handle,
) -> WorkerRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=request.cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
        **process_group_kwargs(),
    )
    started = time.monotonic()

    def _result(exit_code: int, *, timed_out: bool = False, interrupted: bool = False):
        return WorkerRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            interrupted=interrupted,
            duration_seconds=time.monotonic() - started,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(returncode)

        if time.monotonic() - started >= request.timeout_seconds:
            terminate_process_tree(process, grace_seconds=request.grace_seconds)
            return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        if request.shutdown_requested is not None and request.shutdown_requested():
            terminate_process_tree(process, grace_seconds=request.grace_seconds)
            return _result(TIMEOUT_EXIT_CODE, interrupted=True)

        time.sleep(0.05)
