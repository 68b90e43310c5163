"""CLI entrypoint for accord."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from accord import __version__
from accord.agent.controllers import AgentCliController, AgentCommand, AgentResult
from accord.config import ConfigError, SettingsError
from accord.log import configure_cli_logging
from accord.protocol.controllers import (
    HistoryCommand,
    RequestCliController,
    RequestCreateCommand,
    RequestListCommand,
    RequestMutateCommand,
)
from accord.protocol.document import RequestFormatError
from accord.protocol.models import Priority, RequestStatus, RequestType, Scope
from accord.protocol.state_machine import TransitionError
from accord.sync.controllers import SyncCliController, SyncCommand

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()
REQUEST_CONTROLLER = RequestCliController()
SYNC_CONTROLLER = SyncCliController()

T = TypeVar("T")
F = TypeVar("F", bound=Callable)


@click.group()
@click.version_option(version=__version__, prog_name="accord")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging to stderr.")
@click.pass_context
def accord(ctx: click.Context, verbose: bool) -> None:
    """Accord: request-queue coordination between repositories over git."""

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_cli_logging(verbose=verbose)


def _target_dir_option(function: F) -> F:
    return click.option(
        "--target-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=Path("."),
        show_default=True,
        help="Repository (service checkout or hub) to operate on.",
    )(function)


def _daemon_options(function: F) -> F:
    """Options every daemon subcommand accepts."""

    options = [
        click.option(
            "--agent-cmd",
            default=None,
            help=(
                "Worker command. Supports {prompt}, {prompt_file} and {request_file}; "
                "otherwise the prompt is appended. Overrides ACCORD_AGENT_CMD and config."
            ),
        ),
        click.option(
            "--timeout",
            type=click.IntRange(min=1),
            default=None,
            help="Per-request worker timeout in seconds.",
        ),
        click.option(
            "--interval",
            type=click.FloatRange(min=0.1),
            default=None,
            help="Seconds between ticks when serving.",
        ),
        click.option(
            "--max-attempts",
            type=click.IntRange(min=1),
            default=None,
            help="Failed attempts before a request is marked failed and escalated.",
        ),
        click.option(
            "--service",
            default=None,
            help="Limit processing to one service and its modules.",
        ),
        _target_dir_option,
    ]
    for option in reversed(options):
        function = option(function)
    return function


def _agent_command(  # noqa: PLR0913
    target_dir: Path,
    agent_cmd: str | None,
    timeout: int | None,
    interval: float | None,
    max_attempts: int | None,
    service: str | None,
) -> AgentCommand:
    ctx = click.get_current_context()
    return AgentCommand(
        target_dir=target_dir,
        agent_cmd=agent_cmd,
        timeout=timeout,
        interval=interval,
        max_attempts=max_attempts,
        service=service,
        verbose=bool((ctx.find_root().obj or {}).get("verbose")),
    )


def _invoke(action: Callable[[], T]) -> T:
    """Run a controller call, mapping domain errors to CLI errors."""

    try:
        return action()
    except SettingsError as error:
        raise click.UsageError(str(error)) from error
    except (
        ConfigError,
        RequestFormatError,
        TransitionError,
        LookupError,
        FileExistsError,
        ValueError,
    ) as error:
        raise click.ClickException(str(error)) from error


@accord.group()
def agent() -> None:
    """Request processing daemon."""


@agent.command("run-once")
@_daemon_options
def agent_run_once(**kwargs) -> None:
    """Run exactly one tick (pull, process eligible requests, push) and exit."""

    command = _agent_command(**kwargs)
    _emit_lines(_invoke(lambda: AGENT_CONTROLLER.run_once(command)))


@agent.command("start")
@_daemon_options
def agent_start(**kwargs) -> None:
    """Start the daemon in the background (no-op if it is already running)."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.start(command)))


@agent.command("stop")
@_daemon_options
def agent_stop(**kwargs) -> None:
    """Stop the daemon and its process group."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.stop(command)))


@agent.command("status")
@_daemon_options
def agent_status(**kwargs) -> None:
    """Show whether the daemon runs, plus the tail of its log."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.status(command)))


@agent.command("start-all")
@_daemon_options
def agent_start_all(**kwargs) -> None:
    """Start a daemon in every service checkout listed by the hub."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.start_all(command)))


@agent.command("stop-all")
@_daemon_options
def agent_stop_all(**kwargs) -> None:
    """Stop the daemon of every service checkout listed by the hub."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.stop_all(command)))


@agent.command("status-all")
@_daemon_options
def agent_status_all(**kwargs) -> None:
    """Daemon status of every service checkout listed by the hub."""

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.status_all(command)))


@agent.command("trigger")
@_daemon_options
def agent_trigger(**kwargs) -> None:
    """React to an external event according to `settings.sync_mode`.

    `manual` does nothing, `on-action` runs one tick at most once per
    minimum interval, `auto-poll` makes sure the daemon is running.
    """

    command = _agent_command(**kwargs)
    _emit_result(_invoke(lambda: AGENT_CONTROLLER.trigger(command)))


@agent.command("serve", hidden=True)
@_daemon_options
def agent_serve(**kwargs) -> None:
    """Run the daemon loop in the foreground (used by `start`)."""

    command = _agent_command(**kwargs)
    exit_code = _invoke(lambda: AGENT_CONTROLLER.serve(command))
    if exit_code:
        click.get_current_context().exit(exit_code)


@accord.group()
def sync() -> None:
    """Git synchronization of requests and contracts."""


@sync.command("init")
@_target_dir_option
def sync_init(target_dir: Path) -> None:
    """Clone the hub, seed it if empty and announce this service."""

    _emit_sync(_invoke(lambda: SYNC_CONTROLLER.init(SyncCommand(target_dir=target_dir))))


@sync.command("pull")
@_target_dir_option
def sync_pull(target_dir: Path) -> None:
    """Fetch inbound requests, contracts and registry entries."""

    _emit_sync(_invoke(lambda: SYNC_CONTROLLER.pull(SyncCommand(target_dir=target_dir))))


@sync.command("push")
@_target_dir_option
@click.option("--message", "-m", default=None, help="Commit message.")
def sync_push(target_dir: Path, message: str | None) -> None:
    """Commit local state and publish it."""

    _emit_sync(
        _invoke(
            lambda: SYNC_CONTROLLER.push(SyncCommand(target_dir=target_dir, message=message)),
        ),
    )


@accord.group()
def request() -> None:
    """Create and review requests."""


@request.command("list")
@_target_dir_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in RequestStatus]),
    default=None,
    help="Only requests with this status.",
)
@click.option("--all", "include_archive", is_flag=True, help="Include archived requests.")
def request_list(target_dir: Path, status: str | None, include_archive: bool) -> None:
    """List requests in every inbox."""

    _emit_lines(
        _invoke(
            lambda: REQUEST_CONTROLLER.list_requests(
                RequestListCommand(
                    target_dir=target_dir,
                    status=status,
                    include_archive=include_archive,
                ),
            ),
        ),
    )


@request.command("create")
@_target_dir_option
@click.option("--from", "from_", required=True, help="Requesting service or module.")
@click.option("--to", required=True, help="Recipient service or module (its inbox).")
@click.option("--what", required=True, help="One-paragraph description of the ask.")
@click.option(
    "--type",
    "request_type",
    type=click.Choice([item.value for item in RequestType]),
    default=RequestType.OTHER.value,
    show_default=True,
)
@click.option(
    "--scope",
    type=click.Choice([item.value for item in Scope]),
    default=Scope.EXTERNAL.value,
    show_default=True,
)
@click.option(
    "--priority",
    type=click.Choice([item.value for item in Priority]),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option("--proposed-change", default=None)
@click.option("--why", default=None)
@click.option("--related-contract", default=None, help="Contract path the change must update.")
@click.option("--command", "command_name", default=None, help="Diagnostic command to run.")
@click.option("--id", "request_id", default=None, help="Explicit request id.")
@click.option("--directive", default=None, help="Directive this request derives from.")
def request_create(  # noqa: PLR0913
    target_dir: Path,
    from_: str,
    to: str,
    what: str,
    request_type: str,
    scope: str,
    priority: str,
    proposed_change: str | None,
    why: str | None,
    related_contract: str | None,
    command_name: str | None,
    request_id: str | None,
    directive: str | None,
) -> None:
    """Write a new pending request into the recipient's inbox."""

    _emit_lines(
        _invoke(
            lambda: REQUEST_CONTROLLER.create(
                RequestCreateCommand(
                    target_dir=target_dir,
                    from_=from_,
                    to=to,
                    what=what,
                    type=request_type,
                    scope=scope,
                    priority=priority,
                    proposed_change=proposed_change,
                    why=why,
                    related_contract=related_contract,
                    command=command_name,
                    request_id=request_id,
                    directive=directive,
                ),
            ),
        ),
    )


def _mutate_command(function: F) -> F:
    function = click.option(
        "--actor",
        default="human",
        show_default=True,
        help="Recorded in history as the actor.",
    )(function)
    function = _target_dir_option(function)
    return click.argument("request_id")(function)


@request.command("approve")
@_mutate_command
def request_approve(request_id: str, target_dir: Path, actor: str) -> None:
    """Approve a pending request so the daemon may process it."""

    command = RequestMutateCommand(target_dir=target_dir, request_id=request_id, actor=actor)
    _emit_lines(_invoke(lambda: REQUEST_CONTROLLER.approve(command)))


@request.command("reject")
@_mutate_command
@click.option("--reason", required=True, help="Written into the Rejection Reason section.")
def request_reject(request_id: str, target_dir: Path, actor: str, reason: str) -> None:
    """Reject a pending request and archive it."""

    command = RequestMutateCommand(
        target_dir=target_dir,
        request_id=request_id,
        actor=actor,
        reason=reason,
    )
    _emit_lines(_invoke(lambda: REQUEST_CONTROLLER.reject(command)))


@request.command("revert")
@_mutate_command
@click.option("--reason", default=None, help="Why the requirements changed.")
def request_revert(request_id: str, target_dir: Path, actor: str, reason: str | None) -> None:
    """Put an in-progress request back to pending."""

    command = RequestMutateCommand(
        target_dir=target_dir,
        request_id=request_id,
        actor=actor,
        reason=reason,
    )
    _emit_lines(_invoke(lambda: REQUEST_CONTROLLER.revert(command)))


@request.command("withdraw")
@_mutate_command
def request_withdraw(request_id: str, target_dir: Path, actor: str) -> None:
    """Delete a pending or in-progress request."""

    command = RequestMutateCommand(target_dir=target_dir, request_id=request_id, actor=actor)
    _emit_lines(_invoke(lambda: REQUEST_CONTROLLER.withdraw(command)))


@accord.command("history")
@_target_dir_option
@click.option("--request", "request_id", default=None, help="Only this request or directive.")
def history(target_dir: Path, request_id: str | None) -> None:
    """Show the transition audit trail."""

    _emit_lines(
        _invoke(
            lambda: REQUEST_CONTROLLER.history(
                HistoryCommand(target_dir=target_dir, request_id=request_id),
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def _emit_result(result: AgentResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Operation failed.")


def _emit_sync(result) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Sync finished with errors; see warnings above.")


if __name__ == "__main__":  # pragma: no cover
    accord()
