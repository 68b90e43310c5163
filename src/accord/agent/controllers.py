"""Controllers for `accord agent` CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from accord.agent.daemon import RequestDaemon, TickSummary
from accord.agent.lifecycle import (
    ALREADY_RUNNING_EXIT,
    DaemonAlreadyRunningError,
    DaemonOptions,
    DaemonSupervisor,
    on_action_due,
    service_checkouts,
    serving,
)
from accord.config import AccordLayout, Deployment, Settings, TriggerMode, detect_deployment
from accord.log import attach_daemon_log, detach_daemon_log

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentCommand:
    """CLI input shared by every daemon subcommand."""

    target_dir: Path
    agent_cmd: str | None = None
    timeout: int | None = None
    interval: float | None = None
    max_attempts: int | None = None
    service: str | None = None
    verbose: bool = False

    @property
    def options(self) -> DaemonOptions:
        return DaemonOptions(
            agent_cmd=self.agent_cmd,
            timeout=self.timeout,
            interval=self.interval,
            max_attempts=self.max_attempts,
            service=self.service,
            verbose=self.verbose,
        )


@dataclass(slots=True)
class AgentResult:
    """Lines to print plus whether the operation succeeded."""

    lines: list[str]
    success: bool = True


def resolve_settings(command: AgentCommand, deployment: Deployment) -> Settings:
    """Environment and project settings with CLI overrides applied, validated."""

    settings = Settings.from_env(deployment.project)
    if command.agent_cmd:
        settings.daemon.worker_command = command.agent_cmd
    if command.timeout is not None:
        settings.daemon.request_timeout_seconds = command.timeout
    if command.interval is not None:
        settings.daemon.poll_interval_seconds = command.interval
    if command.max_attempts is not None:
        settings.daemon.max_attempts = command.max_attempts
    settings.validate()
    return settings


def _summary_line(summary: TickSummary) -> str:
    return "Tick summary: " + " ".join(summary.lines())


class AgentCliController:
    """Runs ticks in-process and supervises detached daemons."""

    def run_once(self, command: AgentCommand) -> list[str]:
        deployment = detect_deployment(command.target_dir)
        settings = resolve_settings(command, deployment)
        daemon = RequestDaemon(
            deployment=deployment,
            settings=settings,
            service=command.service,
        )
        attach_daemon_log(deployment.layout.log_dir, debug=deployment.project.debug)
        try:
            summary = daemon.tick()
        finally:
            detach_daemon_log()
        return [_summary_line(summary)]

    def serve(self, command: AgentCommand) -> int:
        """Foreground daemon loop used by `start`; returns the process exit code."""

        deployment = detect_deployment(command.target_dir)
        settings = resolve_settings(command, deployment)
        layout = deployment.layout
        attach_daemon_log(layout.log_dir, debug=deployment.project.debug)
        try:
            with serving(layout):
                daemon = RequestDaemon(
                    deployment=deployment,
                    settings=settings,
                    service=command.service,
                )
                summary = daemon.run_loop()
                logger.info("%s", _summary_line(summary))
        except DaemonAlreadyRunningError as error:
            logger.warning("Not serving: %s", error)
            return ALREADY_RUNNING_EXIT
        finally:
            detach_daemon_log()
        return 0

    def start(self, command: AgentCommand) -> AgentResult:
        deployment = detect_deployment(command.target_dir)
        resolve_settings(command, deployment)
        result = DaemonSupervisor(deployment.layout).start(command.options)
        return AgentResult(lines=[result.message], success=result.ok)

    def stop(self, command: AgentCommand) -> AgentResult:
        layout = detect_deployment(command.target_dir).layout
        result = DaemonSupervisor(layout).stop()
        return AgentResult(lines=[result.message], success=result.ok)

    def status(self, command: AgentCommand) -> AgentResult:
        deployment = detect_deployment(command.target_dir)
        status = DaemonSupervisor(deployment.layout).status()
        lines = [
            f"Daemon: {status.describe()}",
            f"Role: {deployment.role.value}  Mode: {deployment.mode.value}",
            f"Inboxes: {', '.join(deployment.inbox_names(command.service)) or '-'}",
        ]
        if status.log_tail:
            lines += ["", "Recent log:", *status.log_tail]
        return AgentResult(lines=lines, success=True)

    def start_all(self, command: AgentCommand) -> AgentResult:
        return self._fan_out(command, starting=True)

    def stop_all(self, command: AgentCommand) -> AgentResult:
        return self._fan_out(command, starting=False)

    def status_all(self, command: AgentCommand) -> AgentResult:
        deployment = detect_deployment(command.target_dir)
        lines = [
            "| Service | Directory | Daemon |",
            "|---------|-----------|--------|",
        ]
        for checkout in service_checkouts(deployment.layout, deployment.project):
            if not checkout.initialized:
                state = "not initialized"
            else:
                layout = AccordLayout.for_target(checkout.directory)
                state = DaemonSupervisor(layout).status().describe()
            lines.append(f"| {checkout.name} | {checkout.directory} | {state} |")
        return AgentResult(lines=lines)

    def trigger(self, command: AgentCommand) -> AgentResult:
        """Act on an external trigger according to the configured mode."""

        deployment = detect_deployment(command.target_dir)
        settings = resolve_settings(command, deployment)
        if deployment.mode is TriggerMode.MANUAL:
            return AgentResult(
                lines=["Manual mode: nothing to do (run `accord agent run-once`)."],
            )
        if deployment.mode is TriggerMode.ON_ACTION:
            interval = settings.trigger.on_action_min_interval_seconds
            if not on_action_due(deployment.layout, min_interval_seconds=interval):
                return AgentResult(lines=[f"Skipped: last tick was less than {interval}s ago."])
            return AgentResult(lines=self.run_once(command))
        result = DaemonSupervisor(deployment.layout).start(command.options)
        return AgentResult(lines=[f"Auto-poll: {result.message}"], success=result.ok)

    def _fan_out(self, command: AgentCommand, *, starting: bool) -> AgentResult:
        deployment = detect_deployment(command.target_dir)
        if starting:
            resolve_settings(command, deployment)
        options = DaemonOptions(
            agent_cmd=command.agent_cmd,
            timeout=command.timeout,
            interval=command.interval,
            max_attempts=command.max_attempts,
            verbose=command.verbose,
        )
        lines: list[str] = []
        done = skipped = 0
        success = True
        for checkout in service_checkouts(deployment.layout, deployment.project):
            if not checkout.initialized:
                logger.warning(
                    "Skipping %s: no Accord state in %s",
                    checkout.name,
                    checkout.directory,
                )
                lines.append(f"{checkout.name}: skipped (no .accord in {checkout.directory})")
                skipped += 1
                continue
            supervisor = DaemonSupervisor(AccordLayout.for_target(checkout.directory))
            result = supervisor.start(options) if starting else supervisor.stop()
            lines.append(f"{checkout.name}: {result.message}")
            success = success and result.ok
            if result.changed:
                done += 1
        verb = "started" if starting else "stopped"
        lines.append(f"{done} {verb}, {skipped} skipped")
        return AgentResult(lines=lines, success=success)
