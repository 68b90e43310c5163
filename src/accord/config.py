"""Runtime settings, project configuration and on-disk layout."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

import yaml

STATE_DIR_NAME = ".accord"
CONFIG_FILE_NAME = "config.yaml"
ORCHESTRATOR_INBOX = "orchestrator"

T = TypeVar("T")


class ConfigError(ValueError):
    """Missing or malformed Accord configuration."""


class SettingsError(ValueError):
    """Runtime settings the daemon cannot run with."""


class Role(str, Enum):
    """What the current repository acts as."""

    ORCHESTRATOR = "orchestrator"
    SERVICE = "service"


class TriggerMode(str, Enum):
    """Which external trigger starts ticking."""

    MANUAL = "manual"
    ON_ACTION = "on-action"
    AUTO_POLL = "auto-poll"


class RepoModel(str, Enum):
    """Whether all services share one repository or meet through a hub."""

    MONOREPO = "monorepo"
    MULTI_REPO = "multi-repo"


@dataclass(slots=True, frozen=True)
class AccordLayout:
    """Paths of one repository's Accord state.

    Services keep state under `<target>/.accord/`; an orchestrator (hub)
    repository keeps the same tree flat at its root.
    """

    target_dir: Path
    state_dir: Path

    @classmethod
    def for_target(cls, target_dir: Path) -> AccordLayout:
        target = target_dir.expanduser().resolve()
        nested = target / STATE_DIR_NAME
        if not (nested / CONFIG_FILE_NAME).is_file() and (target / CONFIG_FILE_NAME).is_file():
            return cls(target_dir=target, state_dir=target)
        return cls(target_dir=target, state_dir=nested)

    @property
    def is_flat(self) -> bool:
        return self.state_dir == self.target_dir

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    @property
    def contracts_dir(self) -> Path:
        return self.state_dir / "contracts"

    @property
    def internal_contracts_dir(self) -> Path:
        return self.contracts_dir / "internal"

    @property
    def registry_dir(self) -> Path:
        return self.state_dir / "registry"

    @property
    def inbox_root(self) -> Path:
        return self.state_dir / "comms" / "inbox"

    @property
    def archive_dir(self) -> Path:
        return self.state_dir / "comms" / "archive"

    @property
    def history_dir(self) -> Path:
        return self.state_dir / "comms" / "history"

    @property
    def directives_dir(self) -> Path:
        return self.state_dir / "directives"

    @property
    def hub_dir(self) -> Path:
        return self.state_dir / "hub"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "log"

    @property
    def worker_log_dir(self) -> Path:
        return self.log_dir / "worker"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / ".agent.pid"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / ".agent.lock"

    @property
    def tick_stamp_file(self) -> Path:
        return self.state_dir / ".last-tick"

    def inbox_dir(self, name: str) -> Path:
        return self.inbox_root / name


@dataclass(slots=True)
class ModuleConfig:
    name: str
    path: str | None = None
    type: str | None = None


@dataclass(slots=True)
class ServiceConfig:
    """One participant listed in `services:`."""

    name: str
    directory: str | None = None
    repo: str | None = None
    modules: list[ModuleConfig] = field(default_factory=list)

    @property
    def inbox_names(self) -> list[str]:
        return [self.name, *(module.name for module in self.modules)]


@dataclass(slots=True)
class DispatcherConfig:
    """Daemon knobs set in the project file; `None` means not set there."""

    poll_interval: float | None = None
    request_timeout: int | None = None
    max_attempts: int | None = None
    agent_cmd: str | None = None


@dataclass(slots=True)
class ProjectConfig:
    """Parsed `config.yaml` produced by the scaffolding tool."""

    project_name: str
    role: Role = Role.SERVICE
    repo_model: RepoModel = RepoModel.MONOREPO
    hub: str | None = None
    services: list[ServiceConfig] = field(default_factory=list)
    sync_mode: TriggerMode = TriggerMode.ON_ACTION
    agent_cmd: str | None = None
    debug: bool = False
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    path: Path | None = None

    @classmethod
    def load(cls, path: Path) -> ProjectConfig:
        if not path.is_file():
            raise ConfigError(f"Accord config not found: {path}")
        try:
            data = yaml.safe_load(path.read_text("utf-8"))
        except yaml.YAMLError as error:
            raise ConfigError(f"Invalid YAML in {path}: {error}") from error
        if not isinstance(data, dict):
            raise ConfigError(f"Accord config must be a mapping: {path}")
        return cls.from_mapping(data, path=path)

    @classmethod
    def from_mapping(cls, data: dict, *, path: Path | None = None) -> ProjectConfig:
        project = data.get("project")
        if isinstance(project, dict):
            project_name = str(project.get("name") or "")
        else:
            project_name = str(project or "")

        settings = data.get("settings") or {}
        dispatcher = data.get("dispatcher") or {}
        if not isinstance(settings, dict) or not isinstance(dispatcher, dict):
            raise ConfigError(f"`settings` and `dispatcher` must be mappings: {path}")

        return cls(
            project_name=project_name or (path.parent.name if path else "accord"),
            role=_parse_enum(Role, data.get("role"), Role.SERVICE, "role", path),
            repo_model=_parse_enum(
                RepoModel,
                data.get("repo_model"),
                RepoModel.MONOREPO,
                "repo_model",
                path,
            ),
            hub=_optional_str(data.get("hub")),
            services=[_parse_service(item, path) for item in data.get("services") or []],
            sync_mode=_parse_enum(
                TriggerMode,
                settings.get("sync_mode"),
                TriggerMode.ON_ACTION,
                "settings.sync_mode",
                path,
            ),
            agent_cmd=_optional_str(settings.get("agent_cmd")),
            debug=bool(settings.get("debug", False)),
            dispatcher=DispatcherConfig(
                poll_interval=_optional_number(dispatcher.get("poll_interval"), float, path),
                request_timeout=_optional_number(dispatcher.get("request_timeout"), int, path),
                max_attempts=_optional_number(dispatcher.get("max_attempts"), int, path),
                agent_cmd=_optional_str(dispatcher.get("agent_cmd")),
            ),
            path=path,
        )

    @property
    def own_service(self) -> ServiceConfig | None:
        """The service a service repository belongs to (first listed)."""

        if self.role is Role.ORCHESTRATOR or not self.services:
            return None
        return self.services[0]

    @property
    def service_names(self) -> list[str]:
        return [service.name for service in self.services]

    @property
    def worker_command(self) -> str | None:
        return self.agent_cmd or self.dispatcher.agent_cmd

    def service(self, name: str) -> ServiceConfig | None:
        return next((service for service in self.services if service.name == name), None)


def _parse_service(item: object, path: Path | None) -> ServiceConfig:
    if isinstance(item, str):
        return ServiceConfig(name=item)
    if not isinstance(item, dict) or not item.get("name"):
        raise ConfigError(f"Each service needs a `name`: {path}")
    modules = []
    for module in item.get("modules") or []:
        if isinstance(module, str):
            modules.append(ModuleConfig(name=module))
        elif isinstance(module, dict) and module.get("name"):
            modules.append(
                ModuleConfig(
                    name=str(module["name"]),
                    path=_optional_str(module.get("path")),
                    type=_optional_str(module.get("type")),
                ),
            )
        else:
            raise ConfigError(f"Each module needs a `name`: {path}")
    return ServiceConfig(
        name=str(item["name"]),
        directory=_optional_str(item.get("directory")),
        repo=_optional_str(item.get("repo")),
        modules=modules,
    )


def _parse_enum(enum_cls, raw: object, default, label: str, path: Path | None):
    if raw is None or raw == "":
        return default
    try:
        return enum_cls(str(raw))
    except ValueError as error:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ConfigError(f"Invalid {label} {raw!r} in {path} (expected: {allowed})") from error


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: object, kind: type, path: Path | None):
    if value is None or value == "":
        return None
    try:
        return kind(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"Invalid number {value!r} in {path}") from error


@dataclass(slots=True)
class Deployment:
    """Detected role and trigger mode of a target directory."""

    layout: AccordLayout
    project: ProjectConfig
    role: Role
    mode: TriggerMode

    @property
    def uses_hub(self) -> bool:
        return (
            self.role is Role.SERVICE
            and self.project.repo_model is RepoModel.MULTI_REPO
            and self.project.hub is not None
        )

    @property
    def own_service(self) -> str | None:
        service = self.project.own_service
        return service.name if service else None

    def inbox_names(self, service: str | None = None) -> list[str]:
        """Inboxes a daemon for this deployment is responsible for."""

        if service is not None:
            configured = self.project.service(service)
            return configured.inbox_names if configured else [service]
        if self.role is Role.ORCHESTRATOR:
            return [ORCHESTRATOR_INBOX]
        if self.project.repo_model is RepoModel.MULTI_REPO:
            own = self.project.own_service
            return own.inbox_names if own else []
        names = []
        for configured in self.project.services:
            names.extend(configured.inbox_names)
        return names


def detect_deployment(target_dir: Path) -> Deployment:
    """Decide orchestrator vs service and the trigger mode for `target_dir`.

    A flat `config.yaml` with `role: orchestrator` marks a hub; a
    `.accord/config.yaml` marks a service repository.
    """

    target = target_dir.expanduser().resolve()
    flat_config = target / CONFIG_FILE_NAME
    if flat_config.is_file():
        project = ProjectConfig.load(flat_config)
        if project.role is Role.ORCHESTRATOR:
            return Deployment(
                layout=AccordLayout(target_dir=target, state_dir=target),
                project=project,
                role=Role.ORCHESTRATOR,
                mode=project.sync_mode,
            )

    nested_config = target / STATE_DIR_NAME / CONFIG_FILE_NAME
    if nested_config.is_file():
        project = ProjectConfig.load(nested_config)
        return Deployment(
            layout=AccordLayout(target_dir=target, state_dir=target / STATE_DIR_NAME),
            project=project,
            role=project.role,
            mode=project.sync_mode,
        )

    raise ConfigError(
        f"Cannot detect role: no config.yaml or {STATE_DIR_NAME}/config.yaml in {target}",
    )


@dataclass(slots=True)
class DaemonSettings:
    """Knobs of the processing daemon."""

    worker_command: str | None = None
    request_timeout_seconds: int = 600
    poll_interval_seconds: float = 30.0
    max_attempts: int = 3
    worker_grace_seconds: float = 2.0


@dataclass(slots=True)
class SyncSettings:
    """Git synchronization knobs."""

    push_max_retries: int = 3
    git_timeout_seconds: int = 120


@dataclass(slots=True)
class TriggerSettings:
    on_action_min_interval_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern.

    Built once at the CLI boundary and passed down explicitly.
    """

    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    trigger: TriggerSettings = field(default_factory=TriggerSettings)

    @classmethod
    def from_env(cls, project: ProjectConfig | None = None) -> Settings:
        """Environment first, then project configuration, then defaults."""

        dispatcher = project.dispatcher if project else DispatcherConfig()
        defaults = DaemonSettings()
        return cls(
            daemon=DaemonSettings(
                worker_command=(
                    _env_str("ACCORD_AGENT_CMD") or (project.worker_command if project else None)
                ),
                request_timeout_seconds=_env_int(
                    "ACCORD_REQUEST_TIMEOUT_SECONDS",
                    _configured(dispatcher.request_timeout, defaults.request_timeout_seconds),
                ),
                poll_interval_seconds=_env_float(
                    "ACCORD_POLL_INTERVAL_SECONDS",
                    _configured(dispatcher.poll_interval, defaults.poll_interval_seconds),
                ),
                max_attempts=_env_int(
                    "ACCORD_MAX_ATTEMPTS",
                    _configured(dispatcher.max_attempts, defaults.max_attempts),
                ),
                worker_grace_seconds=_env_float("ACCORD_WORKER_GRACE_SECONDS", 2.0),
            ),
            sync=SyncSettings(
                push_max_retries=_env_int("ACCORD_PUSH_MAX_RETRIES", 3),
                git_timeout_seconds=_env_int("ACCORD_GIT_TIMEOUT_SECONDS", 120),
            ),
            trigger=TriggerSettings(
                on_action_min_interval_seconds=_env_int(
                    "ACCORD_ON_ACTION_MIN_INTERVAL_SECONDS",
                    300,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the daemon cannot run with."""

        if self.daemon.request_timeout_seconds <= 0:
            raise SettingsError("Request timeout must be > 0 seconds.")
        if self.daemon.poll_interval_seconds <= 0:
            raise SettingsError("Poll interval must be > 0 seconds.")
        if self.daemon.max_attempts <= 0:
            raise SettingsError("Max attempts must be >= 1.")
        if self.daemon.worker_grace_seconds < 0:
            raise SettingsError("ACCORD_WORKER_GRACE_SECONDS must be >= 0.")
        if self.sync.push_max_retries <= 0:
            raise SettingsError("ACCORD_PUSH_MAX_RETRIES must be >= 1.")
        if self.sync.git_timeout_seconds <= 0:
            raise SettingsError("ACCORD_GIT_TIMEOUT_SECONDS must be > 0.")
        if self.trigger.on_action_min_interval_seconds < 0:
            raise SettingsError("ACCORD_ON_ACTION_MIN_INTERVAL_SECONDS must be >= 0.")


def _env_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _configured(value: T | None, default: T) -> T:
    return default if value is None else value


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise SettingsError(f"{name} must be an integer, got {raw!r}.") from error


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise SettingsError(f"{name} must be a number, got {raw!r}.") from error
