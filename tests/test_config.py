from __future__ import annotations

from pathlib import Path

import allure
import pytest
from helpers import write_hub_repo, write_service_repo

from accord.config import (
    AccordLayout,
    ConfigError,
    ProjectConfig,
    RepoModel,
    Role,
    Settings,
    SettingsError,
    TriggerMode,
    detect_deployment,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings and Deployment"),
]


def test_settings_from_env_overrides_project_values(monkeypatch) -> None:
    project = ProjectConfig.from_mapping(
        {
            "project": {"name": "demo"},
            "settings": {"agent_cmd": "claude -p"},
            "dispatcher": {"poll_interval": 5, "request_timeout": 90, "max_attempts": 4},
        },
    )
    monkeypatch.setenv("ACCORD_MAX_ATTEMPTS", "7")

    settings = Settings.from_env(project)

    assert settings.daemon.worker_command == "claude -p"
    assert settings.daemon.poll_interval_seconds == 5.0
    assert settings.daemon.request_timeout_seconds == 90
    assert settings.daemon.max_attempts == 7


def test_settings_defaults_without_project() -> None:
    settings = Settings.from_env()

    assert settings.daemon.worker_command is None
    assert settings.daemon.request_timeout_seconds == 600
    assert settings.daemon.poll_interval_seconds == 30.0
    assert settings.daemon.max_attempts == 3
    assert settings.sync.push_max_retries == 3
    assert settings.trigger.on_action_min_interval_seconds == 300


def test_agent_cmd_env_wins_over_config(monkeypatch) -> None:
    project = ProjectConfig.from_mapping({"dispatcher": {"agent_cmd": "from-config"}})
    monkeypatch.setenv("ACCORD_AGENT_CMD", "from-env")

    assert Settings.from_env(project).daemon.worker_command == "from-env"


@pytest.mark.parametrize(
    ("env_name", "value", "message"),
    [
        ("ACCORD_REQUEST_TIMEOUT_SECONDS", "0", "Request timeout must be > 0 seconds."),
        ("ACCORD_POLL_INTERVAL_SECONDS", "0", "Poll interval must be > 0 seconds."),
        ("ACCORD_MAX_ATTEMPTS", "0", "Max attempts must be >= 1."),
        ("ACCORD_PUSH_MAX_RETRIES", "0", "ACCORD_PUSH_MAX_RETRIES must be >= 1."),
    ],
)
def test_validate_rejects_unusable_values(
    monkeypatch,
    env_name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(env_name, value)
    settings = Settings.from_env()

    with pytest.raises(SettingsError, match=message):
        settings.validate()


def test_configured_zero_is_not_replaced_by_default() -> None:
    project = ProjectConfig.from_mapping({"dispatcher": {"max_attempts": 0, "request_timeout": 0}})

    settings = Settings.from_env(project)

    assert settings.daemon.max_attempts == 0
    assert settings.daemon.request_timeout_seconds == 0
    with pytest.raises(SettingsError, match="Request timeout must be > 0 seconds."):
        settings.validate()


@pytest.mark.parametrize(
    ("env_name", "value", "message"),
    [
        ("ACCORD_MAX_ATTEMPTS", "many", "ACCORD_MAX_ATTEMPTS must be an integer, got 'many'."),
        ("ACCORD_POLL_INTERVAL_SECONDS", "soon", "ACCORD_POLL_INTERVAL_SECONDS must be a number"),
    ],
)
def test_non_numeric_env_values_are_settings_errors(
    monkeypatch,
    env_name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(env_name, value)

    with pytest.raises(SettingsError, match=message):
        Settings.from_env()


def test_project_config_parses_services_and_modules(tmp_path: Path) -> None:
    layout = write_service_repo(
        tmp_path / "svc",
        services=[
            {"name": "svc-b", "directory": "../svc-b", "modules": [{"name": "cache"}, "auth"]},
            {"name": "svc-a"},
        ],
        repo_model="multi-repo",
        hub="git@example.com:org/hub.git",
        sync_mode="auto-poll",
    )

    project = ProjectConfig.load(layout.config_path)

    assert project.project_name == "demo"
    assert project.repo_model is RepoModel.MULTI_REPO
    assert project.sync_mode is TriggerMode.AUTO_POLL
    assert project.own_service is not None
    assert project.own_service.inbox_names == ["svc-b", "cache", "auth"]
    assert project.service_names == ["svc-b", "svc-a"]


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("role: boss\n", "Invalid role 'boss'"),
        ("services:\n  - directory: x\n", "Each service needs a `name`"),
        ("- just\n- a list\n", "must be a mapping"),
        ("dispatcher:\n  max_attempts: many\n", "Invalid number"),
    ],
)
def test_project_config_errors(tmp_path: Path, text: str, message: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(text, "utf-8")

    with pytest.raises(ConfigError, match=message):
        ProjectConfig.load(path)


def test_detect_service_monorepo(service_repo: AccordLayout) -> None:
    deployment = detect_deployment(service_repo.target_dir)

    assert deployment.role is Role.SERVICE
    assert deployment.mode is TriggerMode.ON_ACTION
    assert deployment.layout.state_dir == service_repo.target_dir.resolve() / ".accord"
    assert deployment.inbox_names() == ["svc-b", "svc-a"]
    assert deployment.inbox_names("svc-a") == ["svc-a"]
    assert not deployment.uses_hub


def test_detect_multi_repo_service_uses_hub(tmp_path: Path) -> None:
    write_service_repo(
        tmp_path / "svc-b",
        services=[{"name": "svc-b", "modules": ["cache"]}, {"name": "svc-a"}],
        repo_model="multi-repo",
        hub="/srv/hub.git",
    )

    deployment = detect_deployment(tmp_path / "svc-b")

    assert deployment.uses_hub
    assert deployment.own_service == "svc-b"
    assert deployment.inbox_names() == ["svc-b", "cache"]


def test_detect_orchestrator_hub(tmp_path: Path) -> None:
    write_hub_repo(tmp_path / "hub", services=[{"name": "svc-a"}])

    deployment = detect_deployment(tmp_path / "hub")

    assert deployment.role is Role.ORCHESTRATOR
    assert deployment.layout.is_flat
    assert deployment.inbox_names() == ["orchestrator"]
    assert AccordLayout.for_target(tmp_path / "hub").is_flat


def test_detect_without_config_fails(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Cannot detect role"):
        detect_deployment(tmp_path)
