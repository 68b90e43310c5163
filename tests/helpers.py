"""Builders shared by the test modules."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import yaml

from accord.config import AccordLayout, Settings, detect_deployment
from accord.protocol.models import RequestStatus
from accord.protocol.records import Request
from accord.sync.hub import SyncReport

ECHO_WORKER = f"{shlex.quote(sys.executable)} -m accord.agent.backend.echo_worker"

EXTERNAL_CONTRACT = """\
openapi: 3.0.3
info:
  title: svc-b API
  version: 1.0.0
  x-accord-status: stable
paths:
  /users/{id}:
    get:
      x-accord-request: req-001-add-field
      responses:
        '200':
          description: ok
"""

INTERNAL_CONTRACT = """\
---
id: svc-b-cache
module: cache
language: python
type: class
status: draft
---

## Interface

```python
class Cache: ...
```

## Behavioral Contract

Keys expire.

## Used By

- svc-b
"""


def worker_command(*args: str) -> str:
    """Command line running the deterministic echo worker with `args`."""

    return " ".join([ECHO_WORKER, *(shlex.quote(arg) for arg in args)])


class NullSync:
    """Sync stand-in that records calls and touches nothing."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    def pull(self) -> SyncReport:
        self.calls.append(("pull", None))
        return SyncReport()

    def push(self, message: str | None = None) -> SyncReport:
        self.calls.append(("push", message))
        return SyncReport()


def write_service_repo(
    target: Path,
    *,
    services: list[dict] | None = None,
    role: str = "service",
    repo_model: str = "monorepo",
    sync_mode: str = "on-action",
    hub: str | None = None,
    extra: dict | None = None,
) -> AccordLayout:
    """Create a minimal `.accord/` tree like the scaffolding tool would."""

    services = services if services is not None else [{"name": "svc-b"}, {"name": "svc-a"}]
    config: dict = {
        "version": "0.1",
        "project": {"name": "demo"},
        "repo_model": repo_model,
        "role": role,
        "services": services,
        "settings": {"sync_mode": sync_mode},
    }
    if hub:
        config["hub"] = hub
    config.update(extra or {})

    layout = AccordLayout(target_dir=target, state_dir=target / ".accord")
    layout.state_dir.mkdir(parents=True, exist_ok=True)
    layout.config_path.write_text(yaml.safe_dump(config, sort_keys=False), "utf-8")
    layout.contracts_dir.mkdir(parents=True, exist_ok=True)
    layout.archive_dir.mkdir(parents=True, exist_ok=True)
    for service in services:
        layout.inbox_dir(service["name"]).mkdir(parents=True, exist_ok=True)
        for module in service.get("modules") or []:
            name = module["name"] if isinstance(module, dict) else module
            layout.inbox_dir(name).mkdir(parents=True, exist_ok=True)
    return layout


def write_hub_repo(target: Path, *, services: list[dict]) -> AccordLayout:
    """Flat orchestrator repository with `role: orchestrator`."""

    target.mkdir(parents=True, exist_ok=True)
    config = {
        "version": "0.1",
        "project": {"name": "demo"},
        "repo_model": "multi-repo",
        "role": "orchestrator",
        "services": services,
    }
    (target / "config.yaml").write_text(yaml.safe_dump(config, sort_keys=False), "utf-8")
    layout = AccordLayout(target_dir=target, state_dir=target)
    layout.inbox_dir("orchestrator").mkdir(parents=True, exist_ok=True)
    layout.archive_dir.mkdir(parents=True, exist_ok=True)
    return layout


def make_request(  # noqa: PLR0913
    request_id: str = "req-001-add-field",
    *,
    from_: str = "svc-a",
    to: str = "svc-b",
    status: RequestStatus = RequestStatus.PENDING,
    priority: str = "medium",
    type_: str = "api-change",
    created: str = "2026-02-10T14:30:00Z",
    attempts: int = 0,
    awaiting_retry: bool = False,
    related_contract: str | None = None,
    command: str | None = None,
    body: str | None = None,
) -> Request:
    return Request(
        id=request_id,
        from_=from_,
        to=to,
        scope="external",
        type=type_,
        priority=priority,
        status=status,
        created=created,
        updated=created,
        related_contract=related_contract,
        command=command,
        attempts=attempts,
        awaiting_retry=awaiting_retry,
        body=body
        if body is not None
        else (
            "\n## What\n\nAdd a `display_name` field to the user endpoint.\n\n"
            "## Proposed Change\n\nExtend the response schema.\n\n"
            "## Why\n\nThe web client needs it.\n"
        ),
    )


def place_request(layout: AccordLayout, request: Request, *, inbox: str | None = None) -> Path:
    path = layout.inbox_dir(inbox or request.to) / request.filename
    path.parent.mkdir(parents=True, exist_ok=True)
    request.path = path
    path.write_text(request.to_text(), "utf-8")
    return path


def fast_settings(layout: AccordLayout, **daemon_overrides) -> Settings:
    settings = Settings.from_env(detect_deployment(layout.target_dir).project)
    settings.daemon.poll_interval_seconds = 0.1
    settings.daemon.worker_grace_seconds = 0.5
    for key, value in daemon_overrides.items():
        setattr(settings.daemon, key, value)
    return settings
