from __future__ import annotations

import logging

import allure
from helpers import EXTERNAL_CONTRACT, make_request

from accord.agent.prompt import build_worker_prompt
from accord.config import AccordLayout
from accord.log import attach_daemon_log, detach_daemon_log, tail_daemon_log

pytestmark = [
    allure.epic("Agent"),
    allure.feature("Worker Prompt"),
]


def test_prompt_carries_request_and_contract(service_repo: AccordLayout) -> None:
    contract = service_repo.contracts_dir / "svc-b.yaml"
    contract.write_text(EXTERNAL_CONTRACT, "utf-8")
    service_repo.registry_dir.mkdir(parents=True)
    (service_repo.registry_dir / "svc-b.md").write_text(
        "---\nname: svc-b\ntype: service\n---\n\nOwns users.\n",
        "utf-8",
    )
    (service_repo.registry_dir / "svc-z.md").write_text(
        "---\nname: svc-z\ntype: service\n---\n\nUnrelated.\n",
        "utf-8",
    )
    request = make_request(attempts=2, related_contract=".accord/contracts/svc-b.yaml")

    prompt = build_worker_prompt(request=request, service="svc-b", layout=service_repo)

    assert prompt.startswith('You are the Accord worker for the "svc-b" service.')
    assert "**ID**: req-001-add-field" in prompt
    assert "**Previous failed attempts**: 2" in prompt
    assert "## Service Registry" in prompt
    assert "Owns users." in prompt
    assert "Unrelated." not in prompt
    assert "x-accord-request: req-001-add-field" in prompt
    assert "Do NOT edit the request's `status`" in prompt


def test_prompt_notes_missing_contract(service_repo: AccordLayout) -> None:
    request = make_request(related_contract=".accord/contracts/svc-b.yaml")

    prompt = build_worker_prompt(request=request, service="svc-b", layout=service_repo)

    assert "(The contract file does not exist yet; create it.)" in prompt
    assert "Previous failed attempts" not in prompt
    assert "## Service Registry" not in prompt


def test_daemon_log_is_written_and_tailed(service_repo: AccordLayout) -> None:
    path = attach_daemon_log(service_repo.log_dir)
    try:
        logging.getLogger("accord.test").info("tick finished")
        logging.getLogger("accord.test").debug("hidden detail")
    finally:
        detach_daemon_log()

    assert path.parent == service_repo.log_dir
    tail = tail_daemon_log(service_repo.log_dir, lines=5)
    assert len(tail) == 1
    assert tail[0].endswith("INFO accord.test: tick finished")
    assert tail_daemon_log(service_repo.log_dir / "missing") == []


def test_log_tail_ignores_serve_stderr_capture(service_repo: AccordLayout) -> None:
    service_repo.log_dir.mkdir(parents=True)
    (service_repo.log_dir / "agent-2026-10-18.log").write_text("older line\n", "utf-8")
    (service_repo.log_dir / "agent-2026-10-19.log").write_text("tick line\n", "utf-8")
    (service_repo.log_dir / "agent-serve.stderr.log").write_text("", "utf-8")

    assert tail_daemon_log(service_repo.log_dir) == ["tick line"]
