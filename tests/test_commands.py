from __future__ import annotations

import allure
import pytest
from helpers import EXTERNAL_CONTRACT, make_request, place_request

from accord.agent.commands import run_diagnostic
from accord.config import AccordLayout
from accord.protocol.models import RequestStatus

pytestmark = [
    allure.epic("Agent"),
    allure.feature("Diagnostic Commands"),
]


def test_status_report_counts(service_repo: AccordLayout) -> None:
    (service_repo.contracts_dir / "svc-b.yaml").write_text(EXTERNAL_CONTRACT, "utf-8")
    place_request(service_repo, make_request())
    (service_repo.archive_dir / "req-000-old.md").write_text(
        make_request("req-000-old", status=RequestStatus.COMPLETED).to_text(),
        "utf-8",
    )

    report = run_diagnostic("status", layout=service_repo, project_name="demo")

    assert report.splitlines() == [
        "## Status Report",
        "",
        "**Project**: demo",
        "**Contracts**: 1 external, 0 internal",
        "**Inbox items**: 1",
        "**Archived**: 1",
    ]


def test_scan_report_lists_contract_annotations(service_repo: AccordLayout) -> None:
    (service_repo.contracts_dir / "svc-b.yaml").write_text(EXTERNAL_CONTRACT, "utf-8")

    report = run_diagnostic("scan", layout=service_repo, project_name="demo")

    assert "- svc-b.yaml [stable, pending req-001-add-field]: PASS" in report


def test_scan_report_without_contracts(service_repo: AccordLayout) -> None:
    report = run_diagnostic("scan", layout=service_repo, project_name="demo")

    assert report.endswith("No contracts found.")


def test_check_inbox_table(service_repo: AccordLayout) -> None:
    place_request(service_repo, make_request(priority="high"))

    report = run_diagnostic("check-inbox", layout=service_repo, project_name="demo")

    assert "| svc-b | req-001-add-field.md | pending | high | api-change |" in report


def test_validate_report_flags_broken_request(service_repo: AccordLayout) -> None:
    place_request(service_repo, make_request())
    (service_repo.inbox_dir("svc-a") / "req-002-broken.md").write_text("oops\n", "utf-8")

    report = run_diagnostic("validate", layout=service_repo, project_name="demo")

    assert "- svc-a/req-002-broken.md: FAIL (missing header (no opening ---))" in report
    assert "- svc-b/req-001-add-field.md: PASS" in report


def test_unknown_command_is_rejected(service_repo: AccordLayout) -> None:
    with pytest.raises(ValueError, match="Unknown command 'deploy'"):
        run_diagnostic("deploy", layout=service_repo, project_name="demo")
