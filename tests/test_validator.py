from __future__ import annotations

from pathlib import Path

import allure
import pytest
from helpers import EXTERNAL_CONTRACT, INTERNAL_CONTRACT, make_request

from accord.protocol.models import RequestStatus
from accord.protocol.validator import (
    validate_contract_file,
    validate_directive_file,
    validate_request_file,
)

pytestmark = [
    allure.epic("Protocol"),
    allure.feature("Validators"),
]


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, "utf-8")
    return path


def test_well_formed_request_passes(tmp_path: Path) -> None:
    path = _write(tmp_path, "req-001-add-field.md", make_request().to_text())

    result = validate_request_file(path)

    assert result.ok
    assert result.describe() == "PASS"


def test_request_missing_fields_and_what_section_fails(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "req-002-bad.md",
        "---\nid: req-002-bad\nfrom: a\nto: b\nstatus: finished\n---\n\nNo sections.\n",
    )

    result = validate_request_file(path)

    assert not result.ok
    assert "missing required field: scope" in result.errors
    assert "invalid status: finished" in result.errors
    assert "missing '## What' section" in result.errors
    assert result.describe().startswith("FAIL (")


def test_command_request_needs_command_field(tmp_path: Path) -> None:
    request = make_request("req-003-status", type_="command", body="\n## What\n\nStatus.\n")
    path = _write(tmp_path, "req-003-status.md", request.to_text())

    result = validate_request_file(path)

    assert result.errors == ["type: command requires a `command` field"]


def test_non_standard_values_are_warnings(tmp_path: Path) -> None:
    request = make_request("custom-id", type_="migration")
    path = _write(tmp_path, "custom-id.md", request.to_text())

    result = validate_request_file(path)

    assert result.ok
    assert "non-standard request type: migration" in result.warnings
    assert any("does not match req-NNN-description" in item for item in result.warnings)
    assert result.describe().startswith("PASS (warning: ")


def test_rejected_request_needs_reason(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "req-004-x.md",
        make_request("req-004-x", status=RequestStatus.REJECTED).to_text(),
    )

    assert "rejected request missing '## Rejection Reason' section" in (
        validate_request_file(path).errors
    )


def test_directive_validation(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "dir-001-login.md",
        "---\nid: dir-001-login\ntitle: Login\npriority: high\nstatus: pending\n"
        "created: 2026-02-10T14:30:00Z\nupdated: 2026-02-10T14:30:00Z\n---\n\n"
        "## Requirement\n\nUsers log in.\n",
    )

    result = validate_directive_file(path)

    assert result.ok
    assert result.warnings == [
        "missing '## Acceptance Criteria' section",
        "missing '## Decomposition' section",
    ]


@pytest.mark.parametrize(
    ("name", "text", "error"),
    [
        ("ok.yaml", EXTERNAL_CONTRACT, None),
        (
            "no-openapi.yaml",
            EXTERNAL_CONTRACT.replace("openapi: 3.0.3\n", ""),
            "missing 'openapi'",
        ),
        (
            "no-methods.yaml",
            "openapi: 3.0.3\ninfo:\n  title: t\n  version: '1'\npaths:\n  /x: {}\n",
            "no HTTP methods found under paths",
        ),
        ("ok.md", INTERNAL_CONTRACT, None),
        (
            "no-used-by.md",
            INTERNAL_CONTRACT.split("## Used By")[0],
            "missing '## Used By' section",
        ),
    ],
)
def test_contract_validation(tmp_path: Path, name: str, text: str, error: str | None) -> None:
    result = validate_contract_file(_write(tmp_path, name, text))

    if error is None:
        assert result.ok, result.errors
    else:
        assert any(error in item for item in result.errors)
