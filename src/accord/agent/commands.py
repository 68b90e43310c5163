"""Diagnostic command requests answered in-process, without a worker."""

from __future__ import annotations

import logging
from pathlib import Path

from accord.config import AccordLayout
from accord.protocol.contracts import list_contracts
from accord.protocol.document import RequestFormatError, read_document
from accord.protocol.models import DiagnosticCommand
from accord.protocol.store import REQUEST_GLOB
from accord.protocol.validator import validate_contract_file, validate_request_file

logger = logging.getLogger(__name__)


def run_diagnostic(command: str, *, layout: AccordLayout, project_name: str) -> str:
    """Markdown report for one diagnostic command."""

    try:
        kind = DiagnosticCommand(command)
    except ValueError as error:
        allowed = ", ".join(item.value for item in DiagnosticCommand)
        raise ValueError(f"Unknown command {command!r}. Valid commands: {allowed}") from error

    logger.debug("Running diagnostic %s in %s", kind.value, layout.state_dir)
    if kind is DiagnosticCommand.STATUS:
        return status_report(layout, project_name=project_name)
    if kind is DiagnosticCommand.SCAN:
        return scan_report(layout)
    if kind is DiagnosticCommand.CHECK_INBOX:
        return inbox_report(layout)
    return validate_report(layout)


def _inbox_files(layout: AccordLayout) -> list[tuple[str, Path]]:
    if not layout.inbox_root.is_dir():
        return []
    files: list[tuple[str, Path]] = []
    for inbox in sorted(path for path in layout.inbox_root.iterdir() if path.is_dir()):
        files.extend((inbox.name, path) for path in sorted(inbox.glob(REQUEST_GLOB)))
    return files


def status_report(layout: AccordLayout, *, project_name: str) -> str:
    contracts = list_contracts(layout.contracts_dir)
    external = sum(1 for contract in contracts if contract.scope == "external")
    archived = (
        len(list(layout.archive_dir.glob(REQUEST_GLOB))) if layout.archive_dir.is_dir() else 0
    )
    return "\n".join(
        [
            "## Status Report",
            "",
            f"**Project**: {project_name}",
            f"**Contracts**: {external} external, {len(contracts) - external} internal",
            f"**Inbox items**: {len(_inbox_files(layout))}",
            f"**Archived**: {archived}",
        ],
    )


def scan_report(layout: AccordLayout) -> str:
    lines = ["## Scan Results", ""]
    contracts = list_contracts(layout.contracts_dir)
    if not contracts:
        lines.append("No contracts found.")
    for contract in contracts:
        relative = contract.path.relative_to(layout.contracts_dir).as_posix()
        result = validate_contract_file(contract.path)
        annotation = contract.status or "no status"
        if contract.pending_request:
            annotation += f", pending {contract.pending_request}"
        if contract.scaffold:
            annotation += ", scaffold"
        lines.append(f"- {relative} [{annotation}]: {result.describe()}")
    return "\n".join(lines)


def inbox_report(layout: AccordLayout) -> str:
    if not layout.inbox_root.is_dir():
        return "No inbox directory found."
    lines = [
        "## Inbox",
        "",
        "| Service | File | Status | Priority | Type |",
        "|---------|------|--------|----------|------|",
    ]
    for inbox, path in _inbox_files(layout):
        try:
            header = read_document(path).header
        except RequestFormatError:
            header = {}
        lines.append(
            f"| {inbox} | {path.name} | {header.get('status') or '?'} "
            f"| {header.get('priority') or '?'} | {header.get('type') or '?'} |",
        )
    return "\n".join(lines)


def validate_report(layout: AccordLayout) -> str:
    lines = ["## Validation Results", ""]
    files = _inbox_files(layout)
    if not files:
        lines.append("No requests to validate.")
    for inbox, path in files:
        lines.append(f"- {inbox}/{path.name}: {validate_request_file(path).describe()}")
    return "\n".join(lines)
