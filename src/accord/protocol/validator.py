"""Structural checks for request, directive and contract files."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from accord.protocol.document import RequestFormatError, has_section, read_document
from accord.protocol.models import (
    DiagnosticCommand,
    DirectiveStatus,
    Priority,
    RequestStatus,
    RequestType,
    Scope,
)
from accord.protocol.records import REQUIRED_DIRECTIVE_FIELDS, REQUIRED_REQUEST_FIELDS

_REQUEST_ID = re.compile(r"^req-[0-9]+-[a-z0-9-]+$")
_DIRECTIVE_ID = re.compile(r"^dir-[0-9]+-[a-z0-9-]+$")
_HTTP_METHODS = {"get", "put", "post", "delete", "options", "head", "patch", "trace"}
_INTERNAL_FIELDS = ("id", "module", "language", "type", "status")


@dataclass(slots=True)
class ValidationResult:
    """Errors make a file invalid; warnings are informational."""

    path: Path
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def describe(self) -> str:
        if self.ok and not self.warnings:
            return "PASS"
        parts = [*self.errors, *(f"warning: {item}" for item in self.warnings)]
        return f"{'PASS' if self.ok else 'FAIL'} ({'; '.join(parts)})"


def _values(enum_cls) -> set[str]:
    return {item.value for item in enum_cls}


def validate_request_file(path: Path) -> ValidationResult:
    result = ValidationResult(path=path)
    try:
        document = read_document(path)
    except RequestFormatError as error:
        result.errors.append(str(error).removeprefix(f"{path}: "))
        return result
    header, body = document.header, document.body

    for key in REQUIRED_REQUEST_FIELDS:
        if header.get(key) in (None, ""):
            result.errors.append(f"missing required field: {key}")

    request_id = str(header.get("id") or "")
    if request_id and not _REQUEST_ID.match(request_id):
        result.warnings.append(f"id {request_id!r} does not match req-NNN-description")
    _check_choice(result, header, "scope", _values(Scope))
    _check_choice(result, header, "status", _values(RequestStatus))
    _check_choice(result, header, "priority", _values(Priority))

    request_type = header.get("type")
    if request_type and str(request_type) not in _values(RequestType):
        result.warnings.append(f"non-standard request type: {request_type}")
    if str(request_type) == RequestType.COMMAND.value:
        command = header.get("command")
        if not command:
            result.errors.append("type: command requires a `command` field")
        elif str(command) not in _values(DiagnosticCommand):
            result.warnings.append(f"non-standard command: {command}")

    if not has_section(body, "What"):
        result.errors.append("missing '## What' section")
    if str(request_type) != RequestType.COMMAND.value:
        for title in ("Proposed Change", "Why"):
            if not has_section(body, title):
                result.warnings.append(f"missing '## {title}' section")
    if str(header.get("status")) == RequestStatus.REJECTED.value and not has_section(
        body,
        "Rejection Reason",
    ):
        result.errors.append("rejected request missing '## Rejection Reason' section")
    return result


def validate_directive_file(path: Path) -> ValidationResult:
    result = ValidationResult(path=path)
    try:
        document = read_document(path)
    except RequestFormatError as error:
        result.errors.append(str(error).removeprefix(f"{path}: "))
        return result
    header, body = document.header, document.body

    for key in REQUIRED_DIRECTIVE_FIELDS:
        if header.get(key) in (None, ""):
            result.errors.append(f"missing required field: {key}")
    directive_id = str(header.get("id") or "")
    if directive_id and not _DIRECTIVE_ID.match(directive_id):
        result.warnings.append(f"id {directive_id!r} does not match dir-NNN-description")
    _check_choice(result, header, "status", _values(DirectiveStatus))
    _check_choice(result, header, "priority", _values(Priority))
    if not has_section(body, "Requirement"):
        result.errors.append("missing '## Requirement' section")
    for title in ("Acceptance Criteria", "Decomposition"):
        if not has_section(body, title):
            result.warnings.append(f"missing '## {title}' section")
    if str(header.get("status")) == DirectiveStatus.FAILED.value and not has_section(
        body,
        "Failure Reason",
    ):
        result.warnings.append("failed directive missing '## Failure Reason' section")
    return result


def validate_external_contract(path: Path) -> ValidationResult:
    """OpenAPI-shaped contract: `openapi`, `info.title/version`, operations."""

    result = ValidationResult(path=path)
    try:
        data = yaml.safe_load(path.read_text("utf-8"))
    except yaml.YAMLError as error:
        result.errors.append(f"invalid YAML: {error}")
        return result
    if not isinstance(data, dict):
        result.errors.append("contract must be a YAML mapping")
        return result
    if "openapi" not in data:
        result.errors.append("missing 'openapi' top-level key")
    info = data.get("info") if isinstance(data.get("info"), dict) else {}
    if not info.get("title"):
        result.errors.append("missing 'info.title'")
    if not info.get("version"):
        result.errors.append("missing 'info.version'")
    paths = data.get("paths")
    if not isinstance(paths, dict):
        result.errors.append("missing 'paths' section")
    elif not any(
        isinstance(operations, dict) and _HTTP_METHODS.intersection(operations)
        for operations in paths.values()
    ):
        result.errors.append("no HTTP methods found under paths")
    return result


def validate_internal_contract(path: Path) -> ValidationResult:
    """Markdown interface description with header and fixed sections."""

    result = ValidationResult(path=path)
    try:
        document = read_document(path)
    except RequestFormatError as error:
        result.errors.append(str(error).removeprefix(f"{path}: "))
        return result
    for key in _INTERNAL_FIELDS:
        if document.header.get(key) in (None, ""):
            result.errors.append(f"missing required field: {key}")
    if not has_section(document.body, "Interface"):
        result.errors.append("missing '## Interface' section")
    elif "```" not in document.body:
        result.errors.append("no code block found in Interface section")
    for title in ("Behavioral Contract", "Used By"):
        if not has_section(document.body, title):
            result.errors.append(f"missing '## {title}' section")
    return result


def validate_contract_file(path: Path) -> ValidationResult:
    if path.suffix in {".yaml", ".yml"}:
        return validate_external_contract(path)
    return validate_internal_contract(path)


def _check_choice(
    result: ValidationResult,
    header: dict[str, object],
    key: str,
    allowed: set[str],
) -> None:
    value = header.get(key)
    if value in (None, ""):
        return
    if str(value) not in allowed:
        result.errors.append(f"invalid {key}: {value}")
