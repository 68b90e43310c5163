"""Contract and registry files: status annotations, scaffold detection, fingerprints."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from accord.config import AccordLayout
from accord.protocol.document import RequestFormatError, read_document

logger = logging.getLogger(__name__)

TEMPLATE_MARKERS = (
    "# Accord External Contract Template",
    "# Accord Internal Contract Template",
    "# Accord Registry Template",
)
_PLACEHOLDER = re.compile(r"\{\{\s*[A-Za-z0-9_.-]+\s*\}\}")
_REQUEST_REF = "x-accord-request"


def is_scaffold(path: Path) -> bool:
    """Whether `path` is still an untouched template the scaffolder wrote."""

    try:
        text = path.read_text("utf-8")
    except FileNotFoundError:
        return False
    first_line = text.lstrip("\ufeff").split("\n", 1)[0].strip()
    if first_line in TEMPLATE_MARKERS:
        return True
    return _PLACEHOLDER.search(text) is not None


def contract_fingerprint(path: Path) -> str | None:
    """sha256 of the file content, `None` when the file does not exist."""

    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return None


@dataclass(slots=True)
class ContractInfo:
    """Summary of one contract file for reports."""

    name: str
    path: Path
    scope: str
    status: str | None
    pending_request: str | None
    scaffold: bool


def read_contract_info(path: Path, *, scope: str) -> ContractInfo:
    status: str | None = None
    pending_request: str | None = None
    if path.suffix in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(path.read_text("utf-8"))
        except yaml.YAMLError:
            data = None
        if isinstance(data, dict):
            info = data.get("info")
            if isinstance(info, dict) and info.get("x-accord-status"):
                status = str(info["x-accord-status"])
            pending_request = _find_request_ref(data)
    else:
        try:
            header = read_document(path).header
        except RequestFormatError:
            header = {}
        if header.get("status"):
            status = str(header["status"])
        if header.get(_REQUEST_REF):
            pending_request = str(header[_REQUEST_REF])
    return ContractInfo(
        name=path.stem,
        path=path,
        scope=scope,
        status=status,
        pending_request=pending_request,
        scaffold=is_scaffold(path),
    )


def _find_request_ref(node: object) -> str | None:
    if isinstance(node, dict):
        if node.get(_REQUEST_REF):
            return str(node[_REQUEST_REF])
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = _find_request_ref(child)
        if found:
            return found
    return None


def list_contracts(contracts_dir: Path) -> list[ContractInfo]:
    """External contracts (`*.yaml`) then internal ones (`internal/**/*.md`)."""

    contracts: list[ContractInfo] = []
    if contracts_dir.is_dir():
        for path in sorted(contracts_dir.glob("*.yaml")):
            contracts.append(read_contract_info(path, scope="external"))
        internal = contracts_dir / "internal"
        if internal.is_dir():
            for path in sorted(internal.rglob("*.md")):
                contracts.append(read_contract_info(path, scope="internal"))
    return contracts


@dataclass(slots=True)
class RegistryEntry:
    """Read-only descriptor of one service or module."""

    name: str
    type: str | None
    directory: str | None
    language: str | None
    contract: str | None
    path: Path


def load_registry(registry_dir: Path) -> list[RegistryEntry]:
    entries: list[RegistryEntry] = []
    if not registry_dir.is_dir():
        return entries
    for path in sorted(registry_dir.glob("*.md")):
        try:
            header = read_document(path).header
        except RequestFormatError as error:
            logger.warning("Skipping registry entry without header: %s", error)
            continue
        entries.append(
            RegistryEntry(
                name=str(header.get("name") or path.stem),
                type=_str_or_none(header.get("type")),
                directory=_str_or_none(header.get("directory")),
                language=_str_or_none(header.get("language")),
                contract=_str_or_none(header.get("contract")),
                path=path,
            ),
        )
    return entries


def _str_or_none(value: object) -> str | None:
    return str(value) if value not in (None, "") else None


def resolve_contract_path(layout: AccordLayout, related_contract: str) -> Path:
    """Locate `related_contract`: relative to the repository, then to the state directory."""

    candidate = Path(related_contract)
    if candidate.is_absolute():
        return candidate
    for base in (layout.target_dir, layout.state_dir):
        if (base / candidate).exists():
            return base / candidate
    return layout.target_dir / candidate
