"""Task prompt handed to the external worker."""

from __future__ import annotations

from accord.config import AccordLayout
from accord.protocol.contracts import load_registry, resolve_contract_path
from accord.protocol.records import Request

_INSTRUCTIONS = """\
## Instructions

1. Implement the requested change in this repository.
2. If the request names a related contract, update that contract file to match.
3. Do NOT edit the request's `status` or `attempts`, and do NOT move the request
   file. The daemon records the outcome from your exit code.
4. Exit with status 0 only when the change is done; exit non-zero otherwise.
5. Do not push; the daemon synchronizes after processing.
"""


def build_worker_prompt(*, request: Request, service: str, layout: AccordLayout) -> str:
    """Assemble the worker prompt for one request."""

    request_file = request.path or layout.inbox_dir(request.to) / request.filename
    sections: list[str] = [
        f'You are the Accord worker for the "{service}" service.',
        f"Your working directory is: {layout.target_dir}",
        "",
        "## Request to Process",
        "",
        f"**File**: {request_file}",
        f"**ID**: {request.id}",
        f"**From**: {request.from_}",
        f"**To**: {request.to}",
        f"**Type**: {request.type}",
        f"**Scope**: {request.scope}",
        f"**Priority**: {request.priority}",
    ]
    if request.attempts:
        sections.append(f"**Previous failed attempts**: {request.attempts}")
    sections += ["", request.body.strip(), ""]

    relevant = {service, request.to}
    registry = [entry for entry in load_registry(layout.registry_dir) if entry.name in relevant]
    if registry:
        sections += ["## Service Registry", ""]
        for entry in registry:
            sections.append(entry.path.read_text("utf-8").strip())
            sections.append("")

    if request.related_contract:
        contract_path = resolve_contract_path(layout, request.related_contract)
        sections += ["## Related Contract", "", f"File: {contract_path}", ""]
        if contract_path.is_file():
            sections += [contract_path.read_text("utf-8").strip(), ""]
        else:
            sections += ["(The contract file does not exist yet; create it.)", ""]

    sections.append(_INSTRUCTIONS)
    return "\n".join(sections)
