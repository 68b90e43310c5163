"""Typed request and directive records on top of the document codec."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from accord.protocol.document import (
    Document,
    RequestFormatError,
    parse_document,
    render_document,
    section_text,
)
from accord.protocol.models import (
    DirectiveStatus,
    RequestStatus,
    RequestType,
    is_diagnostic_command,
    priority_rank,
)

REQUIRED_REQUEST_FIELDS = (
    "id",
    "from",
    "to",
    "scope",
    "type",
    "priority",
    "status",
    "created",
    "updated",
)
REQUIRED_DIRECTIVE_FIELDS = ("id", "title", "priority", "status", "created", "updated")

# (attribute, header key) in canonical order; used when a key is new to the file
_REQUEST_FIELDS = (
    ("id", "id"),
    ("from_", "from"),
    ("to", "to"),
    ("scope", "scope"),
    ("type", "type"),
    ("priority", "priority"),
    ("status", "status"),
    ("created", "created"),
    ("updated", "updated"),
    ("related_contract", "related_contract"),
    ("command", "command"),
    ("command_args", "command_args"),
    ("directive", "directive"),
    ("originated_from", "originated_from"),
    ("routed_by", "routed_by"),
    ("on_behalf_of", "on_behalf_of"),
    ("attempts", "attempts"),
    ("awaiting_retry", "awaiting_retry"),
)
_DIRECTIVE_FIELDS = (
    ("id", "id"),
    ("title", "title"),
    ("priority", "priority"),
    ("status", "status"),
    ("created", "created"),
    ("updated", "updated"),
    ("requests", "requests"),
)
# flags that disappear from the header once cleared
_OMITTED_WHEN_UNSET = frozenset({"awaiting_retry"})


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _build_header(
    record: object,
    fields: tuple[tuple[str, str], ...],
    order: list[str],
    extra: dict[str, object],
) -> dict[str, object]:
    known = {key: attribute for attribute, key in fields}
    values: dict[str, object] = {}
    for attribute, key in fields:
        value = getattr(record, attribute)
        if hasattr(value, "value"):
            value = value.value
        values[key] = value

    header: dict[str, object] = {}
    for key in order:
        if key in _OMITTED_WHEN_UNSET and not values.get(key):
            continue
        if key in known:
            header[key] = values[key]
        elif key in extra:
            header[key] = extra[key]
    for _, key in fields:
        if key in header or not _is_set(key, values[key]):
            continue
        header[key] = values[key]
    for key, value in extra.items():
        header.setdefault(key, value)
    return header


def _is_set(key: str, value: object) -> bool:
    if key in {"attempts", *_OMITTED_WHEN_UNSET}:
        return bool(value)
    return value is not None


@dataclass(slots=True)
class Request:
    """One request record; `path` is where it was loaded from, if anywhere."""

    id: str
    from_: str
    to: str
    scope: str
    type: str
    priority: str
    status: RequestStatus
    created: str
    updated: str
    related_contract: str | None = None
    command: str | None = None
    command_args: object = None
    directive: str | None = None
    originated_from: str | None = None
    routed_by: str | None = None
    on_behalf_of: str | None = None
    attempts: int = 0
    awaiting_retry: bool = False
    body: str = ""
    extra: dict[str, object] = field(default_factory=dict)
    field_order: list[str] = field(default_factory=list)
    path: Path | None = None

    @classmethod
    def from_document(cls, document: Document, *, path: Path | None = None) -> Request:
        header = document.header
        missing = [
            key for key in REQUIRED_REQUEST_FIELDS if _optional_str(header.get(key)) is None
        ]
        if missing:
            raise RequestFormatError(
                f"missing required header field(s): {', '.join(missing)}",
                path=path,
            )
        try:
            status = RequestStatus(str(header["status"]))
        except ValueError as error:
            raise RequestFormatError(f"invalid status: {header['status']!r}", path=path) from error
        try:
            attempts = int(header.get("attempts") or 0)
        except (TypeError, ValueError) as error:
            raise RequestFormatError(
                f"invalid attempts: {header.get('attempts')!r}",
                path=path,
            ) from error

        known_keys = {key for _, key in _REQUEST_FIELDS}
        return cls(
            id=str(header["id"]),
            from_=str(header["from"]),
            to=str(header["to"]),
            scope=str(header["scope"]),
            type=str(header["type"]),
            priority=str(header["priority"]),
            status=status,
            created=str(header["created"]),
            updated=str(header["updated"]),
            related_contract=_optional_str(header.get("related_contract")),
            command=_optional_str(header.get("command")),
            command_args=header.get("command_args"),
            directive=_optional_str(header.get("directive")),
            originated_from=_optional_str(header.get("originated_from")),
            routed_by=_optional_str(header.get("routed_by")),
            on_behalf_of=_optional_str(header.get("on_behalf_of")),
            attempts=attempts,
            awaiting_retry=header.get("awaiting_retry") is True,
            body=document.body,
            extra={key: value for key, value in header.items() if key not in known_keys},
            field_order=list(header),
            path=path,
        )

    @classmethod
    def from_text(cls, text: str, *, path: Path | None = None) -> Request:
        return cls.from_document(parse_document(text, source=path), path=path)

    @classmethod
    def load(cls, path: Path) -> Request:
        return cls.from_text(path.read_text("utf-8"), path=path)

    def to_document(self) -> Document:
        return Document(
            header=_build_header(self, _REQUEST_FIELDS, self.field_order, self.extra),
            body=self.body,
        )

    def to_text(self) -> str:
        return render_document(self.to_document())

    @property
    def filename(self) -> str:
        return f"{self.id}.md"

    @property
    def is_command(self) -> bool:
        return self.type == RequestType.COMMAND.value

    @property
    def is_diagnostic(self) -> bool:
        """Command requests served by the in-process fast path."""

        return self.is_command and is_diagnostic_command(self.command)

    @property
    def summary(self) -> str:
        what = section_text(self.body, "What") or ""
        first_line = next((line.strip() for line in what.splitlines() if line.strip()), "")
        return first_line or self.type

    def sort_key(self) -> tuple[int, str, str]:
        return (priority_rank(self.priority), self.created, self.filename)


@dataclass(slots=True)
class Directive:
    """Orchestrator-level requirement decomposed into requests."""

    id: str
    title: str
    priority: str
    status: DirectiveStatus
    created: str
    updated: str
    requests: list[str] = field(default_factory=list)
    body: str = ""
    extra: dict[str, object] = field(default_factory=dict)
    field_order: list[str] = field(default_factory=list)
    path: Path | None = None

    @classmethod
    def from_text(cls, text: str, *, path: Path | None = None) -> Directive:
        document = parse_document(text, source=path)
        header = document.header
        missing = [
            key for key in REQUIRED_DIRECTIVE_FIELDS if _optional_str(header.get(key)) is None
        ]
        if missing:
            raise RequestFormatError(
                f"missing required header field(s): {', '.join(missing)}",
                path=path,
            )
        try:
            status = DirectiveStatus(str(header["status"]))
        except ValueError as error:
            raise RequestFormatError(f"invalid status: {header['status']!r}", path=path) from error
        raw_requests = header.get("requests") or []
        if isinstance(raw_requests, str):
            raw_requests = [raw_requests]
        if not isinstance(raw_requests, list):
            raise RequestFormatError("requests must be a list of request ids", path=path)

        known_keys = {key for _, key in _DIRECTIVE_FIELDS}
        return cls(
            id=str(header["id"]),
            title=str(header["title"]),
            priority=str(header["priority"]),
            status=status,
            created=str(header["created"]),
            updated=str(header["updated"]),
            requests=[str(item) for item in raw_requests],
            body=document.body,
            extra={key: value for key, value in header.items() if key not in known_keys},
            field_order=list(header),
            path=path,
        )

    @classmethod
    def load(cls, path: Path) -> Directive:
        return cls.from_text(path.read_text("utf-8"), path=path)

    def to_text(self) -> str:
        return render_document(
            Document(
                header=_build_header(self, _DIRECTIVE_FIELDS, self.field_order, self.extra),
                body=self.body,
            ),
        )
