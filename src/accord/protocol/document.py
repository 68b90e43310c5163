"""Header + body document codec used by request, directive and contract files.

A document is a YAML mapping between two `---` lines followed by a free-form
markdown body. Parsing keeps header key order and the body text byte-for-byte,
so a parse-modify-render cycle only touches the fields that were changed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"
_DELIMITER = "---"


class RequestFormatError(ValueError):
    """Malformed header or body in a request/directive file."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(f"{path}: {message}" if path is not None else message)
        self.path = path


class _HeaderLoader(yaml.SafeLoader):
    pass


class _HeaderDumper(yaml.SafeDumper):
    pass


def _without_timestamps(resolvers: dict) -> dict:
    return {
        key: [(tag, regexp) for tag, regexp in entries if tag != _TIMESTAMP_TAG]
        for key, entries in resolvers.items()
    }


# Timestamps stay plain strings in both directions.
_HeaderLoader.yaml_implicit_resolvers = _without_timestamps(
    yaml.SafeLoader.yaml_implicit_resolvers,
)
_HeaderDumper.yaml_implicit_resolvers = _without_timestamps(
    yaml.SafeDumper.yaml_implicit_resolvers,
)


def _represent_none(dumper: yaml.SafeDumper, _: None) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:null", "")


_HeaderDumper.add_representer(type(None), _represent_none)


@dataclass(slots=True)
class Document:
    """Parsed header mapping plus verbatim body."""

    header: dict[str, object] = field(default_factory=dict)
    body: str = ""


def parse_document(text: str, *, source: Path | None = None) -> Document:
    """Split `text` into header mapping and body."""

    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != _DELIMITER:
        raise RequestFormatError("missing header (no opening ---)", path=source)

    closing_index = None
    for index in range(1, len(lines)):
        if lines[index].strip() == _DELIMITER:
            closing_index = index
            break
    if closing_index is None:
        raise RequestFormatError("unterminated header (no closing ---)", path=source)

    header_text = "".join(lines[1:closing_index])
    try:
        header = yaml.load(header_text, Loader=_HeaderLoader)  # noqa: S506
    except yaml.YAMLError as error:
        raise RequestFormatError(f"invalid header YAML: {error}", path=source) from error
    if header is None:
        header = {}
    if not isinstance(header, dict):
        raise RequestFormatError("header must be a mapping", path=source)

    return Document(
        header={str(key): value for key, value in header.items()},
        body="".join(lines[closing_index + 1 :]),
    )


def render_document(document: Document) -> str:
    """Serialize a document back to text."""

    header_text = ""
    if document.header:
        header_text = yaml.dump(
            dict(document.header),
            Dumper=_HeaderDumper,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            width=4096,
        )
    return f"{_DELIMITER}\n{header_text}{_DELIMITER}\n{document.body}"


def read_document(path: Path) -> Document:
    return parse_document(path.read_text("utf-8"), source=path)


def _section_pattern(title: str) -> re.Pattern[str]:
    return re.compile(rf"^##[ \t]+{re.escape(title)}[ \t]*$", re.MULTILINE)


def has_section(body: str, title: str) -> bool:
    """Whether the body has a `## <title>` heading."""

    return _section_pattern(title).search(body) is not None


def section_text(body: str, title: str) -> str | None:
    """Text under `## <title>` up to the next level-2 heading."""

    match = _section_pattern(title).search(body)
    if match is None:
        return None
    rest = body[match.end() :]
    next_heading = re.search(r"^##[ \t]", rest, re.MULTILINE)
    if next_heading is not None:
        rest = rest[: next_heading.start()]
    return rest.strip()


def append_section(body: str, title: str, content: str) -> str:
    """Append a `## <title>` section; existing text is left untouched."""

    base = body.rstrip("\n")
    section = f"## {title}\n\n{content.strip()}\n"
    if not base:
        return f"\n{section}"
    return f"{base}\n\n{section}"
