"""Domain enums and small value helpers for requests and directives."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum


class RequestStatus(str, Enum):
    """Lifecycle states of a request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_archived(self) -> bool:
        """Terminal states whose record lives in the archive."""

        return self in ARCHIVED_STATUSES


TERMINAL_STATUSES = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.FAILED},
)
# failed requests stay in the inbox so a human sees them
ARCHIVED_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.REJECTED})


class DirectiveStatus(str, Enum):
    """Lifecycle states of a directive."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RequestType(str, Enum):
    """Known request types."""

    API_ADDITION = "api-addition"
    API_CHANGE = "api-change"
    API_DEPRECATION = "api-deprecation"
    INTERFACE_ADDITION = "interface-addition"
    INTERFACE_CHANGE = "interface-change"
    INTERFACE_DEPRECATION = "interface-deprecation"
    BUG_REPORT = "bug-report"
    QUESTION = "question"
    COMMAND = "command"
    OTHER = "other"


class Scope(str, Enum):
    """Boundary crossed by a request."""

    EXTERNAL = "external"
    INTERNAL = "internal"


class Priority(str, Enum):
    """Request priority, highest first in processing order."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DiagnosticCommand(str, Enum):
    """Commands served by the in-process fast path."""

    STATUS = "status"
    SCAN = "scan"
    CHECK_INBOX = "check-inbox"
    VALIDATE = "validate"


class Actor(str, Enum):
    """Who performed a transition."""

    HUMAN = "human"
    AGENT = "agent"
    DAEMON = "daemon"


class ContractStatus(str, Enum):
    """Status annotation carried by contracts."""

    DRAFT = "draft"
    STABLE = "stable"
    PROPOSED = "proposed"
    DEPRECATED = "deprecated"


_PRIORITY_RANK = {
    Priority.CRITICAL.value: 0,
    Priority.HIGH.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 3,
}


def priority_rank(value: str | None) -> int:
    """Sort key for priorities; unknown values sort after `low`."""

    return _PRIORITY_RANK.get(value or "", len(_PRIORITY_RANK))


def is_diagnostic_command(value: str | None) -> bool:
    return value in {item.value for item in DiagnosticCommand}


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def iso_timestamp(moment: datetime | None = None) -> str:
    """Header timestamp format, for example `2026-02-10T14:30:00Z`."""

    value = (moment or utc_now()).astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")
