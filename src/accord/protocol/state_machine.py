"""Legal request transitions and the authority rules around them.

All functions mutate the in-memory `Request` and return a `Transition`
describing what happened; persisting the record, moving it to the archive and
writing history is the caller's job. Nothing here touches the filesystem.

    pending --approve--> approved --start--> in-progress --complete--> completed
    pending --reject--> rejected
    in-progress --revert / failed attempt--> pending
    in-progress --failed attempt (attempts == max)--> failed
    pending | in-progress --withdraw--> [deleted]
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from accord.protocol.document import append_section, has_section
from accord.protocol.models import Actor, RequestStatus, iso_timestamp
from accord.protocol.records import Request

DELETED = "deleted"

_ALLOWED: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.IN_PROGRESS},
    ),
    RequestStatus.APPROVED: frozenset({RequestStatus.IN_PROGRESS}),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.PENDING, RequestStatus.FAILED},
    ),
}


class TransitionError(ValueError):
    """Illegal transition or violated transition invariant."""


@dataclass(slots=True, frozen=True)
class Transition:
    """One applied status change, ready to be written to history."""

    request_id: str
    from_status: str
    to_status: str
    actor: str
    directive_id: str | None = None
    detail: str | None = None

    @property
    def requires_archive(self) -> bool:
        return self.to_status in {status.value for status in RequestStatus if status.is_archived}


def _apply(
    request: Request,
    target: RequestStatus,
    *,
    actor: str,
    now: datetime | None,
    detail: str | None = None,
) -> Transition:
    if target not in _ALLOWED.get(request.status, frozenset()):
        raise TransitionError(
            f"{request.id}: illegal transition {request.status.value} -> {target.value}",
        )
    previous = request.status
    request.status = target
    request.updated = iso_timestamp(now)
    request.awaiting_retry = False
    return Transition(
        request_id=request.id,
        from_status=previous.value,
        to_status=target.value,
        actor=actor,
        directive_id=request.directive,
        detail=detail,
    )


def _require_reviewer(actor: str, action: str) -> None:
    if actor == Actor.DAEMON.value:
        raise TransitionError(f"the daemon may not {action} requests; a reviewer must")


def approve(request: Request, *, actor: str, now: datetime | None = None) -> Transition:
    """pending -> approved, by a human or authorized agent."""

    _require_reviewer(actor, "approve")
    return _apply(request, RequestStatus.APPROVED, actor=actor, now=now)


def reject(
    request: Request,
    *,
    actor: str,
    reason: str | None,
    now: datetime | None = None,
) -> Transition:
    """pending -> rejected; the body must end up with a Rejection Reason."""

    _require_reviewer(actor, "reject")
    reason_text = (reason or "").strip()
    if not reason_text and not has_section(request.body, "Rejection Reason"):
        raise TransitionError(f"{request.id}: rejecting requires a reason")
    transition = _apply(
        request,
        RequestStatus.REJECTED,
        actor=actor,
        now=now,
        detail=reason_text or None,
    )
    if reason_text:
        request.body = append_section(request.body, "Rejection Reason", reason_text)
    return transition


def start(request: Request, *, actor: str, now: datetime | None = None) -> Transition:
    """Claim a request for processing.

    `approved` requests may always start. A `pending` request may start only
    when it is a diagnostic command (no approval gate) or was put back by
    the daemon itself (`awaiting_retry`) after approved work failed.
    """

    if request.status is RequestStatus.PENDING and not (
        request.is_diagnostic or request.awaiting_retry
    ):
        raise TransitionError(f"{request.id}: request must be approved before work starts")
    return _apply(request, RequestStatus.IN_PROGRESS, actor=actor, now=now)


def complete(
    request: Request,
    *,
    actor: str,
    contract_updated: bool,
    result: str | None = None,
    now: datetime | None = None,
) -> Transition:
    """in-progress -> completed; the caller must archive the record.

    When the request names a related contract, completing without a change
    to that contract is rejected.
    """

    if request.related_contract and not contract_updated:
        raise TransitionError(
            f"{request.id}: related contract {request.related_contract} was not updated",
        )
    transition = _apply(request, RequestStatus.COMPLETED, actor=actor, now=now)
    if result:
        request.body = append_section(request.body, "Result", result)
    return transition


def revert(
    request: Request,
    *,
    actor: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Transition:
    """in-progress -> pending; attempts untouched.

    A reviewer's revert (requirements changed) needs a fresh approval. A
    daemon revert (interrupted worker) keeps the earlier approval.
    """

    transition = _apply(request, RequestStatus.PENDING, actor=actor, now=now, detail=reason)
    request.awaiting_retry = actor == Actor.DAEMON.value
    return transition


def record_failed_attempt(
    request: Request,
    *,
    max_attempts: int,
    reason: str,
    actor: str = Actor.DAEMON.value,
    now: datetime | None = None,
) -> Transition:
    """Count one failed or timed-out attempt.

    The request goes back to `pending` until `attempts` reaches
    `max_attempts`, then to `failed`.
    """

    if request.status is not RequestStatus.IN_PROGRESS:
        raise TransitionError(
            f"{request.id}: only in-progress requests can fail an attempt "
            f"(status is {request.status.value})",
        )
    request.attempts += 1
    detail = f"attempt {request.attempts}/{max_attempts}: {reason}"
    if request.attempts >= max_attempts:
        return _apply(request, RequestStatus.FAILED, actor=actor, now=now, detail=detail)
    transition = _apply(request, RequestStatus.PENDING, actor=actor, now=now, detail=detail)
    request.awaiting_retry = True
    return transition


def withdraw(request: Request, *, actor: str) -> Transition:
    """pending | in-progress -> [deleted]; the caller removes the file."""

    if request.status not in {RequestStatus.PENDING, RequestStatus.IN_PROGRESS}:
        raise TransitionError(
            f"{request.id}: only pending or in-progress requests can be withdrawn",
        )
    return Transition(
        request_id=request.id,
        from_status=request.status.value,
        to_status=DELETED,
        actor=actor,
        directive_id=request.directive,
    )
