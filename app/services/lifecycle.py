"""Request lifecycle rules.

Pure transition planning: given a request type, its current status and a
target, decide whether the move is legal and describe the timeline event
it produces. Persistence lives in ``app.services.requests``.

Return / exchange flow::

    new -> review -> approved -> awaiting_post -> received_dc -> closed
    new -> approved                (quick approval, auto-approval)
    new | review | approved -> rejected

Refund flow::

    new -> pending -> approved -> processing -> completed
    new -> approved
    new | pending -> rejected
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.errors import TransitionError
from app.services.statuses import TERMINAL_STATUSES, RequestStatus, parse_status

S = RequestStatus


class Flow(str, Enum):
    RETURN = "return"
    REFUND = "refund"


REQUEST_TYPES = ("exchange", "return", "refund")

FORWARD: dict[Flow, dict[RequestStatus, tuple[RequestStatus, ...]]] = {
    Flow.RETURN: {
        S.NEW: (S.REVIEW, S.APPROVED, S.REJECTED),
        S.REVIEW: (S.APPROVED, S.REJECTED),
        S.APPROVED: (S.AWAITING_POST, S.REJECTED),
        S.AWAITING_POST: (S.RECEIVED_DC,),
        S.RECEIVED_DC: (S.CLOSED,),
    },
    Flow.REFUND: {
        S.NEW: (S.PENDING, S.APPROVED, S.REJECTED),
        S.PENDING: (S.APPROVED, S.REJECTED),
        S.APPROVED: (S.PROCESSING,),
        S.PROCESSING: (S.COMPLETED,),
    },
}

# One step back along the main path; only reachable through an explicit revert.
REVERT: dict[Flow, dict[RequestStatus, RequestStatus]] = {
    Flow.RETURN: {
        S.REVIEW: S.NEW,
        S.APPROVED: S.REVIEW,
        S.AWAITING_POST: S.APPROVED,
        S.RECEIVED_DC: S.AWAITING_POST,
    },
    Flow.REFUND: {
        S.PENDING: S.NEW,
        S.APPROVED: S.PENDING,
        S.PROCESSING: S.APPROVED,
    },
}

# Entering these hands the decision to an execution collaborator.
EXECUTION_STATUSES = frozenset({S.AWAITING_POST, S.PROCESSING})


@dataclass(frozen=True)
class Transition:
    from_status: Optional[RequestStatus]
    to_status: RequestStatus
    reason: str
    actor: str
    revert: bool = False

    @property
    def triggers_execution(self) -> bool:
        return not self.revert and self.to_status in EXECUTION_STATUSES


def flow_for(request_type: str) -> Flow:
    if request_type == "refund":
        return Flow.REFUND
    if request_type in ("exchange", "return"):
        return Flow.RETURN
    raise ValueError(f"Invalid request type: {request_type}")


def statuses_for(request_type: str) -> set[RequestStatus]:
    flow = flow_for(request_type)
    found = set(FORWARD[flow])
    for targets in FORWARD[flow].values():
        found.update(targets)
    return found


def allowed_targets(request_type: str, current: RequestStatus | str) -> tuple[RequestStatus, ...]:
    return FORWARD[flow_for(request_type)].get(parse_status(current), ())


def next_status(request_type: str, current: RequestStatus | str) -> Optional[RequestStatus]:
    """The next step along the main path, or None at the end of it."""
    for target in allowed_targets(request_type, current):
        if target != S.REJECTED:
            return target
    return None


def revert_target(request_type: str, current: RequestStatus | str) -> Optional[RequestStatus]:
    """The status a revert would return to, or None when reverting is not possible."""
    current = parse_status(current)
    if current in TERMINAL_STATUSES:
        return None
    return REVERT[flow_for(request_type)].get(current)


def creation(initial: RequestStatus, actor: str, reason: str) -> Transition:
    return Transition(from_status=None, to_status=initial, reason=reason, actor=actor)


def plan_transition(
    request_type: str,
    current: RequestStatus | str,
    target: RequestStatus | str,
    *,
    actor: str,
    reason: str = "",
) -> Transition:
    """Validate a forward move and describe its timeline event."""
    flow = flow_for(request_type)
    current = parse_status(current)
    target = parse_status(target)

    if current in TERMINAL_STATUSES:
        raise TransitionError(f"Request is {current.value}; no further transitions are accepted")
    if target not in FORWARD[flow].get(current, ()):
        if REVERT[flow].get(current) == target:
            raise TransitionError(
                f"Moving back from {current.value} to {target.value} requires a revert with a reason"
            )
        raise TransitionError(f"Cannot move {request_type} request from {current.value} to {target.value}")
    return Transition(from_status=current, to_status=target, reason=reason.strip(), actor=actor)


def plan_revert(
    request_type: str,
    current: RequestStatus | str,
    *,
    actor: str,
    reason: str,
) -> Transition:
    """Validate a one-step revert; a non-empty justification is mandatory."""
    flow = flow_for(request_type)
    current = parse_status(current)

    if current in TERMINAL_STATUSES:
        raise TransitionError(f"Request is {current.value}; no further transitions are accepted")
    if not reason or not reason.strip():
        raise TransitionError("A reason is required to revert a request")
    previous = REVERT[flow].get(current)
    if previous is None:
        raise TransitionError(f"Cannot revert {request_type} request from {current.value}")
    return Transition(
        from_status=current,
        to_status=previous,
        reason=reason.strip(),
        actor=actor,
        revert=True,
    )
