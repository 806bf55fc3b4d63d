"""Allocation request lifecycle: permitted transitions and who may make them.

    PENDING   -> APPROVED | REJECTED
    APPROVED  -> SUBMITTED | REJECTED
    SUBMITTED -> ALLOCATED | DUPLICATE
    any active state -> CANCELLED | ARCHIVED

ALLOCATED, DUPLICATE, REJECTED, CANCELLED and ARCHIVED are terminal.
"""

from dataclasses import dataclass
from typing import Optional

from allocation_hub.core.exceptions import AuthorizationError, InvalidTransitionError, ValidationError
from allocation_hub.core.permissions import Actor
from allocation_hub.schemas.enums import TERMINAL_STATUSES, AllocationStatus, Capability

S = AllocationStatus

TRANSITIONS: dict[AllocationStatus, frozenset[AllocationStatus]] = {
    S.PENDING: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED, S.ARCHIVED}),
    S.APPROVED: frozenset({S.SUBMITTED, S.REJECTED, S.CANCELLED, S.ARCHIVED}),
    S.SUBMITTED: frozenset({S.ALLOCATED, S.DUPLICATE, S.CANCELLED, S.ARCHIVED}),
}

REQUIRED_CAPABILITY: dict[AllocationStatus, Capability] = {
    S.APPROVED: Capability.REVIEW,
    S.REJECTED: Capability.REVIEW,
    S.SUBMITTED: Capability.REVIEW,
    S.ALLOCATED: Capability.ALLOCATE,
    S.DUPLICATE: Capability.ALLOCATE,
    S.ARCHIVED: Capability.ADMINISTER,
}


@dataclass(frozen=True)
class TransitionStamp:
    """Columns written alongside the status for a target state."""

    actor_field: str
    timestamp_field: str


STAMPS: dict[AllocationStatus, TransitionStamp] = {
    S.APPROVED: TransitionStamp("approved_by", "approved_at"),
    S.REJECTED: TransitionStamp("rejected_by", "rejected_at"),
    S.SUBMITTED: TransitionStamp("submitted_by", "submitted_at"),
    S.ALLOCATED: TransitionStamp("allocated_by", "allocated_at"),
    S.DUPLICATE: TransitionStamp("marked_duplicate_by", "marked_duplicate_at"),
    S.CANCELLED: TransitionStamp("cancelled_by", "cancelled_at"),
    S.ARCHIVED: TransitionStamp("archived_by", "archived_at"),
}


def is_terminal(status: AllocationStatus) -> bool:
    return AllocationStatus(status) in TERMINAL_STATUSES


def allowed_targets(status: AllocationStatus) -> frozenset[AllocationStatus]:
    return TRANSITIONS.get(AllocationStatus(status), frozenset())


def check_transition(
    current: AllocationStatus,
    target: AllocationStatus,
    actor: Actor,
    requested_by: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> None:
    """Verify a transition against the graph and the actor's capabilities.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from ``current``
        AuthorizationError: If the actor may not perform the transition
        ValidationError: If a rejection has no reason
    """
    current = AllocationStatus(current)
    target = AllocationStatus(target)

    if target not in allowed_targets(current):
        state = "terminal state" if is_terminal(current) else "state"
        raise InvalidTransitionError(
            f"Cannot move allocation request from {state} {current.value} to {target.value}",
            current_status=current.value,
            target_status=target.value,
        )

    if target == S.CANCELLED:
        # Withdrawal belongs to the requester; administrators may also cancel
        if actor.id != requested_by and not actor.can(Capability.ADMINISTER):
            raise AuthorizationError("Only the requester or an administrator may cancel a request")
    else:
        capability = REQUIRED_CAPABILITY[target]
        if not actor.can(capability):
            raise AuthorizationError(
                f"Moving a request to {target.value} requires the '{capability.value}' capability"
            )

    if target == S.REJECTED and not (rejection_reason or "").strip():
        raise ValidationError("A rejection reason is required", code="REJECTION_REASON_REQUIRED")
