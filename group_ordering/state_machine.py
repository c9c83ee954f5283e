"""
Group Ordering - Group Order State Machine.

============================================================
PURPOSE
============================================================
Computes the effective lifecycle status of a group order and
guards its stored-status transitions.

STATE MACHINE:

    OPEN ───────────► CLOSED          (leader closes)
      │
      ├─ now > end ─► EXPIRED         (derived, never stored)
      │
      ▼
    SUBMITTED ──────► COMPLETED       (backend accepts)
      ▲    │
      └────┘                          (backend rejects, retriable)

INVARIANTS:
- effective_status is pure; call it right before every decision
- CLOSED never auto-reopens
- SUBMITTED/COMPLETED are never reinterpreted by time
- EXPIRED cannot be finalized

============================================================
"""

import logging
from datetime import datetime
from typing import Optional, Set, Dict, Any, Tuple
from dataclasses import dataclass, field

from .types import GroupOrder, GroupOrderStatus, utcnow


logger = logging.getLogger(__name__)


# ============================================================
# EFFECTIVE STATUS
# ============================================================

def effective_status(order: GroupOrder, now: datetime) -> GroupOrderStatus:
    """
    Compute the effective status from the stored status and time.

    Rules (first match wins):
    1. SUBMITTED / COMPLETED are returned as-is
    2. CLOSED is returned as-is (manual closure is sticky)
    3. OPEN past end_time is EXPIRED
    4. OPEN otherwise
    """
    if order.status.is_frozen():
        return order.status

    if order.status == GroupOrderStatus.CLOSED:
        return GroupOrderStatus.CLOSED

    if order.status == GroupOrderStatus.OPEN and now > order.end_time:
        return GroupOrderStatus.EXPIRED

    return order.status


def can_accept_mutations(order: GroupOrder, now: datetime) -> bool:
    """
    Whether participant orders may be created, edited or deleted.

    Callers must not reimplement the window check.
    """
    return (
        effective_status(order, now) == GroupOrderStatus.OPEN
        and order.start_time <= now <= order.end_time
    )


# ============================================================
# STATE TRANSITION RULES
# ============================================================

# Valid stored-status transitions
VALID_TRANSITIONS: Dict[GroupOrderStatus, Set[GroupOrderStatus]] = {
    GroupOrderStatus.OPEN: {
        GroupOrderStatus.CLOSED,
        GroupOrderStatus.SUBMITTED,
    },
    GroupOrderStatus.SUBMITTED: {
        GroupOrderStatus.COMPLETED,
    },
    # No transitions out
    GroupOrderStatus.CLOSED: set(),
    GroupOrderStatus.COMPLETED: set(),
}

# Effective status the guard requires before each target
REQUIRED_EFFECTIVE_STATUS: Dict[GroupOrderStatus, GroupOrderStatus] = {
    GroupOrderStatus.CLOSED: GroupOrderStatus.OPEN,
    GroupOrderStatus.SUBMITTED: GroupOrderStatus.OPEN,
    GroupOrderStatus.COMPLETED: GroupOrderStatus.SUBMITTED,
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class GroupOrderTransition:
    """Audit record of a stored-status transition."""

    group_order_id: str
    """Group order ID."""

    from_status: GroupOrderStatus
    """Previous stored status."""

    to_status: GroupOrderStatus
    """New stored status."""

    actor_id: Optional[str] = None
    """Who triggered the transition (None for system)."""

    reason: str = ""
    """Reason for transition."""

    timestamp: datetime = field(default_factory=utcnow)
    """When transition occurred."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for group order transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_status: GroupOrderStatus,
        to_status: GroupOrderStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a stored-status transition is in the table.

        Args:
            from_status: Current stored status
            to_status: Target stored status

        Returns:
            Tuple of (allowed, reason)
        """
        if not to_status.is_storable():
            return False, f"{to_status.value} is never stored"

        valid_targets = VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_targets:
            return True, "Valid transition"

        if not valid_targets:
            return False, f"No transitions out of {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def check(
        order: GroupOrder,
        to_status: GroupOrderStatus,
        now: datetime,
    ) -> Tuple[bool, str, GroupOrderStatus]:
        """
        Check a transition against the order's effective status.

        Returns:
            Tuple of (allowed, reason, effective status)
        """
        current = effective_status(order, now)

        allowed, reason = TransitionGuard.can_transition(order.status, to_status)
        if not allowed:
            return False, reason, current

        required = REQUIRED_EFFECTIVE_STATUS.get(to_status)
        if required is not None and current != required:
            return (
                False,
                f"Group order is {current.value}, must be {required.value}",
                current,
            )

        return True, "Valid transition", current


def build_transition(
    order: GroupOrder,
    to_status: GroupOrderStatus,
    actor_id: Optional[str] = None,
    reason: str = "",
    details: Optional[Dict[str, Any]] = None,
) -> GroupOrderTransition:
    """Create an audit event for a transition out of the order's stored status."""
    event = GroupOrderTransition(
        group_order_id=order.id,
        from_status=order.status,
        to_status=to_status,
        actor_id=actor_id,
        reason=reason,
        details=details or {},
    )
    logger.info(
        f"Group order {order.id}: "
        f"{event.from_status.value} -> {event.to_status.value} "
        f"({reason})"
    )
    return event
