"""
Group Order State Machine Tests.

============================================================
PURPOSE
============================================================
Effective status derivation and transition guard.

============================================================
"""

from datetime import datetime, timedelta

import pytest

from group_ordering import (
    GroupOrder,
    GroupOrderStatus,
    TransitionGuard,
    VALID_TRANSITIONS,
    can_accept_mutations,
    effective_status,
)
from group_ordering.state_machine import build_transition


START = datetime(2026, 3, 2, 11, 0, 0)
END = START + timedelta(hours=1)


def make_order(status: GroupOrderStatus = GroupOrderStatus.OPEN) -> GroupOrder:
    return GroupOrder(leader_id="leader", start_time=START, end_time=END, status=status)


# ============================================================
# EFFECTIVE STATUS
# ============================================================

class TestEffectiveStatus:
    """Tests for effective_status."""

    def test_open_inside_window(self):
        assert effective_status(make_order(), START + timedelta(minutes=10)) == GroupOrderStatus.OPEN

    def test_open_at_end_boundary_is_open(self):
        assert effective_status(make_order(), END) == GroupOrderStatus.OPEN

    def test_open_after_end_is_expired(self):
        order = make_order()
        assert effective_status(order, END + timedelta(seconds=1)) == GroupOrderStatus.EXPIRED
        # Derived only
        assert order.status == GroupOrderStatus.OPEN

    def test_open_before_start_is_open(self):
        assert effective_status(make_order(), START - timedelta(hours=1)) == GroupOrderStatus.OPEN

    @pytest.mark.parametrize("status", [
        GroupOrderStatus.CLOSED,
        GroupOrderStatus.SUBMITTED,
        GroupOrderStatus.COMPLETED,
    ])
    def test_stored_statuses_are_stable_over_time(self, status):
        order = make_order(status)
        for now in (START - timedelta(days=1), START, END, END + timedelta(days=30)):
            assert effective_status(order, now) == status


class TestCanAcceptMutations:
    """Tests for can_accept_mutations."""

    def test_inside_window(self):
        assert can_accept_mutations(make_order(), START + timedelta(minutes=5))

    def test_window_edges_inclusive(self):
        order = make_order()
        assert can_accept_mutations(order, START)
        assert can_accept_mutations(order, END)

    def test_before_start(self):
        assert not can_accept_mutations(make_order(), START - timedelta(seconds=1))

    def test_expired(self):
        assert not can_accept_mutations(make_order(), END + timedelta(seconds=1))

    @pytest.mark.parametrize("status", [
        GroupOrderStatus.CLOSED,
        GroupOrderStatus.SUBMITTED,
        GroupOrderStatus.COMPLETED,
    ])
    def test_non_open_statuses(self, status):
        assert not can_accept_mutations(make_order(status), START + timedelta(minutes=5))


# ============================================================
# TRANSITION GUARD
# ============================================================

class TestTransitionGuard:
    """Tests for TransitionGuard."""

    def test_table_has_only_four_transitions(self):
        pairs = {(src, dst) for src, targets in VALID_TRANSITIONS.items() for dst in targets}
        assert pairs == {
            (GroupOrderStatus.OPEN, GroupOrderStatus.CLOSED),
            (GroupOrderStatus.OPEN, GroupOrderStatus.SUBMITTED),
            (GroupOrderStatus.SUBMITTED, GroupOrderStatus.COMPLETED),
        }

    def test_expired_is_never_a_target(self):
        allowed, reason = TransitionGuard.can_transition(
            GroupOrderStatus.OPEN, GroupOrderStatus.EXPIRED,
        )
        assert not allowed
        assert "never stored" in reason

    def test_no_transition_out_of_completed(self):
        allowed, reason = TransitionGuard.can_transition(
            GroupOrderStatus.COMPLETED, GroupOrderStatus.SUBMITTED,
        )
        assert not allowed
        assert "No transitions out" in reason

    def test_check_refuses_finalize_when_expired(self):
        allowed, _, current = TransitionGuard.check(
            make_order(), GroupOrderStatus.SUBMITTED, END + timedelta(minutes=1),
        )
        assert not allowed
        assert current == GroupOrderStatus.EXPIRED

    def test_check_allows_finalize_when_open(self):
        allowed, _, current = TransitionGuard.check(
            make_order(), GroupOrderStatus.SUBMITTED, START + timedelta(minutes=1),
        )
        assert allowed
        assert current == GroupOrderStatus.OPEN

    def test_check_refuses_close_of_closed(self):
        allowed, _, current = TransitionGuard.check(
            make_order(GroupOrderStatus.CLOSED), GroupOrderStatus.CLOSED, START,
        )
        assert not allowed
        assert current == GroupOrderStatus.CLOSED

    def test_build_transition_uses_stored_status(self):
        order = make_order()
        event = build_transition(order, GroupOrderStatus.SUBMITTED, "leader", "Finalized")

        assert event.group_order_id == order.id
        assert event.from_status == GroupOrderStatus.OPEN
        assert event.to_status == GroupOrderStatus.SUBMITTED
        assert event.actor_id == "leader"
