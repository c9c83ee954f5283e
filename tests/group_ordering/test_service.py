"""
Group Order Service Tests.

============================================================
TEST CATEGORIES
============================================================
1. Group order creation and update
2. Participant order upsert / submit / delete
3. Payment and reimbursement ledger
4. Reads and summary

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from group_ordering import (
    CompositeItem,
    EmptyOrderError,
    GroupOrderingConfig,
    GroupOrderPolicyConfig,
    GroupOrderService,
    GroupOrderStatus,
    InvalidGroupOrderError,
    InvalidItemError,
    InvalidStatusError,
    ItemCategory,
    NotFoundError,
    NotificationType,
    OrderItems,
    OutOfStockError,
    ParticipantOrderStatus,
    Selection,
    SimpleItem,
    StockCategory,
    UnauthorizedError,
    identify_composite,
)


def tacos(*components: str, size: str = "tacos_XL", quantity: int = 1) -> CompositeItem:
    return CompositeItem(
        size=size,
        components=[Selection(c) for c in components or ("beef",)],
        quantity=quantity,
    )


async def open_group(service, clock, **kwargs):
    return await service.create_group_order(
        "leader", clock.now, clock.now + timedelta(hours=1), **kwargs,
    )


# ============================================================
# GROUP ORDERS
# ============================================================

class TestCreateGroupOrder:
    """Tests for create_group_order."""

    @pytest.mark.asyncio
    async def test_create(self, service, clock):
        group = await open_group(service, clock, name="Lunch", delivery_fee=Decimal("2.50"))

        assert group.status == GroupOrderStatus.OPEN
        assert group.leader_id == "leader"
        assert group.delivery_fee == Decimal("2.50")
        assert group.created_at == clock.now

    @pytest.mark.asyncio
    async def test_start_must_precede_end(self, service, clock):
        with pytest.raises(InvalidGroupOrderError):
            await service.create_group_order("leader", clock.now, clock.now)

    @pytest.mark.asyncio
    async def test_start_in_the_past(self, service, clock):
        with pytest.raises(InvalidGroupOrderError):
            await service.create_group_order(
                "leader", clock.now - timedelta(hours=1), clock.now + timedelta(hours=1),
            )

    @pytest.mark.asyncio
    async def test_small_clock_skew_is_tolerated(self, service, clock):
        group = await service.create_group_order(
            "leader", clock.now - timedelta(seconds=30), clock.now + timedelta(hours=1),
        )

        assert group.status == GroupOrderStatus.OPEN

    @pytest.mark.asyncio
    async def test_negative_fee(self, service, clock):
        with pytest.raises(InvalidGroupOrderError):
            await open_group(service, clock, delivery_fee=Decimal("-1"))

    @pytest.mark.asyncio
    async def test_window_length_limit(
        self, group_orders, participant_orders, stock, submission_client, clock,
    ):
        config = GroupOrderingConfig.for_testing()
        config.policy = GroupOrderPolicyConfig(max_window_hours=2)
        service = GroupOrderService(
            group_orders, participant_orders, stock, submission_client, config=config, clock=clock,
        )

        with pytest.raises(InvalidGroupOrderError):
            await service.create_group_order("leader", clock.now, clock.now + timedelta(hours=3))


class TestUpdateGroupOrder:
    """Tests for update_group_order."""

    @pytest.mark.asyncio
    async def test_update_name_keeps_other_fields(self, service, clock):
        group = await open_group(service, clock, name="Lunch", delivery_fee=Decimal("2.00"))

        updated = await service.update_group_order(group.id, "leader", name="Dinner")

        assert updated.name == "Dinner"
        assert updated.delivery_fee == Decimal("2.00")
        assert updated.end_time == group.end_time

    @pytest.mark.asyncio
    async def test_only_leader(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(UnauthorizedError):
            await service.update_group_order(group.id, "alice", name="Mine")

    @pytest.mark.asyncio
    async def test_extending_expired_window_reopens(self, service, clock):
        group = await open_group(service, clock)
        clock.advance(hours=2)
        assert await service.get_effective_status(group.id) == GroupOrderStatus.EXPIRED

        await service.update_group_order(group.id, "leader", end_time=clock.now + timedelta(hours=1))

        assert await service.get_effective_status(group.id) == GroupOrderStatus.OPEN

    @pytest.mark.asyncio
    async def test_closed_cannot_be_updated(self, service, clock):
        group = await open_group(service, clock)
        await service.close_group_order(group.id, "leader")

        with pytest.raises(InvalidStatusError) as exc_info:
            await service.update_group_order(group.id, "leader", name="Again")

        assert exc_info.value.effective_status == GroupOrderStatus.CLOSED

    @pytest.mark.asyncio
    async def test_invalid_window(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(InvalidGroupOrderError):
            await service.update_group_order(group.id, "leader", end_time=group.start_time)

    @pytest.mark.asyncio
    async def test_clear_delivery_fee(self, service, clock):
        group = await open_group(service, clock, delivery_fee=Decimal("2.00"))

        updated = await service.update_group_order(group.id, "leader", delivery_fee=None)

        assert updated.delivery_fee is None


# ============================================================
# PARTICIPANT ORDERS
# ============================================================

class TestParticipantOrders:
    """Tests for participant order operations."""

    @pytest.mark.asyncio
    async def test_upsert_assigns_ids_and_saves_draft(self, service, clock):
        group = await open_group(service, clock)

        saved = await service.update_participant_order(
            group.id, "alice", OrderItems(composites=[tacos("chicken", "beef")]),
        )

        assert saved.status == ParticipantOrderStatus.DRAFT
        assert saved.items.composites[0].id == identify_composite(tacos("beef", "chicken"))

    @pytest.mark.asyncio
    async def test_resubmitting_identical_basket_does_not_duplicate(self, service, clock):
        group = await open_group(service, clock)
        items = OrderItems(composites=[tacos("beef"), tacos("beef")])

        await service.update_participant_order(group.id, "alice", items)
        saved = await service.update_participant_order(group.id, "alice", items)

        assert len(saved.items.composites) == 1
        assert saved.items.composites[0].quantity == 2

    @pytest.mark.asyncio
    async def test_upsert_resets_submitted_to_draft(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        await service.submit_participant_order(group.id, "alice")

        saved = await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos("chicken")]))

        assert saved.status == ParticipantOrderStatus.DRAFT

    @pytest.mark.asyncio
    async def test_empty_draft_allowed_but_not_submittable(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems())

        with pytest.raises(EmptyOrderError):
            await service.submit_participant_order(group.id, "alice")

    @pytest.mark.asyncio
    async def test_submit_missing_order(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(NotFoundError):
            await service.submit_participant_order(group.id, "alice")

    @pytest.mark.asyncio
    async def test_invalid_shape(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(InvalidItemError):
            await service.update_participant_order(
                group.id, "alice", OrderItems(composites=[tacos("beef", "chicken", size="tacos_L")]),
            )

    @pytest.mark.asyncio
    async def test_out_of_stock_lists_everything(self, service, stock, clock, participant_orders):
        group = await open_group(service, clock)
        stock.set_in_stock(StockCategory.COMPONENTS, "beef", False)
        stock.set_in_stock(StockCategory.DESSERTS, "DE_TIRAMISU", False)
        items = OrderItems(
            composites=[tacos("beef")],
            desserts=[SimpleItem(code="DE_TIRAMISU", category=ItemCategory.DESSERT, name="Tiramisu")],
        )

        with pytest.raises(OutOfStockError) as exc_info:
            await service.update_participant_order(group.id, "alice", items)

        assert exc_info.value.items == ["Component: beef", "Dessert: DE_TIRAMISU (Tiramisu)"]
        assert await participant_orders.get(group.id, "alice") is None

    @pytest.mark.asyncio
    async def test_submit_rechecks_stock(self, service, stock, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos("beef")]))
        stock.set_in_stock(StockCategory.COMPONENTS, "beef", False)

        with pytest.raises(OutOfStockError):
            await service.submit_participant_order(group.id, "alice")

    @pytest.mark.asyncio
    async def test_no_edits_after_expiry(self, service, clock):
        group = await open_group(service, clock)
        clock.advance(hours=1, seconds=1)

        with pytest.raises(InvalidStatusError) as exc_info:
            await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        assert exc_info.value.effective_status == GroupOrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_no_edits_before_start(self, service, clock):
        group = await service.create_group_order(
            "leader", clock.now + timedelta(hours=1), clock.now + timedelta(hours=2),
        )

        with pytest.raises(InvalidStatusError):
            await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

    @pytest.mark.asyncio
    async def test_first_order_notifies_leader(self, service, clock, dispatcher, notifier):
        group = await open_group(service, clock)

        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos("chicken")]))
        await service.update_participant_order(group.id, "leader", OrderItems(composites=[tacos()]))
        await dispatcher.drain()

        joined = [n for n in notifier.sent if n.notification_type == NotificationType.PARTICIPANT_JOINED]
        assert len(joined) == 1
        assert joined[0].recipient_id == "leader"
        assert joined[0].data["participant_id"] == "alice"


class TestDeleteParticipantOrder:
    """Tests for delete_participant_order."""

    @pytest.mark.asyncio
    async def test_owner_can_delete(self, service, clock, participant_orders):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        await service.delete_participant_order(group.id, "alice", "alice")

        assert await participant_orders.get(group.id, "alice") is None

    @pytest.mark.asyncio
    async def test_leader_can_delete(self, service, clock, participant_orders):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        await service.delete_participant_order(group.id, "alice", "leader")

        assert await participant_orders.get(group.id, "alice") is None

    @pytest.mark.asyncio
    async def test_other_participant_cannot_delete(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        with pytest.raises(UnauthorizedError):
            await service.delete_participant_order(group.id, "alice", "bob")

    @pytest.mark.asyncio
    async def test_delete_missing(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(NotFoundError):
            await service.delete_participant_order(group.id, "alice", "alice")

    @pytest.mark.asyncio
    async def test_no_delete_after_finalize(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        await service.finalize(group.id, "leader")

        with pytest.raises(InvalidStatusError):
            await service.delete_participant_order(group.id, "alice", "leader")


# ============================================================
# MONEY LEDGER
# ============================================================

class TestLedger:
    """Tests for payment and reimbursement flags."""

    @pytest.mark.asyncio
    async def test_owner_marks_paid(self, service, clock, dispatcher, notifier):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        updated = await service.set_payment_flag(group.id, "alice", "alice", True)
        await dispatcher.drain()

        assert updated.paid
        assert updated.paid_by == "alice"
        assert updated.paid_at == clock.now
        payments = [n for n in notifier.sent if n.notification_type == NotificationType.PAYMENT_MARKED]
        assert [n.recipient_id for n in payments] == ["leader"]

    @pytest.mark.asyncio
    async def test_leader_cannot_mark_someone_paid(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        with pytest.raises(UnauthorizedError):
            await service.set_payment_flag(group.id, "alice", "leader", True)

    @pytest.mark.asyncio
    async def test_payment_on_missing_order(self, service, clock):
        group = await open_group(service, clock)

        with pytest.raises(NotFoundError):
            await service.set_payment_flag(group.id, "alice", "alice", True)

    @pytest.mark.asyncio
    async def test_payment_allowed_after_finalize(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        await service.finalize(group.id, "leader")
        clock.advance(days=2)

        updated = await service.set_payment_flag(group.id, "alice", "alice", True)

        assert updated.paid

    @pytest.mark.asyncio
    async def test_leader_marks_reimbursed(self, service, clock, dispatcher, notifier):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        await service.close_group_order(group.id, "leader")

        updated = await service.set_reimbursement_flag(group.id, "alice", "leader", True)
        await dispatcher.drain()

        assert updated.reimbursed
        assert updated.reimbursed_by == "leader"
        reimbursements = [
            n for n in notifier.sent if n.notification_type == NotificationType.REIMBURSEMENT_MARKED
        ]
        assert [n.recipient_id for n in reimbursements] == ["alice"]

    @pytest.mark.asyncio
    async def test_participant_cannot_mark_reimbursed(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))

        with pytest.raises(UnauthorizedError):
            await service.set_reimbursement_flag(group.id, "alice", "alice", True)


# ============================================================
# READS / SUMMARY
# ============================================================

class TestReads:
    """Tests for reads and summary."""

    @pytest.mark.asyncio
    async def test_missing_group(self, service):
        with pytest.raises(NotFoundError):
            await service.get_group_order("missing")

    @pytest.mark.asyncio
    async def test_view_has_effective_status(self, service, clock):
        group = await open_group(service, clock)
        await service.update_participant_order(group.id, "alice", OrderItems(composites=[tacos()]))
        clock.advance(hours=3)

        view = await service.get_group_order_with_participant_orders(group.id)

        assert view.group_order.status == GroupOrderStatus.OPEN
        assert view.effective_status == GroupOrderStatus.EXPIRED
        assert [p.participant_id for p in view.participant_orders] == ["alice"]

    @pytest.mark.asyncio
    async def test_summary(self, service, clock):
        group = await open_group(service, clock, delivery_fee=Decimal("3.00"))
        await service.update_participant_order(
            group.id,
            "alice",
            OrderItems(
                composites=[CompositeItem(
                    size="tacos_XL",
                    components=[Selection("beef", quantity=2)],
                    toppings=[Selection("frites")],
                )],
                drinks=[SimpleItem(code="DR_COLA", category=ItemCategory.DRINK, quantity=2)],
            ),
        )
        await service.update_participant_order(
            group.id, "bob", OrderItems(desserts=[SimpleItem(code="DE_TIRAMISU", category=ItemCategory.DESSERT)]),
        )
        await service.submit_participant_order(group.id, "bob")

        summary = await service.summarize(group.id)

        # 2 x 2.50 beef + 0.50 frites
        assert summary.composites.total_price == Decimal("5.50")
        assert summary.drinks.total_quantity == 2
        assert summary.drinks.total_price == Decimal("4.00")
        assert summary.desserts.total_price == Decimal("4.00")
        assert summary.total_quantity == 4
        assert summary.items_total == Decimal("13.50")
        assert summary.grand_total == Decimal("16.50")
        assert summary.participant_totals == {"alice": Decimal("9.50"), "bob": Decimal("4.00")}

        submitted = await service.summarize(group.id, submitted_only=True)
        assert submitted.items_total == Decimal("4.00")
        assert submitted.to_dict()["participant_totals"] == {"bob": "4.00"}
