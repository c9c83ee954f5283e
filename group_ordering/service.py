"""
Group Ordering - Service.

============================================================
PURPOSE
============================================================
Caller-facing operations. An API layer maps each method to a
route and each GroupOrderingError to errors.to_error_response.

RESPONSIBILITIES:
- Group order creation, update and reads
- Participant order upsert / submit / delete
- Payment and reimbursement ledger
- Delegation of lifecycle transitions to the orchestrator
- Summary

AUTHORIZATION:
- Leader: update, close, finalize, submit, reimbursement flag
- Owner: payment flag
- Owner or leader: delete participant order

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List, Callable

from .adapters.base import ExternalSubmissionClient, StockSnapshotProvider, fetch_stock_snapshot
from .basket import GroupOrderSummary, summarize
from .config import GroupOrderingConfig
from .identity import assign_item_ids
from .notifications import (
    NotificationDispatcher,
    participant_joined,
    payment_marked,
    reimbursement_marked,
)
from .orchestrator import SubmissionOrchestrator, SubmissionResult
from .repository import GroupOrderRepository, ParticipantOrderStore
from .state_machine import effective_status
from .types import (
    DeliveryDetails,
    GroupOrder,
    GroupOrderStatus,
    OrderItems,
    ParticipantOrder,
    ParticipantOrderStatus,
    ConcurrentModificationError,
    InvalidGroupOrderError,
    InvalidStatusError,
    NotFoundError,
    UnauthorizedError,
    utcnow,
)
from .validation import OrderAggregationValidator, raise_for_result


logger = logging.getLogger(__name__)


# Sentinel for "leave unchanged" in partial updates
_UNSET = object()


@dataclass
class GroupOrderView:
    """A group order with its participant orders and effective status."""

    group_order: GroupOrder
    effective_status: GroupOrderStatus
    participant_orders: List[ParticipantOrder] = field(default_factory=list)


class GroupOrderService:
    """
    Group ordering operations.

    All collaborators are injected. The clock returns naive UTC.
    """

    def __init__(
        self,
        group_orders: GroupOrderRepository,
        participant_orders: ParticipantOrderStore,
        stock_provider: StockSnapshotProvider,
        client: ExternalSubmissionClient,
        config: Optional[GroupOrderingConfig] = None,
        notifications: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize service.

        Args:
            group_orders: Group order repository
            participant_orders: Participant order store
            stock_provider: Stock snapshot source
            client: Ordering backend client
            config: Configuration
            notifications: Notification dispatcher (None disables)
            clock: Returns the current naive-UTC time
        """
        self._group_orders = group_orders
        self._participant_orders = participant_orders
        self._stock_provider = stock_provider
        self._config = config or GroupOrderingConfig()
        self._notifications = notifications
        self._clock = clock or utcnow
        self._validator = OrderAggregationValidator(self._config.composite_rules)
        self._orchestrator = SubmissionOrchestrator(
            group_orders,
            participant_orders,
            stock_provider,
            client,
            config=self._config,
            notifications=notifications,
            clock=self._clock,
            validator=self._validator,
        )

    @property
    def orchestrator(self) -> SubmissionOrchestrator:
        return self._orchestrator

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _require_group_order(self, group_order_id: str) -> GroupOrder:
        order = await self._group_orders.get(group_order_id)
        if order is None:
            raise NotFoundError(f"Group order {group_order_id} not found")
        return order

    async def _require_participant_order(
        self,
        group_order_id: str,
        participant_id: str,
    ) -> ParticipantOrder:
        order = await self._participant_orders.get(group_order_id, participant_id)
        if order is None:
            raise NotFoundError(
                f"Participant order for {participant_id} in group order {group_order_id} not found"
            )
        return order

    def _notify(self, notification) -> None:
        if self._notifications is not None:
            self._notifications.dispatch(notification)

    def _check_window(self, start_time: datetime, end_time: datetime) -> None:
        if start_time >= end_time:
            raise InvalidGroupOrderError("Start time must be before end time")

        max_hours = self._config.policy.max_window_hours
        if max_hours is not None and end_time - start_time > timedelta(hours=max_hours):
            raise InvalidGroupOrderError(f"Window must not exceed {max_hours} hours")

    async def _fetch_snapshot(self):
        return await fetch_stock_snapshot(
            self._stock_provider,
            self._config.timeout.stock_fetch_timeout_seconds,
        )

    async def _not_modifiable(self, group_order_id: str) -> InvalidStatusError:
        """Error for a participant write refused by the store guard."""
        order = await self._require_group_order(group_order_id)
        current = effective_status(order, self._clock())
        logger.warning(
            f"Participant write lost to a concurrent change of group order "
            f"{group_order_id} (now {current.value})"
        )
        return InvalidStatusError(
            f"Group order is not modifiable (status: {current.value})",
            current,
        )

    # --------------------------------------------------------
    # GROUP ORDERS
    # --------------------------------------------------------

    async def create_group_order(
        self,
        leader_id: str,
        start_time: datetime,
        end_time: datetime,
        name: Optional[str] = None,
        delivery_fee: Optional[Decimal] = None,
    ) -> GroupOrder:
        """
        Create an OPEN group order.

        Raises:
            InvalidGroupOrderError: Bad window or start in the past
        """
        self._check_window(start_time, end_time)

        now = self._clock()
        tolerance = timedelta(seconds=self._config.policy.past_start_tolerance_seconds)
        if start_time < now - tolerance:
            raise InvalidGroupOrderError("Start time cannot be in the past")

        if delivery_fee is not None and delivery_fee < 0:
            raise InvalidGroupOrderError("Delivery fee must not be negative")

        order = GroupOrder(
            leader_id=leader_id,
            start_time=start_time,
            end_time=end_time,
            name=name,
            delivery_fee=delivery_fee,
            created_at=now,
            updated_at=now,
        )
        created = await self._group_orders.create(order)
        logger.info(f"Group order {created.id} created by {leader_id}")
        return created

    async def update_group_order(
        self,
        group_order_id: str,
        leader_id: str,
        name=_UNSET,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        delivery_fee=_UNSET,
    ) -> GroupOrder:
        """
        Update name, window or delivery fee. Status is unchanged.

        Allowed while effective OPEN or EXPIRED (extending the
        window of an expired order makes it OPEN again on read).
        """
        order = await self._require_group_order(group_order_id)
        if not order.is_leader(leader_id):
            raise UnauthorizedError("Only the leader can update the group order")

        current = effective_status(order, self._clock())
        if current not in (GroupOrderStatus.OPEN, GroupOrderStatus.EXPIRED):
            raise InvalidStatusError(
                f"Group order cannot be updated (status: {current.value})",
                current,
            )

        if name is not _UNSET:
            order.name = name
        if start_time is not None:
            order.start_time = start_time
        if end_time is not None:
            order.end_time = end_time
        if delivery_fee is not _UNSET:
            if delivery_fee is not None and delivery_fee < 0:
                raise InvalidGroupOrderError("Delivery fee must not be negative")
            order.delivery_fee = delivery_fee

        self._check_window(order.start_time, order.end_time)

        updated = await self._group_orders.update_details(order)
        logger.info(f"Group order {group_order_id} updated by {leader_id}")
        return updated

    async def get_group_order(self, group_order_id: str) -> GroupOrder:
        return await self._require_group_order(group_order_id)

    async def get_effective_status(self, group_order_id: str) -> GroupOrderStatus:
        order = await self._require_group_order(group_order_id)
        return effective_status(order, self._clock())

    async def get_group_order_with_participant_orders(self, group_order_id: str) -> GroupOrderView:
        order = await self._require_group_order(group_order_id)
        participants = await self._participant_orders.list_by_group(group_order_id)
        return GroupOrderView(
            group_order=order,
            effective_status=effective_status(order, self._clock()),
            participant_orders=participants,
        )

    # --------------------------------------------------------
    # PARTICIPANT ORDERS
    # --------------------------------------------------------

    async def update_participant_order(
        self,
        group_order_id: str,
        participant_id: str,
        items: OrderItems,
    ) -> ParticipantOrder:
        """
        Create or replace a participant's basket as DRAFT.

        The write is guarded by the group state at write time, so a
        finalize that lands during the stock fetch wins.

        Raises:
            InvalidStatusError: Group order does not accept mutations
            InvalidItemError: Composite shape rules violated
            OutOfStockError: Complete list of unavailable items
        """
        group_order = await self._require_group_order(group_order_id)

        raise_for_result(self._validator.validate_mutation(group_order, self._clock(), items))

        identified = assign_item_ids(items)

        snapshot = await self._fetch_snapshot()
        raise_for_result(self._validator.validate_availability(identified, snapshot))

        existing = await self._participant_orders.get(group_order_id, participant_id)
        try:
            saved = await self._participant_orders.upsert(
                group_order_id,
                participant_id,
                identified,
                ParticipantOrderStatus.DRAFT,
                open_at=self._clock(),
            )
        except ConcurrentModificationError:
            raise await self._not_modifiable(group_order_id)

        logger.info(
            f"Participant order of {participant_id} in group order {group_order_id} "
            f"{'updated' if existing else 'created'} ({identified.line_count()} lines)"
        )

        if existing is None and not group_order.is_leader(participant_id):
            self._notify(participant_joined(
                group_order.leader_id,
                participant_id,
                group_order_id,
                group_order.name,
                url=self._config.notification.group_order_url(group_order_id),
            ))

        return saved

    async def submit_participant_order(
        self,
        group_order_id: str,
        participant_id: str,
    ) -> ParticipantOrder:
        """
        DRAFT -> SUBMITTED for a participant's basket.

        Raises:
            InvalidStatusError: Group order does not accept mutations
            EmptyOrderError: Basket has no lines
            OutOfStockError: Complete list of unavailable items
        """
        group_order = await self._require_group_order(group_order_id)
        raise_for_result(self._validator.validate_mutation(group_order, self._clock()))

        order = await self._require_participant_order(group_order_id, participant_id)
        raise_for_result(self._validator.validate_not_empty(order.items))

        snapshot = await self._fetch_snapshot()
        raise_for_result(self._validator.validate_availability(order.items, snapshot))

        try:
            submitted = await self._participant_orders.update_status(
                group_order_id,
                participant_id,
                ParticipantOrderStatus.SUBMITTED,
                open_at=self._clock(),
            )
        except ConcurrentModificationError:
            raise await self._not_modifiable(group_order_id)
        logger.info(f"Participant order of {participant_id} in group order {group_order_id} submitted")
        return submitted

    async def delete_participant_order(
        self,
        group_order_id: str,
        participant_id: str,
        requester_id: str,
    ) -> None:
        """
        Delete a participant order.

        Raises:
            UnauthorizedError: Requester is neither owner nor leader
            InvalidStatusError: Group order does not accept mutations
            NotFoundError: No such participant order
        """
        group_order = await self._require_group_order(group_order_id)

        if requester_id != participant_id and not group_order.is_leader(requester_id):
            raise UnauthorizedError("Only the owner or the leader can delete this order")

        raise_for_result(self._validator.validate_mutation(group_order, self._clock()))

        try:
            deleted = await self._participant_orders.delete(
                group_order_id, participant_id, open_at=self._clock(),
            )
        except ConcurrentModificationError:
            raise await self._not_modifiable(group_order_id)
        if not deleted:
            raise NotFoundError(
                f"Participant order for {participant_id} in group order {group_order_id} not found"
            )
        logger.info(
            f"Participant order of {participant_id} in group order {group_order_id} "
            f"deleted by {requester_id}"
        )

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def close_group_order(self, group_order_id: str, leader_id: str) -> GroupOrder:
        return await self._orchestrator.close(group_order_id, leader_id)

    async def finalize(self, group_order_id: str, leader_id: str) -> GroupOrder:
        return await self._orchestrator.finalize(group_order_id, leader_id)

    async def submit_to_backend(
        self,
        group_order_id: str,
        leader_id: str,
        delivery: DeliveryDetails,
    ) -> SubmissionResult:
        return await self._orchestrator.submit_to_backend(group_order_id, leader_id, delivery)

    # --------------------------------------------------------
    # MONEY LEDGER
    # --------------------------------------------------------

    async def set_payment_flag(
        self,
        group_order_id: str,
        participant_id: str,
        requester_id: str,
        paid: bool,
    ) -> ParticipantOrder:
        """Owner marks their own order paid or unpaid. Any status."""
        group_order = await self._require_group_order(group_order_id)
        await self._require_participant_order(group_order_id, participant_id)

        if requester_id != participant_id:
            logger.warning(
                f"User {requester_id} tried to set payment flag of {participant_id}"
            )
            raise UnauthorizedError("Only the participant can mark their order as paid")

        updated = await self._participant_orders.update_payment_flag(
            group_order_id, participant_id, paid, requester_id, self._clock(),
        )
        logger.info(f"Payment flag of {participant_id} in group order {group_order_id} set to {paid}")

        if not group_order.is_leader(participant_id):
            self._notify(payment_marked(
                group_order.leader_id,
                participant_id,
                group_order_id,
                paid,
                url=self._config.notification.group_order_url(group_order_id),
            ))
        return updated

    async def set_reimbursement_flag(
        self,
        group_order_id: str,
        participant_id: str,
        requester_id: str,
        reimbursed: bool,
    ) -> ParticipantOrder:
        """Leader marks a participant reimbursed. Any status."""
        group_order = await self._require_group_order(group_order_id)

        if not group_order.is_leader(requester_id):
            logger.warning(
                f"User {requester_id} tried to set reimbursement flag in group order {group_order_id}"
            )
            raise UnauthorizedError("Only the leader can update reimbursement status")

        await self._require_participant_order(group_order_id, participant_id)

        updated = await self._participant_orders.update_reimbursement_flag(
            group_order_id, participant_id, reimbursed, requester_id, self._clock(),
        )
        logger.info(
            f"Reimbursement flag of {participant_id} in group order {group_order_id} "
            f"set to {reimbursed}"
        )

        if participant_id != requester_id:
            self._notify(reimbursement_marked(
                participant_id,
                group_order_id,
                reimbursed,
                url=self._config.notification.group_order_url(group_order_id),
            ))
        return updated

    # --------------------------------------------------------
    # SUMMARY
    # --------------------------------------------------------

    async def summarize(self, group_order_id: str, submitted_only: bool = False) -> GroupOrderSummary:
        """Per-category quantities and totals, priced from fresh stock."""
        group_order = await self._require_group_order(group_order_id)
        participants = await self._participant_orders.list_by_group(group_order_id)
        snapshot = await self._fetch_snapshot()
        return summarize(group_order, participants, snapshot, submitted_only=submitted_only)
