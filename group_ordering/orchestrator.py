"""
Group Ordering - Submission Orchestrator.

============================================================
PURPOSE
============================================================
Owns every stored-status transition of a group order and the
single hand-off of the aggregate basket to the backend.

RESPONSIBILITIES:
- Close (OPEN -> CLOSED)
- Finalize (OPEN -> SUBMITTED)
- Submit to backend (SUBMITTED -> COMPLETED)
- Idempotency token lifecycle
- Transition audit trail and notifications

SAFETY CONSTRAINTS:
- One backend call per invocation, always time-bounded
- No automatic retry of an unknown outcome
- Retries reuse the stored idempotency token
- Completion is one guarded write

============================================================
SUBMISSION FLOW
============================================================
leader check -> stored SUBMITTED -> SUBMITTED participant orders
    -> fresh stock + availability -> claim token -> basket
    -> backend call -> mark_completed

Backend REJECTED: token released, status stays SUBMITTED
Backend UNKNOWN:  token kept, status stays SUBMITTED

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Callable

from .adapters.base import ExternalSubmissionClient, StockSnapshotProvider, fetch_stock_snapshot
from .basket import build_basket, submitted_orders
from .config import GroupOrderingConfig
from .notifications import NotificationDispatcher, NotificationType, group_status_changed
from .repository import GroupOrderRepository, ParticipantOrderStore
from .state_machine import TransitionGuard, build_transition, effective_status
from .types import (
    DeliveryDetails,
    DeliveryType,
    ExternalBasket,
    GroupOrder,
    GroupOrderStatus,
    ParticipantOrder,
    SubmissionOutcome,
    SubmissionReceipt,
    ConcurrentModificationError,
    ExternalSubmissionError,
    InvalidGroupOrderError,
    InvalidStatusError,
    NotFoundError,
    NothingToSubmitError,
    UnauthorizedError,
    utcnow,
)
from .validation import OrderAggregationValidator, raise_for_result


logger = logging.getLogger(__name__)


# ============================================================
# RESULT
# ============================================================

@dataclass
class SubmissionResult:
    """Outcome of a successful backend submission."""

    group_order: GroupOrder
    """Group order after the completion write."""

    receipt: SubmissionReceipt
    """Backend acknowledgement."""

    basket: ExternalBasket
    """What was shipped."""


# ============================================================
# ORCHESTRATOR
# ============================================================

class SubmissionOrchestrator:
    """
    Group order lifecycle orchestrator.

    SAFETY PRINCIPLES:
    - Authorization and effective status are checked on a fresh read
    - Every transition is a compare-and-set
    - Never retry an unknown outcome on its own
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
        validator: Optional[OrderAggregationValidator] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            group_orders: Group order repository
            participant_orders: Participant order store
            stock_provider: Stock snapshot source
            client: Ordering backend client
            config: Configuration
            notifications: Notification dispatcher (None disables)
            clock: Returns the current naive-UTC time
            validator: Aggregation validator
        """
        self._group_orders = group_orders
        self._participant_orders = participant_orders
        self._stock_provider = stock_provider
        self._client = client
        self._config = config or GroupOrderingConfig()
        self._notifications = notifications
        self._clock = clock or utcnow
        self._validator = validator or OrderAggregationValidator(self._config.composite_rules)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _load_as_leader(self, group_order_id: str, leader_id: str) -> GroupOrder:
        order = await self._group_orders.get(group_order_id)
        if order is None:
            raise NotFoundError(f"Group order {group_order_id} not found")
        if not order.is_leader(leader_id):
            logger.warning(f"User {leader_id} is not the leader of group order {group_order_id}")
            raise UnauthorizedError("Only the leader can perform this action")
        return order

    def _guard(self, order: GroupOrder, to_status: GroupOrderStatus) -> None:
        allowed, reason, current = TransitionGuard.check(order, to_status, self._clock())
        if not allowed:
            logger.warning(f"Transition refused for group order {order.id}: {reason}")
            raise InvalidStatusError(reason, current)

    async def _record(
        self,
        order: GroupOrder,
        to_status: GroupOrderStatus,
        actor_id: Optional[str],
        reason: str,
        details: Optional[dict] = None,
    ) -> None:
        event = build_transition(order, to_status, actor_id, reason, details)
        event.timestamp = self._clock()
        try:
            await self._group_orders.record_transition(event)
        except Exception as e:
            # The transition itself is committed; only the audit row is missing
            logger.exception(f"Failed to record transition for group order {order.id}: {e}")

    async def _announce(
        self,
        notification_type: NotificationType,
        order: GroupOrder,
        participants: List[ParticipantOrder],
        details: Optional[dict] = None,
    ) -> None:
        if self._notifications is None:
            return
        recipients = [
            p.participant_id for p in participants
            if p.participant_id != order.leader_id
        ]
        self._notifications.dispatch_all(group_status_changed(
            notification_type,
            recipients,
            order.id,
            order.name,
            url=self._config.notification.group_order_url(order.id),
            details=details,
        ))

    def new_token(self) -> str:
        """Fresh idempotency token."""
        return f"{self._config.idempotency.token_prefix}{uuid.uuid4().hex}"

    # --------------------------------------------------------
    # CLOSE
    # --------------------------------------------------------

    async def close(self, group_order_id: str, leader_id: str) -> GroupOrder:
        """
        OPEN -> CLOSED.

        Raises:
            UnauthorizedError: Caller is not the leader
            InvalidStatusError: Effective status is not OPEN
            ConcurrentModificationError: Status changed meanwhile
        """
        order = await self._load_as_leader(group_order_id, leader_id)
        self._guard(order, GroupOrderStatus.CLOSED)

        updated = await self._group_orders.compare_and_set_status(
            group_order_id,
            GroupOrderStatus.OPEN,
            GroupOrderStatus.CLOSED,
        )
        await self._record(order, GroupOrderStatus.CLOSED, leader_id, "Closed by leader")

        participants = await self._participant_orders.list_by_group(group_order_id)
        await self._announce(NotificationType.GROUP_CLOSED, updated, participants)
        return updated

    # --------------------------------------------------------
    # FINALIZE
    # --------------------------------------------------------

    async def finalize(self, group_order_id: str, leader_id: str) -> GroupOrder:
        """
        OPEN -> SUBMITTED. Freezes participant data.

        EXPIRED is not finalizable.

        Raises:
            UnauthorizedError: Caller is not the leader
            InvalidStatusError: Effective status is not OPEN
            ConcurrentModificationError: Status changed meanwhile
        """
        order = await self._load_as_leader(group_order_id, leader_id)
        self._guard(order, GroupOrderStatus.SUBMITTED)

        now = self._clock()
        updated = await self._group_orders.compare_and_set_status(
            group_order_id,
            GroupOrderStatus.OPEN,
            GroupOrderStatus.SUBMITTED,
            submitted_at=now,
        )
        await self._record(order, GroupOrderStatus.SUBMITTED, leader_id, "Finalized by leader")

        participants = await self._participant_orders.list_by_group(group_order_id)
        await self._announce(NotificationType.GROUP_SUBMITTED, updated, participants)
        return updated

    # --------------------------------------------------------
    # SUBMIT TO BACKEND
    # --------------------------------------------------------

    @staticmethod
    def _check_delivery(delivery: DeliveryDetails) -> None:
        if not delivery.customer_name or not delivery.customer_phone:
            raise InvalidGroupOrderError("Customer name and phone are required")
        if delivery.delivery_type == DeliveryType.DELIVERY and not delivery.address:
            raise InvalidGroupOrderError("Address is required for delivery")

    async def submit_to_backend(
        self,
        group_order_id: str,
        leader_id: str,
        delivery: DeliveryDetails,
    ) -> SubmissionResult:
        """
        Ship the aggregate basket to the backend exactly once.

        Raises:
            UnauthorizedError: Caller is not the leader
            InvalidStatusError: Stored status is not SUBMITTED
            NothingToSubmitError: No SUBMITTED participant order
            OutOfStockError: Complete list of unavailable items
            StockUnavailableError: Stock could not be fetched
            ExternalSubmissionError: Backend rejected or outcome unknown
            ConcurrentModificationError: Completion write lost
        """
        order = await self._load_as_leader(group_order_id, leader_id)

        if order.status != GroupOrderStatus.SUBMITTED:
            current = effective_status(order, self._clock())
            raise InvalidStatusError(
                f"Group order must be SUBMITTED, is {current.value}",
                current,
            )

        self._check_delivery(delivery)

        # Step 1: Participant orders
        participants = await self._participant_orders.list_by_group(group_order_id)
        to_ship = submitted_orders(participants)
        if not to_ship:
            raise NothingToSubmitError(
                f"Group order {group_order_id} has no submitted participant orders"
            )

        # Step 2: Fresh availability over the union
        snapshot = await fetch_stock_snapshot(
            self._stock_provider,
            self._config.timeout.stock_fetch_timeout_seconds,
        )
        raise_for_result(
            self._validator.validate_availability([p.items for p in to_ship], snapshot)
        )

        # Step 3: Idempotency token
        token = order.submission_token
        if token is None:
            token = await self._group_orders.claim_submission_token(
                group_order_id, self.new_token(),
            )
        else:
            logger.info(f"Reusing idempotency token for group order {group_order_id}")

        basket = build_basket(order, to_ship, token, delivery)

        # Step 4: One time-bounded backend call
        timeout = self._config.timeout.submission_timeout_seconds
        try:
            receipt = await asyncio.wait_for(
                self._client.submit(basket, token),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Backend submission timed out after {timeout}s for group order "
                f"{group_order_id}; outcome unknown, token kept"
            )
            raise ExternalSubmissionError(
                f"Backend did not answer within {timeout}s",
                SubmissionOutcome.UNKNOWN,
                backend_code="TIMEOUT",
            )
        except ExternalSubmissionError as e:
            if e.outcome == SubmissionOutcome.REJECTED:
                logger.warning(f"Backend rejected group order {group_order_id}: {e.message}")
                if self._config.idempotency.release_token_on_rejection:
                    await self._group_orders.release_submission_token(group_order_id, token)
            else:
                logger.error(
                    f"Backend outcome unknown for group order {group_order_id}: "
                    f"{e.message}; token kept"
                )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error submitting group order {group_order_id}: {e}")
            raise ExternalSubmissionError(
                f"Backend submission failed: {e}",
                SubmissionOutcome.UNKNOWN,
                backend_code="CLIENT_ERROR",
            ) from e

        # Step 5: Atomic completion write
        try:
            completed = await self._group_orders.mark_completed(
                group_order_id,
                token,
                receipt.external_order_id,
                receipt.external_transaction_id,
                at=self._clock(),
            )
        except ConcurrentModificationError:
            current = await self._group_orders.get(group_order_id)
            if (
                current is not None
                and current.status == GroupOrderStatus.COMPLETED
                and current.external_order_id == receipt.external_order_id
            ):
                # A concurrent call with the same token already completed it
                logger.info(f"Group order {group_order_id} already completed with this order")
                return SubmissionResult(group_order=current, receipt=receipt, basket=basket)
            logger.error(
                f"Completion write lost for group order {group_order_id}; "
                f"backend order {receipt.external_order_id} exists"
            )
            raise

        logger.info(
            f"Group order {group_order_id} completed: "
            f"external order {receipt.external_order_id}, "
            f"{len(basket.participant_ids)} participants, {basket.total_units()} units"
        )

        await self._record(
            order,
            GroupOrderStatus.COMPLETED,
            leader_id,
            "Backend accepted",
            {"external_order_id": receipt.external_order_id},
        )
        await self._announce(
            NotificationType.GROUP_COMPLETED,
            completed,
            to_ship,
            {"external_order_id": receipt.external_order_id},
        )

        return SubmissionResult(group_order=completed, receipt=receipt, basket=basket)
