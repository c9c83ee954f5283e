"""
Group Ordering - In-Memory Stores.

============================================================
PURPOSE
============================================================
In-process implementations of the repository interfaces for
tests and single-process runs.

The lock covers only the check-and-write of each call, never
any I/O, so the semantics match the SQL guarded UPDATEs. Group
state checks for participant writes run in the same step as the
write, with no await in between.

============================================================
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Tuple, Any

from .codec import encode_items, decode_items
from .repository import GroupOrderRepository, ParticipantOrderStore, CAS_WRITABLE_FIELDS
from .state_machine import GroupOrderTransition
from .types import (
    GroupOrder,
    GroupOrderStatus,
    OrderItems,
    ParticipantOrder,
    ParticipantOrderStatus,
    ConcurrentModificationError,
    NotFoundError,
    utcnow,
)


logger = logging.getLogger(__name__)


class InMemoryGroupOrderRepository(GroupOrderRepository):
    """Group order repository backed by a dict."""

    def __init__(self):
        self._orders: Dict[str, GroupOrder] = {}
        self._events: List[GroupOrderTransition] = []
        self._lock = asyncio.Lock()

    def _require(self, group_order_id: str) -> GroupOrder:
        order = self._orders.get(group_order_id)
        if order is None:
            raise NotFoundError(f"Group order {group_order_id} not found")
        return order

    def accepts_mutations_at(self, group_order_id: str, at: datetime) -> bool:
        """
        Stored OPEN with at inside the window.

        Synchronous, so a caller can check and write without yielding
        to a concurrent compare-and-set.
        """
        order = self._orders.get(group_order_id)
        return (
            order is not None
            and order.status == GroupOrderStatus.OPEN
            and order.start_time <= at <= order.end_time
        )

    async def create(self, order: GroupOrder) -> GroupOrder:
        if not order.status.is_storable():
            raise ValueError(f"Cannot store status {order.status.value}")
        async with self._lock:
            self._orders[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    async def get(self, group_order_id: str) -> Optional[GroupOrder]:
        order = self._orders.get(group_order_id)
        return copy.deepcopy(order) if order else None

    async def update_details(self, order: GroupOrder) -> GroupOrder:
        async with self._lock:
            stored = self._require(order.id)
            if stored.status != GroupOrderStatus.OPEN:
                raise ConcurrentModificationError(
                    f"Group order {order.id} is no longer OPEN",
                    {"group_order_id": order.id},
                )
            stored.name = order.name
            stored.start_time = order.start_time
            stored.end_time = order.end_time
            stored.delivery_fee = order.delivery_fee
            stored.updated_at = utcnow()
            return copy.deepcopy(stored)

    async def compare_and_set_status(
        self,
        group_order_id: str,
        expected: GroupOrderStatus,
        new: GroupOrderStatus,
        **fields: Any,
    ) -> GroupOrder:
        if not new.is_storable():
            raise ValueError(f"Cannot store status {new.value}")
        unknown = set(fields) - CAS_WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write fields with status: {sorted(unknown)}")

        async with self._lock:
            stored = self._require(group_order_id)
            if stored.status != expected:
                logger.warning(
                    f"CAS lost on group order {group_order_id}: "
                    f"expected {expected.value}, found {stored.status.value}"
                )
                raise ConcurrentModificationError(
                    f"Group order {group_order_id} changed concurrently",
                    {"expected": expected.value, "actual": stored.status.value},
                )
            stored.status = new
            for name, value in fields.items():
                setattr(stored, name, value)
            stored.updated_at = utcnow()
            return copy.deepcopy(stored)

    async def claim_submission_token(self, group_order_id: str, token: str) -> str:
        async with self._lock:
            stored = self._require(group_order_id)
            if stored.status != GroupOrderStatus.SUBMITTED:
                raise ConcurrentModificationError(
                    f"Group order {group_order_id} is no longer SUBMITTED",
                    {"actual": stored.status.value},
                )
            if stored.submission_token is None:
                stored.submission_token = token
                stored.updated_at = utcnow()
            return stored.submission_token

    async def release_submission_token(self, group_order_id: str, token: str) -> bool:
        async with self._lock:
            stored = self._require(group_order_id)
            if (
                stored.status == GroupOrderStatus.SUBMITTED
                and stored.submission_token == token
            ):
                stored.submission_token = None
                stored.updated_at = utcnow()
                return True
            return False

    async def mark_completed(
        self,
        group_order_id: str,
        token: str,
        external_order_id: str,
        external_transaction_id: str,
        at: datetime,
    ) -> GroupOrder:
        async with self._lock:
            stored = self._require(group_order_id)
            if (
                stored.status != GroupOrderStatus.SUBMITTED
                or stored.submission_token != token
            ):
                raise ConcurrentModificationError(
                    f"Completion write lost for group order {group_order_id}",
                    {"external_order_id": external_order_id},
                )
            stored.status = GroupOrderStatus.COMPLETED
            stored.external_order_id = external_order_id
            stored.external_transaction_id = external_transaction_id
            stored.completed_at = at
            stored.updated_at = at
            return copy.deepcopy(stored)

    async def record_transition(self, event: GroupOrderTransition) -> None:
        self._events.append(copy.deepcopy(event))

    async def list_transitions(self, group_order_id: str) -> List[GroupOrderTransition]:
        return [copy.deepcopy(e) for e in self._events if e.group_order_id == group_order_id]


class InMemoryParticipantOrderStore(ParticipantOrderStore):
    """
    Participant order store backed by a dict.

    Items go through the codec on every write and read, like the
    SQL store, so nothing relies on shared object identity.

    Guarded writes need the group order repository.
    """

    def __init__(self, group_orders: Optional[InMemoryGroupOrderRepository] = None):
        self._rows: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._group_orders = group_orders
        self._lock = asyncio.Lock()

    def _check_open(self, group_order_id: str, open_at: Optional[datetime]) -> None:
        if open_at is None:
            return
        if self._group_orders is None:
            raise ValueError("Guarded writes need the group order repository")
        if not self._group_orders.accepts_mutations_at(group_order_id, open_at):
            logger.warning(
                f"Participant write refused: group order {group_order_id} "
                f"no longer accepts mutations"
            )
            raise ConcurrentModificationError(
                f"Group order {group_order_id} no longer accepts participant changes",
                {"group_order_id": group_order_id},
            )

    def _to_order(self, row: Dict[str, Any]) -> ParticipantOrder:
        values = dict(row)
        values["items"] = decode_items(row["items"])
        return ParticipantOrder(**values)

    def _require(self, group_order_id: str, participant_id: str) -> Dict[str, Any]:
        row = self._rows.get((group_order_id, participant_id))
        if row is None:
            raise NotFoundError(
                f"Participant order ({group_order_id}, {participant_id}) not found"
            )
        return row

    async def upsert(
        self,
        group_order_id: str,
        participant_id: str,
        items: OrderItems,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        document = encode_items(items)
        now = utcnow()
        key = (group_order_id, participant_id)

        async with self._lock:
            self._check_open(group_order_id, open_at)
            row = self._rows.get(key)
            if row is None:
                row = {
                    "id": str(uuid.uuid4()),
                    "group_order_id": group_order_id,
                    "participant_id": participant_id,
                    "items": document,
                    "status": status,
                    "paid": False,
                    "paid_at": None,
                    "paid_by": None,
                    "reimbursed": False,
                    "reimbursed_at": None,
                    "reimbursed_by": None,
                    "created_at": now,
                    "updated_at": now,
                }
                self._rows[key] = row
            else:
                row["items"] = document
                row["status"] = status
                row["updated_at"] = now
            return self._to_order(row)

    async def get(self, group_order_id: str, participant_id: str) -> Optional[ParticipantOrder]:
        row = self._rows.get((group_order_id, participant_id))
        return self._to_order(row) if row else None

    async def get_by_id(self, participant_order_id: str) -> Optional[ParticipantOrder]:
        for row in self._rows.values():
            if row["id"] == participant_order_id:
                return self._to_order(row)
        return None

    async def list_by_group(self, group_order_id: str) -> List[ParticipantOrder]:
        rows = [row for row in self._rows.values() if row["group_order_id"] == group_order_id]
        return [self._to_order(row) for row in rows]

    async def delete(
        self,
        group_order_id: str,
        participant_id: str,
        open_at: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            self._check_open(group_order_id, open_at)
            return self._rows.pop((group_order_id, participant_id), None) is not None

    async def update_payment_flag(
        self,
        group_order_id: str,
        participant_id: str,
        paid: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        async with self._lock:
            row = self._require(group_order_id, participant_id)
            row["paid"] = paid
            row["paid_at"] = at if paid else None
            row["paid_by"] = actor_id if paid else None
            row["updated_at"] = utcnow()
            return self._to_order(row)

    async def update_reimbursement_flag(
        self,
        group_order_id: str,
        participant_id: str,
        reimbursed: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        async with self._lock:
            row = self._require(group_order_id, participant_id)
            row["reimbursed"] = reimbursed
            row["reimbursed_at"] = at if reimbursed else None
            row["reimbursed_by"] = actor_id if reimbursed else None
            row["updated_at"] = utcnow()
            return self._to_order(row)

    async def update_status(
        self,
        group_order_id: str,
        participant_id: str,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        async with self._lock:
            self._check_open(group_order_id, open_at)
            row = self._require(group_order_id, participant_id)
            row["status"] = status
            row["updated_at"] = utcnow()
            return self._to_order(row)
