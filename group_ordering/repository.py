"""
Group Ordering - Repository.

============================================================
PURPOSE
============================================================
Persistence interfaces for group orders and participant
orders, plus their SQLAlchemy implementations.

RESPONSIBILITIES:
- Save/load group orders and participant orders
- Guarded status writes (compare-and-set)
- Idempotency token claim/release
- Atomic completion write
- Transition audit trail

CRITICAL REQUIREMENTS:
- Every status write is a single guarded UPDATE
- A lost compare-and-set raises, never silently succeeds
- Stores enforce data shape only; authorization is upstream

============================================================
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .codec import encode_items, decode_items
from .database import session_scope
from .models import GroupOrderModel, ParticipantOrderModel, GroupOrderEventModel
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


# Columns compare_and_set_status may write alongside the status
CAS_WRITABLE_FIELDS = frozenset({
    "submitted_at",
    "completed_at",
    "submission_token",
    "external_order_id",
    "external_transaction_id",
})


# ============================================================
# INTERFACES
# ============================================================

class GroupOrderRepository(ABC):
    """Group order persistence."""

    @abstractmethod
    async def create(self, order: GroupOrder) -> GroupOrder:
        pass

    @abstractmethod
    async def get(self, group_order_id: str) -> Optional[GroupOrder]:
        pass

    @abstractmethod
    async def update_details(self, order: GroupOrder) -> GroupOrder:
        """
        Write name, window and delivery fee.

        Guarded by stored status OPEN.

        Raises:
            ConcurrentModificationError: Status moved since the read
        """
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        group_order_id: str,
        expected: GroupOrderStatus,
        new: GroupOrderStatus,
        **fields: Any,
    ) -> GroupOrder:
        """
        Set status to `new` only if it is still `expected`.

        Args:
            group_order_id: Group order ID
            expected: Stored status read by the caller
            new: Target stored status
            **fields: Extra columns written in the same UPDATE

        Raises:
            ConcurrentModificationError: Zero rows matched
        """
        pass

    @abstractmethod
    async def claim_submission_token(self, group_order_id: str, token: str) -> str:
        """
        Store `token` if none is stored yet. Returns the stored token.

        Raises:
            ConcurrentModificationError: Order is no longer SUBMITTED
        """
        pass

    @abstractmethod
    async def release_submission_token(self, group_order_id: str, token: str) -> bool:
        """Clear the token if it is still `token`."""
        pass

    @abstractmethod
    async def mark_completed(
        self,
        group_order_id: str,
        token: str,
        external_order_id: str,
        external_transaction_id: str,
        at: datetime,
    ) -> GroupOrder:
        """
        SUBMITTED -> COMPLETED with both external ids, in one write.

        Raises:
            ConcurrentModificationError: Status or token changed
        """
        pass

    @abstractmethod
    async def record_transition(self, event: GroupOrderTransition) -> None:
        pass

    @abstractmethod
    async def list_transitions(self, group_order_id: str) -> List[GroupOrderTransition]:
        pass


class ParticipantOrderStore(ABC):
    """
    Participant order persistence.

    Exactly one record per (group_order_id, participant_id).

    GUARDED WRITES:
    upsert, update_status and delete accept open_at. When given, the
    write lands only if the group order is stored OPEN and open_at
    lies inside its window, checked atomically with the write.
    Otherwise ConcurrentModificationError is raised and nothing
    changes. Ledger flags are never guarded.
    """

    @abstractmethod
    async def upsert(
        self,
        group_order_id: str,
        participant_id: str,
        items: OrderItems,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        """Create or overwrite items and status. Ledger flags are kept."""
        pass

    @abstractmethod
    async def get(self, group_order_id: str, participant_id: str) -> Optional[ParticipantOrder]:
        pass

    @abstractmethod
    async def get_by_id(self, participant_order_id: str) -> Optional[ParticipantOrder]:
        pass

    @abstractmethod
    async def list_by_group(self, group_order_id: str) -> List[ParticipantOrder]:
        """All participant orders of a group, oldest first."""
        pass

    @abstractmethod
    async def delete(
        self,
        group_order_id: str,
        participant_id: str,
        open_at: Optional[datetime] = None,
    ) -> bool:
        pass

    @abstractmethod
    async def update_payment_flag(
        self,
        group_order_id: str,
        participant_id: str,
        paid: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        pass

    @abstractmethod
    async def update_reimbursement_flag(
        self,
        group_order_id: str,
        participant_id: str,
        reimbursed: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        pass

    @abstractmethod
    async def update_status(
        self,
        group_order_id: str,
        participant_id: str,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        pass


# ============================================================
# SQL GROUP ORDER REPOSITORY
# ============================================================

class SqlGroupOrderRepository(GroupOrderRepository):
    """
    Group order repository on SQLAlchemy AsyncSession.

    Every method runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """
        Initialize repository.

        Args:
            session_factory: SQLAlchemy async session factory
        """
        self._session_factory = session_factory

    async def create(self, order: GroupOrder) -> GroupOrder:
        if not order.status.is_storable():
            raise ValueError(f"Cannot store status {order.status.value}")

        async with session_scope(self._session_factory) as session:
            session.add(GroupOrderModel(
                id=order.id,
                leader_id=order.leader_id,
                name=order.name,
                start_time=order.start_time,
                end_time=order.end_time,
                status=order.status.value,
                delivery_fee=order.delivery_fee,
                submission_token=order.submission_token,
                external_order_id=order.external_order_id,
                external_transaction_id=order.external_transaction_id,
                submitted_at=order.submitted_at,
                completed_at=order.completed_at,
                created_at=order.created_at,
                updated_at=order.updated_at,
            ))

        logger.debug(f"Created group order {order.id}")
        return order

    async def get(self, group_order_id: str) -> Optional[GroupOrder]:
        async with session_scope(self._session_factory) as session:
            model = await session.get(GroupOrderModel, group_order_id)
            return self._model_to_group_order(model) if model else None

    async def _get_or_raise(self, group_order_id: str) -> GroupOrder:
        order = await self.get(group_order_id)
        if order is None:
            raise NotFoundError(f"Group order {group_order_id} not found")
        return order

    async def update_details(self, order: GroupOrder) -> GroupOrder:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(GroupOrderModel)
                .where(GroupOrderModel.id == order.id)
                .where(GroupOrderModel.status == GroupOrderStatus.OPEN.value)
                .values(
                    name=order.name,
                    start_time=order.start_time,
                    end_time=order.end_time,
                    delivery_fee=order.delivery_fee,
                    updated_at=utcnow(),
                )
            )
            rows = result.rowcount

        if rows == 0:
            await self._get_or_raise(order.id)
            raise ConcurrentModificationError(
                f"Group order {order.id} is no longer OPEN",
                {"group_order_id": order.id},
            )
        return await self._get_or_raise(order.id)

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

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(GroupOrderModel)
                .where(GroupOrderModel.id == group_order_id)
                .where(GroupOrderModel.status == expected.value)
                .values(status=new.value, updated_at=utcnow(), **fields)
            )
            rows = result.rowcount

        if rows == 0:
            current = await self._get_or_raise(group_order_id)
            logger.warning(
                f"CAS lost on group order {group_order_id}: "
                f"expected {expected.value}, found {current.status.value}"
            )
            raise ConcurrentModificationError(
                f"Group order {group_order_id} changed concurrently",
                {"expected": expected.value, "actual": current.status.value},
            )

        return await self._get_or_raise(group_order_id)

    async def claim_submission_token(self, group_order_id: str, token: str) -> str:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(GroupOrderModel)
                .where(GroupOrderModel.id == group_order_id)
                .where(GroupOrderModel.status == GroupOrderStatus.SUBMITTED.value)
                .where(GroupOrderModel.submission_token.is_(None))
                .values(submission_token=token, updated_at=utcnow())
            )

        current = await self._get_or_raise(group_order_id)
        if current.status != GroupOrderStatus.SUBMITTED or current.submission_token is None:
            raise ConcurrentModificationError(
                f"Group order {group_order_id} is no longer SUBMITTED",
                {"actual": current.status.value},
            )
        return current.submission_token

    async def release_submission_token(self, group_order_id: str, token: str) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(GroupOrderModel)
                .where(GroupOrderModel.id == group_order_id)
                .where(GroupOrderModel.status == GroupOrderStatus.SUBMITTED.value)
                .where(GroupOrderModel.submission_token == token)
                .values(submission_token=None, updated_at=utcnow())
            )
            return result.rowcount > 0

    async def mark_completed(
        self,
        group_order_id: str,
        token: str,
        external_order_id: str,
        external_transaction_id: str,
        at: datetime,
    ) -> GroupOrder:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(GroupOrderModel)
                .where(GroupOrderModel.id == group_order_id)
                .where(GroupOrderModel.status == GroupOrderStatus.SUBMITTED.value)
                .where(GroupOrderModel.submission_token == token)
                .values(
                    status=GroupOrderStatus.COMPLETED.value,
                    external_order_id=external_order_id,
                    external_transaction_id=external_transaction_id,
                    completed_at=at,
                    updated_at=at,
                )
            )
            rows = result.rowcount

        if rows == 0:
            raise ConcurrentModificationError(
                f"Completion write lost for group order {group_order_id}",
                {"external_order_id": external_order_id},
            )
        return await self._get_or_raise(group_order_id)

    async def record_transition(self, event: GroupOrderTransition) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(GroupOrderEventModel(
                event_id=str(uuid.uuid4()),
                group_order_id=event.group_order_id,
                from_status=event.from_status.value,
                to_status=event.to_status.value,
                actor_id=event.actor_id,
                reason=event.reason,
                details_json=json.dumps(event.details, default=str) if event.details else None,
                occurred_at=event.timestamp,
            ))

    async def list_transitions(self, group_order_id: str) -> List[GroupOrderTransition]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(GroupOrderEventModel)
                .where(GroupOrderEventModel.group_order_id == group_order_id)
                .order_by(GroupOrderEventModel.occurred_at, GroupOrderEventModel.id)
            )
            return [
                GroupOrderTransition(
                    group_order_id=m.group_order_id,
                    from_status=GroupOrderStatus(m.from_status),
                    to_status=GroupOrderStatus(m.to_status),
                    actor_id=m.actor_id,
                    reason=m.reason or "",
                    timestamp=m.occurred_at,
                    details=json.loads(m.details_json) if m.details_json else {},
                )
                for m in result.scalars()
            ]

    @staticmethod
    def _model_to_group_order(model: GroupOrderModel) -> GroupOrder:
        return GroupOrder(
            id=model.id,
            leader_id=model.leader_id,
            name=model.name,
            start_time=model.start_time,
            end_time=model.end_time,
            status=GroupOrderStatus(model.status),
            delivery_fee=model.delivery_fee,
            submission_token=model.submission_token,
            external_order_id=model.external_order_id,
            external_transaction_id=model.external_transaction_id,
            submitted_at=model.submitted_at,
            completed_at=model.completed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


# ============================================================
# SQL PARTICIPANT ORDER STORE
# ============================================================

class SqlParticipantOrderStore(ParticipantOrderStore):
    """Participant order store on SQLAlchemy AsyncSession."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    async def _lock_open_group(
        session: AsyncSession,
        group_order_id: str,
        at: datetime,
    ) -> None:
        """
        Touch the group order row while it still accepts mutations.

        The UPDATE holds the row lock until commit, so a concurrent
        status compare-and-set either waits for this transaction or
        has already made this statement match nothing.
        """
        result = await session.execute(
            update(GroupOrderModel)
            .where(GroupOrderModel.id == group_order_id)
            .where(GroupOrderModel.status == GroupOrderStatus.OPEN.value)
            .where(GroupOrderModel.start_time <= at)
            .where(GroupOrderModel.end_time >= at)
            .values(updated_at=GroupOrderModel.updated_at)
        )
        if result.rowcount == 0:
            logger.warning(
                f"Participant write refused: group order {group_order_id} "
                f"no longer accepts mutations"
            )
            raise ConcurrentModificationError(
                f"Group order {group_order_id} no longer accepts participant changes",
                {"group_order_id": group_order_id},
            )

    async def upsert(
        self,
        group_order_id: str,
        participant_id: str,
        items: OrderItems,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        document = encode_items(items)

        try:
            await self._upsert_once(group_order_id, participant_id, document, status, open_at)
        except IntegrityError:
            # Lost an insert race on the unique key; the row exists now
            logger.debug(f"Upsert race on ({group_order_id}, {participant_id}), retrying as update")
            await self._upsert_once(group_order_id, participant_id, document, status, open_at)

        return await self._get_or_raise(group_order_id, participant_id)

    async def _upsert_once(
        self,
        group_order_id: str,
        participant_id: str,
        document: Dict[str, Any],
        status: ParticipantOrderStatus,
        open_at: Optional[datetime],
    ) -> None:
        async with session_scope(self._session_factory) as session:
            if open_at is not None:
                await self._lock_open_group(session, group_order_id, open_at)
            model = await self._find(session, group_order_id, participant_id)
            now = utcnow()
            if model is None:
                session.add(ParticipantOrderModel(
                    id=str(uuid.uuid4()),
                    group_order_id=group_order_id,
                    participant_id=participant_id,
                    items=document,
                    status=status.value,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                model.items = document
                model.status = status.value
                model.updated_at = now

    async def get(self, group_order_id: str, participant_id: str) -> Optional[ParticipantOrder]:
        async with session_scope(self._session_factory) as session:
            model = await self._find(session, group_order_id, participant_id)
            return self._model_to_participant_order(model) if model else None

    async def get_by_id(self, participant_order_id: str) -> Optional[ParticipantOrder]:
        async with session_scope(self._session_factory) as session:
            model = await session.get(ParticipantOrderModel, participant_order_id)
            return self._model_to_participant_order(model) if model else None

    async def list_by_group(self, group_order_id: str) -> List[ParticipantOrder]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(ParticipantOrderModel)
                .where(ParticipantOrderModel.group_order_id == group_order_id)
                .order_by(ParticipantOrderModel.created_at, ParticipantOrderModel.id)
            )
            return [self._model_to_participant_order(m) for m in result.scalars()]

    async def delete(
        self,
        group_order_id: str,
        participant_id: str,
        open_at: Optional[datetime] = None,
    ) -> bool:
        async with session_scope(self._session_factory) as session:
            if open_at is not None:
                await self._lock_open_group(session, group_order_id, open_at)
            result = await session.execute(
                delete(ParticipantOrderModel)
                .where(ParticipantOrderModel.group_order_id == group_order_id)
                .where(ParticipantOrderModel.participant_id == participant_id)
            )
            return result.rowcount > 0

    async def update_payment_flag(
        self,
        group_order_id: str,
        participant_id: str,
        paid: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        return await self._update_fields(
            group_order_id,
            participant_id,
            paid=paid,
            paid_at=at if paid else None,
            paid_by=actor_id if paid else None,
        )

    async def update_reimbursement_flag(
        self,
        group_order_id: str,
        participant_id: str,
        reimbursed: bool,
        actor_id: str,
        at: datetime,
    ) -> ParticipantOrder:
        return await self._update_fields(
            group_order_id,
            participant_id,
            reimbursed=reimbursed,
            reimbursed_at=at if reimbursed else None,
            reimbursed_by=actor_id if reimbursed else None,
        )

    async def update_status(
        self,
        group_order_id: str,
        participant_id: str,
        status: ParticipantOrderStatus,
        open_at: Optional[datetime] = None,
    ) -> ParticipantOrder:
        return await self._update_fields(
            group_order_id, participant_id, open_at=open_at, status=status.value,
        )

    async def _update_fields(
        self,
        group_order_id: str,
        participant_id: str,
        open_at: Optional[datetime] = None,
        **values: Any,
    ) -> ParticipantOrder:
        async with session_scope(self._session_factory) as session:
            if open_at is not None:
                await self._lock_open_group(session, group_order_id, open_at)
            result = await session.execute(
                update(ParticipantOrderModel)
                .where(ParticipantOrderModel.group_order_id == group_order_id)
                .where(ParticipantOrderModel.participant_id == participant_id)
                .values(updated_at=utcnow(), **values)
            )
            rows = result.rowcount

        if rows == 0:
            raise NotFoundError(
                f"Participant order ({group_order_id}, {participant_id}) not found"
            )
        return await self._get_or_raise(group_order_id, participant_id)

    async def _get_or_raise(self, group_order_id: str, participant_id: str) -> ParticipantOrder:
        order = await self.get(group_order_id, participant_id)
        if order is None:
            raise NotFoundError(
                f"Participant order ({group_order_id}, {participant_id}) not found"
            )
        return order

    @staticmethod
    async def _find(session, group_order_id: str, participant_id: str) -> Optional[ParticipantOrderModel]:
        result = await session.execute(
            select(ParticipantOrderModel)
            .where(ParticipantOrderModel.group_order_id == group_order_id)
            .where(ParticipantOrderModel.participant_id == participant_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _model_to_participant_order(model: ParticipantOrderModel) -> ParticipantOrder:
        return ParticipantOrder(
            id=model.id,
            group_order_id=model.group_order_id,
            participant_id=model.participant_id,
            items=decode_items(model.items),
            status=ParticipantOrderStatus(model.status),
            paid=bool(model.paid),
            paid_at=model.paid_at,
            paid_by=model.paid_by,
            reimbursed=bool(model.reimbursed),
            reimbursed_at=model.reimbursed_at,
            reimbursed_by=model.reimbursed_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
