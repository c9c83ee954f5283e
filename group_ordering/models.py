"""
Group Ordering - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for group order persistence.

TABLES:
- group_orders: Group order records (stored status only)
- participant_orders: One row per (group order, participant)
- group_order_events: Status transition audit trail

AUDIT REQUIREMENTS:
- Every stored-status change is logged as an event
- Completion fields are written together, never piecemeal

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    DateTime,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from .types import utcnow


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Base class for ORM models."""
    pass


# ============================================================
# GROUP ORDER MODEL
# ============================================================

class GroupOrderModel(Base):
    """
    Persisted group order.

    `status` never holds EXPIRED.
    """

    __tablename__ = "group_orders"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Ownership
    leader_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))

    # Window
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # State
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    # Money
    delivery_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    # Submission tracking
    submission_token: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Timestamps
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    participant_orders: Mapped[List["ParticipantOrderModel"]] = relationship(
        "ParticipantOrderModel",
        back_populates="group_order",
        cascade="all, delete-orphan",
    )
    events: Mapped[List["GroupOrderEventModel"]] = relationship(
        "GroupOrderEventModel",
        back_populates="group_order",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "leader_id": self.leader_id,
            "name": self.name,
            "status": self.status,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "delivery_fee": str(self.delivery_fee) if self.delivery_fee is not None else None,
            "external_order_id": self.external_order_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# ============================================================
# PARTICIPANT ORDER MODEL
# ============================================================

class ParticipantOrderModel(Base):
    """
    One participant's basket.

    The item bag is a versioned JSON document (see codec).
    """

    __tablename__ = "participant_orders"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Key
    group_order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("group_orders.id"), nullable=False, index=True,
    )
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Content
    items: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    # Payment ledger
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    paid_by: Mapped[Optional[str]] = mapped_column(String(64))

    # Reimbursement ledger
    reimbursed: Mapped[bool] = mapped_column(Boolean, default=False)
    reimbursed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reimbursed_by: Mapped[Optional[str]] = mapped_column(String(64))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationship
    group_order: Mapped["GroupOrderModel"] = relationship(
        "GroupOrderModel", back_populates="participant_orders",
    )

    __table_args__ = (
        UniqueConstraint(
            "group_order_id", "participant_id",
            name="uq_participant_orders_group_participant",
        ),
    )


# ============================================================
# GROUP ORDER EVENT MODEL
# ============================================================

class GroupOrderEventModel(Base):
    """
    Group order status transition event.

    Captures all stored-status changes for audit trail.
    """

    __tablename__ = "group_order_events"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Event identifiers
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # Group order reference
    group_order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("group_orders.id"), nullable=False, index=True,
    )

    # State transition
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)

    # Event details
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    details_json: Mapped[Optional[str]] = mapped_column(Text)  # JSON string

    # Timestamps
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Relationship
    group_order: Mapped["GroupOrderModel"] = relationship(
        "GroupOrderModel", back_populates="events",
    )

    __table_args__ = (
        Index("ix_group_order_events_group_occurred", "group_order_id", "occurred_at"),
    )
