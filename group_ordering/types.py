"""
Group Ordering - Types.

============================================================
PURPOSE
============================================================
All type definitions for the group ordering core.

CRITICAL PRINCIPLE:
    "EXPIRED is derived, never stored."
    "A group order reaches the backend exactly once."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from decimal import Decimal
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by the database layer."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# LIFECYCLE STATES
# ============================================================

class GroupOrderStatus(Enum):
    """
    Group order lifecycle status.

    State Machine:

        OPEN ──────► CLOSED
          │
          │  (now > end_time, derived only)
          ├──────► EXPIRED
          │
          ▼
      SUBMITTED ──► COMPLETED
          ▲   │
          └───┘ backend rejected / unknown outcome

    Stored values are OPEN, CLOSED, SUBMITTED, COMPLETED.
    EXPIRED is only ever returned by the status engine.
    """

    OPEN = "OPEN"
    """Accepting participant edits."""

    CLOSED = "CLOSED"
    """Manually closed by the leader."""

    EXPIRED = "EXPIRED"
    """OPEN but the window has elapsed (derived)."""

    SUBMITTED = "SUBMITTED"
    """Frozen by the leader, awaiting backend delivery."""

    COMPLETED = "COMPLETED"
    """Accepted by the external backend."""

    def is_storable(self) -> bool:
        """Check if this status may be persisted."""
        return self is not GroupOrderStatus.EXPIRED

    def is_frozen(self) -> bool:
        """Check if participant data is frozen for good."""
        return self in {GroupOrderStatus.SUBMITTED, GroupOrderStatus.COMPLETED}


class ParticipantOrderStatus(Enum):
    """Participant order status."""

    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"


class ItemCategory(Enum):
    """Category of a simple (non-composite) item."""

    EXTRA = "EXTRA"
    DRINK = "DRINK"
    DESSERT = "DESSERT"


class StockCategory(Enum):
    """Categories of the stock snapshot."""

    COMPONENTS = "COMPONENTS"
    MODIFIERS = "MODIFIERS"
    TOPPINGS = "TOPPINGS"
    EXTRAS = "EXTRAS"
    DRINKS = "DRINKS"
    DESSERTS = "DESSERTS"

    @classmethod
    def for_item_category(cls, category: ItemCategory) -> "StockCategory":
        """Stock category holding a simple item category."""
        return {
            ItemCategory.EXTRA: cls.EXTRAS,
            ItemCategory.DRINK: cls.DRINKS,
            ItemCategory.DESSERT: cls.DESSERTS,
        }[category]


class DeliveryType(Enum):
    """Delivery type, valued as the legacy backend expects."""

    DELIVERY = "livraison"
    TAKEAWAY = "emporter"


class SubmissionOutcome(Enum):
    """What is known about a failed external submission."""

    REJECTED = "REJECTED"
    """Backend refused the order. Nothing was created."""

    UNKNOWN = "UNKNOWN"
    """Timeout or transport failure. The order may exist."""


# ============================================================
# LINE ITEMS
# ============================================================

@dataclass(frozen=True)
class Selection:
    """A sub-selection of a composite item (component, modifier or topping)."""

    code: str
    """Menu item code."""

    name: str = ""
    """Display name."""

    quantity: int = 1
    """Portions (meaningful for components only)."""


@dataclass
class CompositeItem:
    """
    A configurable product: size plus three unordered selection sets.

    The id is derived from content (see identity.identify_composite).
    """

    size: str
    """Size/category selector."""

    components: List[Selection] = field(default_factory=list)
    """Primary components."""

    modifiers: List[Selection] = field(default_factory=list)
    """Sauces/modifiers."""

    toppings: List[Selection] = field(default_factory=list)
    """Toppings."""

    note: Optional[str] = None
    """Free-text note. Not part of identity."""

    quantity: int = 1
    """Number of identical units."""

    id: Optional[str] = None
    """Derived identity."""


@dataclass
class SimpleItem:
    """A quantity item (extra, drink, dessert)."""

    code: str
    category: ItemCategory
    name: str = ""
    quantity: int = 1
    price: Optional[Decimal] = None
    id: Optional[str] = None


@dataclass
class OrderItems:
    """A participant's basket."""

    composites: List[CompositeItem] = field(default_factory=list)
    extras: List[SimpleItem] = field(default_factory=list)
    drinks: List[SimpleItem] = field(default_factory=list)
    desserts: List[SimpleItem] = field(default_factory=list)

    def simple_items(self) -> Iterator[SimpleItem]:
        """Iterate over all simple items across categories."""
        yield from self.extras
        yield from self.drinks
        yield from self.desserts

    def line_count(self) -> int:
        """Number of lines across all categories."""
        return (
            len(self.composites)
            + len(self.extras)
            + len(self.drinks)
            + len(self.desserts)
        )

    def is_empty(self) -> bool:
        """Check if the basket has zero lines."""
        return self.line_count() == 0

    def copy(self) -> "OrderItems":
        """Shallow-per-line copy."""
        return OrderItems(
            composites=[replace(c) for c in self.composites],
            extras=[replace(i) for i in self.extras],
            drinks=[replace(i) for i in self.drinks],
            desserts=[replace(i) for i in self.desserts],
        )


# ============================================================
# GROUP ORDER / PARTICIPANT ORDER
# ============================================================

@dataclass
class GroupOrder:
    """
    Shared, time-boxed ordering session owned by a leader.

    `status` is the stored status. Use state_machine.effective_status
    for authorization decisions.
    """

    leader_id: str
    """Leader identity."""

    start_time: datetime
    """Window opens."""

    end_time: datetime
    """Window closes."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Group order id."""

    status: GroupOrderStatus = GroupOrderStatus.OPEN
    """Stored status (never EXPIRED)."""

    name: Optional[str] = None
    """Display name."""

    delivery_fee: Optional[Decimal] = None
    """Flat delivery fee."""

    # Submission tracking
    submission_token: Optional[str] = None
    """Idempotency token of the in-flight backend submission."""

    external_order_id: Optional[str] = None
    """Backend order id, set by the completion write."""

    external_transaction_id: Optional[str] = None
    """Backend transaction id, set by the completion write."""

    # Timestamps
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_leader(self, user_id: str) -> bool:
        """Check if a user is the leader."""
        return self.leader_id == user_id


@dataclass
class ParticipantOrder:
    """One participant's basket within a group order."""

    group_order_id: str
    participant_id: str
    items: OrderItems = field(default_factory=OrderItems)
    status: ParticipantOrderStatus = ParticipantOrderStatus.DRAFT
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Payment ledger (participant paid the leader)
    paid: bool = False
    paid_at: Optional[datetime] = None
    paid_by: Optional[str] = None

    # Reimbursement ledger (leader settled with participant)
    reimbursed: bool = False
    reimbursed_at: Optional[datetime] = None
    reimbursed_by: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_submitted(self) -> bool:
        return self.status == ParticipantOrderStatus.SUBMITTED

    def belongs_to(self, user_id: str) -> bool:
        return self.participant_id == user_id


# ============================================================
# STOCK
# ============================================================

@dataclass(frozen=True)
class StockEntry:
    """Availability of one menu item."""

    in_stock: bool
    price: Optional[Decimal] = None


@dataclass
class StockSnapshot:
    """
    Point-in-time availability keyed by category and item code.

    Always fetched fresh; never cached or persisted.
    """

    entries: Dict[StockCategory, Dict[str, StockEntry]] = field(default_factory=dict)
    """Entries by category, then code."""

    fetched_at: datetime = field(default_factory=utcnow)
    """When the snapshot was taken."""

    def get(self, category: StockCategory, code: str) -> Optional[StockEntry]:
        """Get an entry, None if unknown."""
        return self.entries.get(category, {}).get(code)

    def is_available(self, category: StockCategory, code: str) -> bool:
        """Unknown codes count as unavailable."""
        entry = self.get(category, code)
        return entry is not None and entry.in_stock

    def price_of(self, category: StockCategory, code: str) -> Optional[Decimal]:
        entry = self.get(category, code)
        return entry.price if entry else None


# ============================================================
# EXTERNAL SUBMISSION
# ============================================================

@dataclass
class DeliveryDetails:
    """Customer and delivery details for the external order."""

    customer_name: str
    customer_phone: str
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    address: Optional[str] = None
    requested_for: Optional[str] = None
    """Requested time slot (e.g. "12:30")."""


@dataclass
class BasketLine:
    """One line of the aggregate external basket."""

    participant_id: str
    """Whose basket the line came from."""

    quantity: int
    """Units of this line."""

    composite: Optional[CompositeItem] = None
    simple: Optional[SimpleItem] = None

    @property
    def item_id(self) -> Optional[str]:
        item = self.composite or self.simple
        return item.id if item else None


@dataclass
class ExternalBasket:
    """The one order shipped to the backend for N participant baskets."""

    group_order_id: str
    idempotency_token: str
    delivery: DeliveryDetails
    lines: List[BasketLine] = field(default_factory=list)
    delivery_fee: Optional[Decimal] = None

    @property
    def participant_ids(self) -> List[str]:
        """Participants represented, in basket order."""
        seen: List[str] = []
        for line in self.lines:
            if line.participant_id not in seen:
                seen.append(line.participant_id)
        return seen

    def total_units(self) -> int:
        return sum(line.quantity for line in self.lines)


@dataclass
class SubmissionReceipt:
    """Backend acknowledgement of an accepted order."""

    external_order_id: str
    external_transaction_id: str
    raw_response: Dict[str, Any] = field(default_factory=dict)
    accepted_at: datetime = field(default_factory=utcnow)


# ============================================================
# EXCEPTIONS
# ============================================================

class GroupOrderingError(Exception):
    """Base exception for the group ordering core."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(GroupOrderingError):
    """Group order or participant order missing."""
    code = "NOT_FOUND"


class UnauthorizedError(GroupOrderingError):
    """Caller is not the leader/owner required for the action."""
    code = "UNAUTHORIZED"


class InvalidStatusError(GroupOrderingError):
    """Action attempted outside the allowed lifecycle state."""

    code = "INVALID_STATUS"

    def __init__(self, message: str, effective_status: GroupOrderStatus):
        super().__init__(message, {"effective_status": effective_status.value})
        self.effective_status = effective_status


class OutOfStockError(GroupOrderingError):
    """One or more items unavailable. Carries the complete list."""

    code = "OUT_OF_STOCK"

    def __init__(self, items: List[str]):
        super().__init__(
            f"{len(items)} item(s) out of stock",
            {"out_of_stock_items": list(items)},
        )
        self.items = list(items)


class EmptyOrderError(GroupOrderingError):
    code = "EMPTY_ORDER"


class NothingToSubmitError(GroupOrderingError):
    code = "NOTHING_TO_SUBMIT"


class InvalidItemError(GroupOrderingError):
    """Line item violates composite shape rules."""
    code = "INVALID_ITEM"


class InvalidGroupOrderError(GroupOrderingError):
    """Group order window or details invalid."""
    code = "INVALID_GROUP_ORDER"


class ConcurrentModificationError(GroupOrderingError):
    """Compare-and-set lost a race. Retry from a fresh read."""
    code = "CONCURRENT_MODIFICATION"


class StockUnavailableError(GroupOrderingError):
    """Stock snapshot fetch failed or timed out."""
    code = "STOCK_UNAVAILABLE"


class ItemsDecodeError(GroupOrderingError):
    """Stored item bag could not be decoded."""
    code = "ITEMS_DECODE_FAILED"


class ExternalSubmissionError(GroupOrderingError):
    """
    External backend did not accept the order.

    outcome == REJECTED: nothing was created, safe to fix and retry.
    outcome == UNKNOWN: may have been delivered; retry only with
    the same idempotency token.
    """

    def __init__(
        self,
        message: str,
        outcome: SubmissionOutcome,
        backend_code: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, {
            "outcome": outcome.value,
            "backend_code": backend_code,
            "http_status": status,
        })
        self.outcome = outcome
        self.backend_code = backend_code
        self.status = status

    @property
    def code(self) -> str:
        if self.outcome == SubmissionOutcome.REJECTED:
            return "EXTERNAL_REJECTED"
        return "EXTERNAL_UNKNOWN_OUTCOME"

    @property
    def is_retryable_with_same_token(self) -> bool:
        return self.outcome == SubmissionOutcome.UNKNOWN
