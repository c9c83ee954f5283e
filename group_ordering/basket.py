"""
Group Ordering - Basket Building.

============================================================
PURPOSE
============================================================
Turns N participant orders into the one external basket and
computes the group order summary.

RULES:
- Only SUBMITTED participant orders are shipped
- Lines keep their participant for attribution
- Summary prices come from the stock snapshot; the line's own
  price is used only when the snapshot has none

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, List, Iterable

from .types import (
    BasketLine,
    CompositeItem,
    DeliveryDetails,
    ExternalBasket,
    GroupOrder,
    ItemCategory,
    ParticipantOrder,
    SimpleItem,
    StockCategory,
    StockSnapshot,
)


logger = logging.getLogger(__name__)


ZERO = Decimal("0")


# ============================================================
# EXTERNAL BASKET
# ============================================================

def submitted_orders(orders: Iterable[ParticipantOrder]) -> List[ParticipantOrder]:
    """Participant orders that go to the backend."""
    return [o for o in orders if o.is_submitted()]


def build_basket(
    group_order: GroupOrder,
    participant_orders: Iterable[ParticipantOrder],
    idempotency_token: str,
    delivery: DeliveryDetails,
) -> ExternalBasket:
    """
    Build the aggregate basket from SUBMITTED participant orders.

    DRAFT orders are ignored.
    """
    lines: List[BasketLine] = []

    for order in submitted_orders(participant_orders):
        items = order.items
        for composite in items.composites:
            lines.append(BasketLine(
                participant_id=order.participant_id,
                quantity=composite.quantity,
                composite=composite,
            ))
        for simple in items.simple_items():
            lines.append(BasketLine(
                participant_id=order.participant_id,
                quantity=simple.quantity,
                simple=simple,
            ))

    basket = ExternalBasket(
        group_order_id=group_order.id,
        idempotency_token=idempotency_token,
        delivery=delivery,
        lines=lines,
        delivery_fee=group_order.delivery_fee,
    )

    logger.debug(
        f"Built basket for group order {group_order.id}: "
        f"{len(basket.participant_ids)} participants, {basket.total_units()} units"
    )
    return basket


# ============================================================
# SUMMARY
# ============================================================

@dataclass
class CategorySummary:
    """Quantity and price totals for one category."""

    total_quantity: int = 0
    total_price: Decimal = ZERO

    def add(self, quantity: int, unit_price: Optional[Decimal]) -> None:
        self.total_quantity += quantity
        if unit_price is not None:
            self.total_price += unit_price * quantity


@dataclass
class GroupOrderSummary:
    """Per-category totals of a group order."""

    group_order_id: str

    composites: CategorySummary = field(default_factory=CategorySummary)
    extras: CategorySummary = field(default_factory=CategorySummary)
    drinks: CategorySummary = field(default_factory=CategorySummary)
    desserts: CategorySummary = field(default_factory=CategorySummary)

    participant_totals: Dict[str, Decimal] = field(default_factory=dict)
    """Item total per participant (delivery fee excluded)."""

    delivery_fee: Decimal = ZERO

    unpriced: List[str] = field(default_factory=list)
    """Codes with no known price (counted at zero)."""

    @property
    def total_quantity(self) -> int:
        return sum(c.total_quantity for c in self.categories().values())

    @property
    def items_total(self) -> Decimal:
        return sum((c.total_price for c in self.categories().values()), ZERO)

    @property
    def grand_total(self) -> Decimal:
        return self.items_total + self.delivery_fee

    def categories(self) -> Dict[str, CategorySummary]:
        return {
            "composites": self.composites,
            "extras": self.extras,
            "drinks": self.drinks,
            "desserts": self.desserts,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "group_order_id": self.group_order_id,
            **{
                name: {
                    "total_quantity": c.total_quantity,
                    "total_price": str(c.total_price),
                }
                for name, c in self.categories().items()
            },
            "total": {
                "quantity": self.total_quantity,
                "price": str(self.items_total),
            },
            "delivery_fee": str(self.delivery_fee),
            "grand_total": str(self.grand_total),
            "participant_totals": {k: str(v) for k, v in self.participant_totals.items()},
            "unpriced": list(self.unpriced),
        }


def _composite_unit_price(
    item: CompositeItem,
    snapshot: StockSnapshot,
    unpriced: List[str],
) -> Decimal:
    """Sum of priced sub-selections (components by portion)."""
    total = ZERO
    groups = (
        (StockCategory.COMPONENTS, item.components, True),
        (StockCategory.MODIFIERS, item.modifiers, False),
        (StockCategory.TOPPINGS, item.toppings, False),
    )
    for category, selections, by_portion in groups:
        for selection in selections:
            price = snapshot.price_of(category, selection.code)
            if price is None:
                if category == StockCategory.COMPONENTS and selection.code not in unpriced:
                    unpriced.append(selection.code)
                continue
            total += price * (selection.quantity if by_portion else 1)
    return total


def _simple_unit_price(
    item: SimpleItem,
    snapshot: StockSnapshot,
    unpriced: List[str],
) -> Optional[Decimal]:
    price = snapshot.price_of(StockCategory.for_item_category(item.category), item.code)
    if price is None:
        price = item.price
    if price is None and item.code not in unpriced:
        unpriced.append(item.code)
    return price


def summarize(
    group_order: GroupOrder,
    participant_orders: Iterable[ParticipantOrder],
    snapshot: StockSnapshot,
    submitted_only: bool = False,
) -> GroupOrderSummary:
    """
    Compute quantities and totals per category.

    Args:
        group_order: Group order
        participant_orders: Its participant orders
        snapshot: Fresh stock snapshot (price source)
        submitted_only: Ignore DRAFT orders
    """
    summary = GroupOrderSummary(
        group_order_id=group_order.id,
        delivery_fee=group_order.delivery_fee or ZERO,
    )
    by_category = {
        ItemCategory.EXTRA: summary.extras,
        ItemCategory.DRINK: summary.drinks,
        ItemCategory.DESSERT: summary.desserts,
    }

    orders = list(participant_orders)
    if submitted_only:
        orders = submitted_orders(orders)

    for order in orders:
        subtotal = ZERO

        for composite in order.items.composites:
            unit = _composite_unit_price(composite, snapshot, summary.unpriced)
            summary.composites.add(composite.quantity, unit)
            subtotal += unit * composite.quantity

        for simple in order.items.simple_items():
            unit = _simple_unit_price(simple, snapshot, summary.unpriced)
            by_category[simple.category].add(simple.quantity, unit)
            if unit is not None:
                subtotal += unit * simple.quantity

        summary.participant_totals[order.participant_id] = subtotal

    return summary
