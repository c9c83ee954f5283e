"""
Group Ordering - Aggregation Validation.

============================================================
PURPOSE
============================================================
Decides whether a participant mutation is allowed and whether
every line item is currently available.

VALIDATION STEPS:
1. Group order accepts mutations (effective OPEN, inside window)
2. Composite shape rules (size limits, modifiers, toppings)
3. Availability of every code against a fresh stock snapshot
4. Non-empty basket (at submission time only)

CRITICAL PRINCIPLE:
    "Never fail fast on availability. Report every missing item."

============================================================
"""

import logging
from datetime import datetime
from typing import Optional, List, Iterable, Set, Tuple
from dataclasses import dataclass, field

from .types import (
    GroupOrder,
    GroupOrderStatus,
    OrderItems,
    CompositeItem,
    Selection,
    StockCategory,
    StockSnapshot,
    InvalidStatusError,
    InvalidItemError,
    OutOfStockError,
    EmptyOrderError,
)
from .config import CompositeRulesConfig
from .state_machine import effective_status, can_accept_mutations


logger = logging.getLogger(__name__)


# ============================================================
# VALIDATION RESULT
# ============================================================

@dataclass
class ValidationResult:
    """Result of a validation step."""

    is_valid: bool
    """Whether validation passed."""

    error_code: Optional[str] = None
    """Error code if invalid."""

    error_message: Optional[str] = None
    """Error message if invalid."""

    effective_status: Optional[GroupOrderStatus] = None
    """Effective status at decision time (NOT_MODIFIABLE only)."""

    out_of_stock: List[str] = field(default_factory=list)
    """Every unavailable item (OUT_OF_STOCK only)."""

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(is_valid=True)


def raise_for_result(result: ValidationResult) -> None:
    """Raise the exception matching a failed result."""
    if result.is_valid:
        return

    if result.error_code == "NOT_MODIFIABLE":
        raise InvalidStatusError(result.error_message, result.effective_status)
    if result.error_code == "OUT_OF_STOCK":
        raise OutOfStockError(result.out_of_stock)
    if result.error_code == "EMPTY_ORDER":
        raise EmptyOrderError(result.error_message)
    raise InvalidItemError(result.error_message or "Invalid items")


# ============================================================
# VALIDATOR
# ============================================================

_STOCK_LABELS = {
    StockCategory.COMPONENTS: "Component",
    StockCategory.MODIFIERS: "Modifier",
    StockCategory.TOPPINGS: "Topping",
    StockCategory.EXTRAS: "Extra",
    StockCategory.DRINKS: "Drink",
    StockCategory.DESSERTS: "Dessert",
}


class OrderAggregationValidator:
    """
    Validates participant baskets.

    All validation failures are deterministic and logged.
    """

    def __init__(self, rules: Optional[CompositeRulesConfig] = None):
        """
        Initialize validator.

        Args:
            rules: Composite shape rules
        """
        self._rules = rules or CompositeRulesConfig()

    # --------------------------------------------------------
    # MUTATION
    # --------------------------------------------------------

    def validate_mutation(
        self,
        group_order: GroupOrder,
        now: datetime,
        proposed_items: Optional[OrderItems] = None,
    ) -> ValidationResult:
        """
        Check that a participant mutation is allowed.

        Args:
            group_order: Group order being mutated
            now: Decision time
            proposed_items: New basket (None for deletes/status changes)

        Returns:
            ValidationResult
        """
        if not can_accept_mutations(group_order, now):
            status = effective_status(group_order, now)
            logger.warning(
                f"Mutation rejected for group order {group_order.id}: "
                f"effective status {status.value}"
            )
            return ValidationResult(
                is_valid=False,
                error_code="NOT_MODIFIABLE",
                error_message=f"Group order is not modifiable (status: {status.value})",
                effective_status=status,
            )

        if proposed_items is not None and self._rules.enforce:
            result = self.validate_shape(proposed_items)
            if not result.is_valid:
                return result

        return ValidationResult.ok()

    def validate_shape(self, items: OrderItems) -> ValidationResult:
        """Check composite shape rules and line quantities."""
        for composite in items.composites:
            error = self._composite_error(composite)
            if error:
                logger.warning(f"Invalid composite item ({composite.size}): {error}")
                return ValidationResult(
                    is_valid=False,
                    error_code="INVALID_ITEM",
                    error_message=error,
                )

        for item in items.simple_items():
            if item.quantity < 1:
                return ValidationResult(
                    is_valid=False,
                    error_code="INVALID_ITEM",
                    error_message=f"Quantity must be at least 1 for {item.code}",
                )

        return ValidationResult.ok()

    def _composite_error(self, item: CompositeItem) -> Optional[str]:
        rules = self._rules

        if item.quantity < 1:
            return "Quantity must be at least 1"

        max_components = rules.max_components_by_size.get(item.size)
        if max_components is None:
            return f"Unknown size: {item.size}"

        if len(item.components) < rules.min_components:
            return f"At least {rules.min_components} component(s) required"

        if len(item.components) > max_components:
            return f"Maximum {max_components} component(s) allowed for {item.size}"

        if any(s.quantity < 1 for s in item.components):
            return "Component portions must be at least 1"

        if len(item.modifiers) > rules.max_modifiers:
            return f"Maximum {rules.max_modifiers} modifier(s) allowed"

        if item.size in rules.sizes_without_toppings and item.toppings:
            return f"{item.size} does not allow toppings"

        return None

    # --------------------------------------------------------
    # AVAILABILITY
    # --------------------------------------------------------

    def validate_availability(
        self,
        items: Iterable[OrderItems],
        snapshot: StockSnapshot,
    ) -> ValidationResult:
        """
        Check every line and sub-selection against the snapshot.

        Collects all unavailable items before failing. Accepts one
        or many baskets so the orchestrator can check the union.
        """
        if isinstance(items, OrderItems):
            items = [items]

        missing: List[str] = []
        seen: Set[Tuple[StockCategory, str]] = set()

        def check(category: StockCategory, code: str, name: str = "") -> None:
            if (category, code) in seen or snapshot.is_available(category, code):
                return
            seen.add((category, code))
            label = f"{_STOCK_LABELS[category]}: {code}"
            if name and name != code:
                label += f" ({name})"
            missing.append(label)

        def check_selections(category: StockCategory, selections: List[Selection]) -> None:
            for selection in selections:
                check(category, selection.code, selection.name)

        for basket in items:
            for composite in basket.composites:
                check_selections(StockCategory.COMPONENTS, composite.components)
                check_selections(StockCategory.MODIFIERS, composite.modifiers)
                check_selections(StockCategory.TOPPINGS, composite.toppings)

            for item in basket.simple_items():
                check(StockCategory.for_item_category(item.category), item.code, item.name)

        if missing:
            logger.warning(f"Availability check failed: {len(missing)} item(s) out of stock")
            return ValidationResult(
                is_valid=False,
                error_code="OUT_OF_STOCK",
                error_message="Some items are out of stock",
                out_of_stock=missing,
            )

        return ValidationResult.ok()

    # --------------------------------------------------------
    # EMPTINESS
    # --------------------------------------------------------

    def validate_not_empty(self, items: OrderItems) -> ValidationResult:
        """Empty baskets may be saved as DRAFT but never submitted."""
        if items.is_empty():
            return ValidationResult(
                is_valid=False,
                error_code="EMPTY_ORDER",
                error_message="Cannot submit an empty order",
            )
        return ValidationResult.ok()
