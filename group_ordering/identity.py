"""
Group Ordering - Deterministic Item Identity.

============================================================
PURPOSE
============================================================
Derives stable identifiers for line items from their
normalized content, so that resubmitting identical input
never produces duplicate lines.

ALGORITHM:
1. Sort each selection set by item code
2. Build canonical record {size, components, modifiers, toppings}
3. Serialize with stable key order
4. SHA-256 hex digest

The free-text note does not participate in identity.

============================================================
"""

import hashlib
import json
from dataclasses import replace
from typing import Any, Dict, List

from .types import CompositeItem, OrderItems, Selection, SimpleItem


def _digest(record: Dict[str, Any]) -> str:
    payload = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _sorted_codes(selections: List[Selection]) -> List[str]:
    return sorted(s.code for s in selections)


def normalize_composite(item: CompositeItem) -> Dict[str, Any]:
    """Canonical record of a composite item."""
    return {
        "size": item.size,
        # Portions participate: a double portion is a different item
        "components": sorted([s.code, s.quantity] for s in item.components),
        "modifiers": _sorted_codes(item.modifiers),
        "toppings": _sorted_codes(item.toppings),
    }


def identify_composite(item: CompositeItem) -> str:
    """Stable id of a composite item, invariant under selection order."""
    return _digest(normalize_composite(item))


def identify_simple(code: str, quantity: int) -> str:
    """Stable id of a simple item line."""
    return _digest({"code": code, "quantity": quantity})


def assign_item_ids(items: OrderItems) -> OrderItems:
    """
    Return a copy of the bag with every id derived from content.

    Composite lines that resolve to the same id are merged by
    summing quantities; the first line's note is kept.
    """
    merged: Dict[str, CompositeItem] = {}
    for composite in items.composites:
        item_id = identify_composite(composite)
        existing = merged.get(item_id)
        if existing is None:
            merged[item_id] = replace(
                composite,
                components=list(composite.components),
                modifiers=list(composite.modifiers),
                toppings=list(composite.toppings),
                id=item_id,
            )
        else:
            existing.quantity += composite.quantity

    def with_ids(simple_items: List[SimpleItem]) -> List[SimpleItem]:
        return [replace(i, id=identify_simple(i.code, i.quantity)) for i in simple_items]

    return OrderItems(
        composites=list(merged.values()),
        extras=with_ids(items.extras),
        drinks=with_ids(items.drinks),
        desserts=with_ids(items.desserts),
    )
