"""
Group Ordering - Item Bag Codec.

============================================================
PURPOSE
============================================================
Explicit encode/decode of a participant's item bag at the
repository boundary.

SCHEMA VERSIONS:
- 0: unversioned legacy blob {tacos, extras, drinks, desserts}
     with meats/sauces/garnitures selections keyed by "id"
- 1: {schema_version, composites, extras, drinks, desserts}

Unknown versions fail loudly instead of silently dropping data.

============================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .types import (
    CompositeItem,
    ItemCategory,
    ItemsDecodeError,
    OrderItems,
    Selection,
    SimpleItem,
)


ITEMS_SCHEMA_VERSION = 1


# ============================================================
# ENCODE
# ============================================================

def _encode_selection(selection: Selection) -> Dict[str, Any]:
    return {"code": selection.code, "name": selection.name, "quantity": selection.quantity}


def _encode_composite(item: CompositeItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "size": item.size,
        "components": [_encode_selection(s) for s in item.components],
        "modifiers": [_encode_selection(s) for s in item.modifiers],
        "toppings": [_encode_selection(s) for s in item.toppings],
        "note": item.note,
        "quantity": item.quantity,
    }


def _encode_simple(item: SimpleItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "code": item.code,
        "category": item.category.value,
        "name": item.name,
        "quantity": item.quantity,
        "price": str(item.price) if item.price is not None else None,
    }


def encode_items(items: OrderItems) -> Dict[str, Any]:
    """Encode an item bag into a JSON-safe document."""
    return {
        "schema_version": ITEMS_SCHEMA_VERSION,
        "composites": [_encode_composite(c) for c in items.composites],
        "extras": [_encode_simple(i) for i in items.extras],
        "drinks": [_encode_simple(i) for i in items.drinks],
        "desserts": [_encode_simple(i) for i in items.desserts],
    }


# ============================================================
# DECODE
# ============================================================

def _decode_price(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ItemsDecodeError(f"Invalid price: {value!r}") from e


def _decode_selection(data: Dict[str, Any], code_key: str = "code") -> Selection:
    return Selection(
        code=data[code_key],
        name=data.get("name") or "",
        quantity=int(data.get("quantity", 1)),
    )


def _decode_v1(payload: Dict[str, Any]) -> OrderItems:
    def simple(data: Dict[str, Any]) -> SimpleItem:
        return SimpleItem(
            id=data.get("id"),
            code=data["code"],
            category=ItemCategory(data["category"]),
            name=data.get("name") or "",
            quantity=int(data.get("quantity", 1)),
            price=_decode_price(data.get("price")),
        )

    return OrderItems(
        composites=[
            CompositeItem(
                id=c.get("id"),
                size=c["size"],
                components=[_decode_selection(s) for s in c.get("components", [])],
                modifiers=[_decode_selection(s) for s in c.get("modifiers", [])],
                toppings=[_decode_selection(s) for s in c.get("toppings", [])],
                note=c.get("note"),
                quantity=int(c.get("quantity", 1)),
            )
            for c in payload.get("composites", [])
        ],
        extras=[simple(i) for i in payload.get("extras", [])],
        drinks=[simple(i) for i in payload.get("drinks", [])],
        desserts=[simple(i) for i in payload.get("desserts", [])],
    )


def _decode_v0(payload: Dict[str, Any]) -> OrderItems:
    """Upgrade the unversioned legacy blob."""

    def simple(data: Dict[str, Any], category: ItemCategory) -> SimpleItem:
        return SimpleItem(
            id=None,
            code=data.get("id") or data["name"],
            category=category,
            name=data.get("name") or "",
            quantity=int(data.get("quantity", 1)),
            price=_decode_price(data.get("price")),
        )

    return OrderItems(
        composites=[
            CompositeItem(
                size=t["size"],
                components=[_decode_selection(s, "id") for s in t.get("meats", [])],
                modifiers=[_decode_selection(s, "id") for s in t.get("sauces", [])],
                toppings=[_decode_selection(s, "id") for s in t.get("garnitures", [])],
                note=t.get("note"),
                quantity=int(t.get("quantity", 1)),
            )
            for t in payload.get("tacos", [])
        ],
        extras=[simple(i, ItemCategory.EXTRA) for i in payload.get("extras", [])],
        drinks=[simple(i, ItemCategory.DRINK) for i in payload.get("drinks", [])],
        desserts=[simple(i, ItemCategory.DESSERT) for i in payload.get("desserts", [])],
    )


def decode_items(payload: Optional[Dict[str, Any]]) -> OrderItems:
    """
    Decode a stored item bag.

    Raises:
        ItemsDecodeError: Unknown schema version or malformed document
    """
    if not payload:
        return OrderItems()

    version = payload.get("schema_version", 0)

    try:
        if version == 1:
            return _decode_v1(payload)
        if version == 0:
            return _decode_v0(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise ItemsDecodeError(
            f"Malformed item bag (schema {version}): {e}",
            {"schema_version": version},
        ) from e

    raise ItemsDecodeError(
        f"Unsupported item bag schema version: {version}",
        {"schema_version": version},
    )


def upgrade_items(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Re-encode a stored document at the current schema version."""
    return encode_items(decode_items(payload))


def needs_upgrade(payload: Optional[Dict[str, Any]]) -> bool:
    return bool(payload) and payload.get("schema_version", 0) != ITEMS_SCHEMA_VERSION


__all__: List[str] = [
    "ITEMS_SCHEMA_VERSION",
    "encode_items",
    "decode_items",
    "upgrade_items",
    "needs_upgrade",
]
