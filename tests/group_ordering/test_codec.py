"""
Item Bag Codec Tests.

============================================================
TEST CATEGORIES
============================================================
1. Current schema encoding
2. Legacy (unversioned) document upgrade
3. Failure on unknown or malformed documents

============================================================
"""

from decimal import Decimal

import pytest

from group_ordering import (
    ITEMS_SCHEMA_VERSION,
    CompositeItem,
    ItemCategory,
    ItemsDecodeError,
    OrderItems,
    Selection,
    SimpleItem,
    decode_items,
    encode_items,
)
from group_ordering.codec import needs_upgrade, upgrade_items


def sample_items() -> OrderItems:
    return OrderItems(
        composites=[CompositeItem(
            id="c1",
            size="tacos_XL",
            components=[Selection("beef", "Boeuf", 2)],
            modifiers=[Selection("harissa", "Harissa")],
            toppings=[Selection("frites")],
            note="well done",
            quantity=2,
        )],
        drinks=[SimpleItem(
            id="d1", code="DR_COLA", category=ItemCategory.DRINK,
            name="Cola", quantity=3, price=Decimal("2.00"),
        )],
    )


# ============================================================
# ENCODE
# ============================================================

class TestEncode:
    """Tests for encode_items."""

    def test_document_is_versioned(self):
        document = encode_items(sample_items())

        assert document["schema_version"] == ITEMS_SCHEMA_VERSION
        assert set(document) == {"schema_version", "composites", "extras", "drinks", "desserts"}

    def test_price_is_encoded_as_string(self):
        document = encode_items(sample_items())

        assert document["drinks"][0]["price"] == "2.00"
        assert document["drinks"][0]["category"] == "DRINK"

    def test_decode_restores_content(self):
        decoded = decode_items(encode_items(sample_items()))

        assert decoded == sample_items()


# ============================================================
# LEGACY UPGRADE
# ============================================================

LEGACY_DOCUMENT = {
    "tacos": [{
        "size": "tacos_L",
        "meats": [{"id": "beef", "name": "Boeuf", "quantity": 1}],
        "sauces": [{"id": "samurai", "name": "Samourai"}],
        "garnitures": [{"id": "frites", "name": "Frites"}],
        "note": "",
        "quantity": 1,
    }],
    "extras": [{"id": "EX_NUGGETS", "name": "Nuggets", "quantity": 1, "price": 3.5}],
    "drinks": [{"name": "Cola", "quantity": 2}],
    "desserts": [],
}


class TestLegacyDocuments:
    """Tests for the unversioned legacy format."""

    def test_legacy_tacos_become_composites(self):
        items = decode_items(LEGACY_DOCUMENT)

        composite = items.composites[0]
        assert composite.size == "tacos_L"
        assert composite.components == [Selection("beef", "Boeuf", 1)]
        assert composite.modifiers[0].code == "samurai"
        assert composite.toppings[0].code == "frites"

    def test_legacy_simple_items(self):
        items = decode_items(LEGACY_DOCUMENT)

        assert items.extras[0].code == "EX_NUGGETS"
        assert items.extras[0].price == Decimal("3.5")
        assert items.drinks[0].code == "Cola"
        assert items.drinks[0].category == ItemCategory.DRINK

    def test_needs_upgrade(self):
        assert needs_upgrade(LEGACY_DOCUMENT)
        assert not needs_upgrade(encode_items(sample_items()))
        assert not needs_upgrade(None)

    def test_upgrade_writes_current_version(self):
        upgraded = upgrade_items(LEGACY_DOCUMENT)

        assert upgraded["schema_version"] == ITEMS_SCHEMA_VERSION
        assert upgraded["composites"][0]["components"][0]["code"] == "beef"


# ============================================================
# FAILURES
# ============================================================

class TestDecodeFailures:
    """Tests for decode failures."""

    @pytest.mark.parametrize("payload", [None, {}])
    def test_missing_document_is_empty_bag(self, payload):
        assert decode_items(payload).is_empty()

    def test_unknown_version_fails_loudly(self):
        with pytest.raises(ItemsDecodeError) as exc_info:
            decode_items({"schema_version": 99, "composites": []})

        assert exc_info.value.details["schema_version"] == 99

    def test_malformed_document(self):
        with pytest.raises(ItemsDecodeError):
            decode_items({"schema_version": 1, "composites": [{"components": []}]})

    def test_unknown_category(self):
        with pytest.raises(ItemsDecodeError):
            decode_items({"schema_version": 1, "drinks": [{"code": "X", "category": "SOUP"}]})
