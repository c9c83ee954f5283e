"""
Group Ordering - External Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interfaces for everything outside the process that
the core talks to: the stock source and the ordering backend.

DESIGN PRINCIPLES:
- Backend-agnostic interface
- Clean separation from orchestration logic
- Fully testable with mock adapters

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from ..types import (
    ExternalBasket,
    StockCategory,
    StockEntry,
    StockSnapshot,
    SubmissionReceipt,
    GroupOrderingError,
    StockUnavailableError,
)


logger = logging.getLogger(__name__)


# ============================================================
# STOCK MAPPING
# ============================================================

# Legacy stock document keys
LEGACY_STOCK_KEYS: Dict[str, StockCategory] = {
    "viandes": StockCategory.COMPONENTS,
    "sauces": StockCategory.MODIFIERS,
    "garnitures": StockCategory.TOPPINGS,
    "extras": StockCategory.EXTRAS,
    "boissons": StockCategory.DRINKS,
    "desserts": StockCategory.DESSERTS,
}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning(f"Ignoring unparseable stock price: {value!r}")
        return None


def parse_stock_document(document: Dict[str, Any]) -> StockSnapshot:
    """
    Map a legacy stock document to a StockSnapshot.

    Args:
        document: {category_key: {code: {"in_stock": bool, ...}}}

    Returns:
        StockSnapshot. Unknown keys are ignored.
    """
    entries: Dict[StockCategory, Dict[str, StockEntry]] = {}

    for key, category in LEGACY_STOCK_KEYS.items():
        raw = document.get(key) or {}
        entries[category] = {
            code: StockEntry(
                in_stock=bool(status.get("in_stock", False)),
                price=_to_decimal(status.get("price")),
            )
            for code, status in raw.items()
            if isinstance(status, dict)
        }

    return StockSnapshot(entries=entries)


# ============================================================
# STOCK SNAPSHOT PROVIDER
# ============================================================

class StockSnapshotProvider(ABC):
    """
    Source of point-in-time availability.

    Implementations:
    - LegacyStockProvider: Legacy backend stock endpoint
    - StaticStockProvider: For testing
    """

    @abstractmethod
    async def fetch_stock(self) -> StockSnapshot:
        """Fetch a fresh snapshot. Never cached."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


async def fetch_stock_snapshot(
    provider: StockSnapshotProvider,
    timeout_seconds: float,
) -> StockSnapshot:
    """
    Fetch a snapshot under a timeout.

    Raises:
        StockUnavailableError: Fetch failed or timed out
    """
    try:
        return await asyncio.wait_for(provider.fetch_stock(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"Stock fetch timed out after {timeout_seconds}s")
        raise StockUnavailableError(f"Stock fetch timed out after {timeout_seconds}s")
    except GroupOrderingError:
        raise
    except Exception as e:
        logger.error(f"Stock fetch failed: {e}")
        raise StockUnavailableError(f"Stock fetch failed: {e}") from e


# ============================================================
# EXTERNAL SUBMISSION CLIENT
# ============================================================

class ExternalSubmissionClient(ABC):
    """
    Ships one aggregate basket to the ordering backend.

    Implementations:
    - LegacyBackendClient: Real legacy backend
    - MockSubmissionClient: For testing

    Contract:
    - Raise ExternalSubmissionError(REJECTED) when the backend
      definitely refused the order.
    - Raise ExternalSubmissionError(UNKNOWN) on transport failure.
    - Pass the idempotency token to the backend unchanged.
    """

    @property
    @abstractmethod
    def backend_id(self) -> str:
        """Backend identifier."""
        pass

    @abstractmethod
    async def submit(
        self,
        basket: ExternalBasket,
        idempotency_token: str,
    ) -> SubmissionReceipt:
        """
        Submit the basket.

        Args:
            basket: Aggregate basket
            idempotency_token: Token the backend uses to de-duplicate

        Returns:
            SubmissionReceipt
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None
