"""
Group Ordering - Mock Adapters.

============================================================
PURPOSE
============================================================
In-process stock provider and submission client for tests
and local runs.

FEATURES:
- Configurable latency
- Error injection (rejected / unknown outcome)
- Lost-response simulation (order created, caller sees UNKNOWN)
- De-duplication by idempotency token, like the real backend

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, List, Iterable

from ..types import (
    ExternalBasket,
    StockCategory,
    StockEntry,
    StockSnapshot,
    SubmissionOutcome,
    SubmissionReceipt,
    ExternalSubmissionError,
)
from .base import ExternalSubmissionClient, StockSnapshotProvider


logger = logging.getLogger(__name__)


# ============================================================
# STATIC STOCK PROVIDER
# ============================================================

class StaticStockProvider(StockSnapshotProvider):
    """Stock provider backed by a mutable in-memory table."""

    def __init__(self, entries: Optional[Dict[StockCategory, Dict[str, StockEntry]]] = None):
        self._entries: Dict[StockCategory, Dict[str, StockEntry]] = {
            category: dict(items) for category, items in (entries or {}).items()
        }
        self.fetch_count = 0

    def add(
        self,
        category: StockCategory,
        codes: Iterable[str],
        in_stock: bool = True,
        price: Optional[Decimal] = None,
    ) -> "StaticStockProvider":
        """Add or replace entries. Returns self for chaining."""
        bucket = self._entries.setdefault(category, {})
        for code in codes:
            bucket[code] = StockEntry(in_stock=in_stock, price=price)
        return self

    def set_in_stock(self, category: StockCategory, code: str, in_stock: bool) -> None:
        bucket = self._entries.setdefault(category, {})
        current = bucket.get(code)
        bucket[code] = StockEntry(
            in_stock=in_stock,
            price=current.price if current else None,
        )

    def snapshot(self) -> StockSnapshot:
        """Copy of the current table."""
        return StockSnapshot(entries={
            category: dict(items) for category, items in self._entries.items()
        })

    async def fetch_stock(self) -> StockSnapshot:
        self.fetch_count += 1
        return self.snapshot()


# ============================================================
# MOCK SUBMISSION CLIENT
# ============================================================

@dataclass
class MockSubmissionConfig:
    """Configuration for the mock submission client."""

    latency_seconds: float = 0.0
    """Simulated backend latency."""

    order_id_prefix: str = "MOCK-"
    """Prefix for generated external order ids."""


@dataclass
class MockBackendOrder:
    """Order as recorded by the mock backend."""

    external_order_id: str
    idempotency_token: str
    basket: ExternalBasket
    receipts_issued: int = 1
    """How many times this order was acknowledged."""


class MockSubmissionClient(ExternalSubmissionClient):
    """
    Mock ordering backend.

    Submitting twice with the same token returns the original
    order instead of creating a second one.
    """

    def __init__(self, config: Optional[MockSubmissionConfig] = None):
        """
        Initialize mock client.

        Args:
            config: Mock configuration
        """
        self._config = config or MockSubmissionConfig()

        # State
        self._orders: Dict[str, MockBackendOrder] = {}
        self.calls: List[str] = []

        # Error injection hooks
        self._force_next_error: Optional[SubmissionOutcome] = None
        self._lose_next_response = False

    @property
    def backend_id(self) -> str:
        return "mock"

    @property
    def orders(self) -> List[MockBackendOrder]:
        """Distinct orders created, in creation order."""
        return list(self._orders.values())

    @property
    def call_count(self) -> int:
        return len(self.calls)

    # --------------------------------------------------------
    # ERROR INJECTION
    # --------------------------------------------------------

    def fail_next(self, outcome: SubmissionOutcome) -> None:
        """Fail the next call without creating an order."""
        self._force_next_error = outcome

    def lose_next_response(self) -> None:
        """Create the next order, then report an unknown outcome."""
        self._lose_next_response = True

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def submit(
        self,
        basket: ExternalBasket,
        idempotency_token: str,
    ) -> SubmissionReceipt:
        self.calls.append(idempotency_token)

        if self._config.latency_seconds:
            await asyncio.sleep(self._config.latency_seconds)

        if self._force_next_error is not None:
            outcome = self._force_next_error
            self._force_next_error = None
            raise ExternalSubmissionError(
                f"Injected error: {outcome.value}",
                outcome,
                backend_code="INJECTED",
                status=422 if outcome == SubmissionOutcome.REJECTED else None,
            )

        existing = self._orders.get(idempotency_token)
        if existing is not None:
            existing.receipts_issued += 1
            logger.info(
                f"Mock backend: duplicate token {idempotency_token}, "
                f"returning order {existing.external_order_id}"
            )
        else:
            existing = MockBackendOrder(
                external_order_id=f"{self._config.order_id_prefix}{uuid.uuid4().hex[:12]}",
                idempotency_token=idempotency_token,
                basket=basket,
            )
            self._orders[idempotency_token] = existing
            logger.info(
                f"Mock backend: created order {existing.external_order_id} "
                f"({basket.total_units()} units)"
            )

        if self._lose_next_response:
            self._lose_next_response = False
            raise ExternalSubmissionError(
                "Injected lost response",
                SubmissionOutcome.UNKNOWN,
                backend_code="INJECTED",
            )

        return SubmissionReceipt(
            external_order_id=existing.external_order_id,
            external_transaction_id=idempotency_token,
            raw_response={"orderId": existing.external_order_id},
        )
