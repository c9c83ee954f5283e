"""
Group Ordering - Legacy Backend Adapters.

============================================================
PURPOSE
============================================================
aiohttp clients for the legacy ordering site.

SUBMISSION FLOW (one cookie session per submission):
1. GET  csrf token
2. POST every composite unit to the cart endpoint
3. POST every extra / drink / dessert unit
4. POST the order with transaction_id = idempotency token

OUTCOME MAPPING:
- Any failure before step 4: REJECTED (no order exists yet)
- Step 4 HTTP 4xx: REJECTED
- Step 4 HTTP 5xx, timeout, connection error: UNKNOWN

============================================================
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, List, Tuple

import aiohttp

from ..config import BackendConfig, TimeoutConfig
from ..types import (
    CompositeItem,
    ExternalBasket,
    SimpleItem,
    ItemCategory,
    StockSnapshot,
    SubmissionOutcome,
    SubmissionReceipt,
    ExternalSubmissionError,
    utcnow,
)
from .base import ExternalSubmissionClient, StockSnapshotProvider, parse_stock_document


logger = logging.getLogger(__name__)


class _BackendHTTPError(Exception):
    """Non-2xx response from the legacy site."""

    def __init__(self, status: int, body: str):
        super().__init__(f"HTTP {status}")
        self.status = status
        self.body = body


async def _read_body(response: aiohttp.ClientResponse) -> Any:
    text = await response.text()
    if response.status >= 400:
        raise _BackendHTTPError(response.status, text[:500])
    try:
        return json.loads(text)
    except ValueError:
        return text


# ============================================================
# STOCK PROVIDER
# ============================================================

class LegacyStockProvider(StockSnapshotProvider):
    """Fetches availability from the legacy stock endpoint."""

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        self._config = config or BackendConfig()
        self._timeout_config = timeout_config or TimeoutConfig()
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=self._timeout_config.stock_fetch_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def fetch_stock(self) -> StockSnapshot:
        url = f"{self._config.base_url}{self._config.stock_path}"
        session = self._get_session()

        async with session.get(url) as response:
            document = await _read_body(response)

        if not isinstance(document, dict):
            raise ValueError("Stock endpoint did not return a JSON object")

        snapshot = parse_stock_document(document)
        logger.debug(
            f"Fetched stock snapshot: "
            f"{sum(len(v) for v in snapshot.entries.values())} entries"
        )
        return snapshot

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# SUBMISSION CLIENT
# ============================================================

class LegacyBackendClient(ExternalSubmissionClient):
    """
    Legacy ordering site client.

    The site keeps the cart in a cookie session, so each
    submission runs in its own ClientSession.
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
    ):
        """
        Initialize client.

        Args:
            config: Backend configuration
            timeout_config: Timeout configuration
        """
        self._config = config or BackendConfig()
        self._timeout_config = timeout_config or TimeoutConfig()

    @property
    def backend_id(self) -> str:
        return "legacy"

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}{path}"

    # --------------------------------------------------------
    # FORM BUILDING
    # --------------------------------------------------------

    @staticmethod
    def composite_form(item: CompositeItem) -> List[Tuple[str, str]]:
        """Cart form fields for one composite unit."""
        fields: List[Tuple[str, str]] = [("selectProduct", item.size)]

        for component in item.components:
            fields.append(("viande[]", component.code))
            fields.append((f"meat_quantity[{component.code}]", str(component.quantity)))

        for modifier in item.modifiers:
            fields.append(("sauce[]", modifier.code))

        for topping in item.toppings:
            fields.append(("garniture[]", topping.code))

        if item.note:
            fields.append(("tacosNote", item.note))

        return fields

    @staticmethod
    def simple_payload(item: SimpleItem, quantity: int) -> Dict[str, Any]:
        return {
            "id": item.code,
            "name": item.name,
            "price": float(item.price) if item.price is not None else 0,
            "quantity": quantity,
        }

    def _simple_path(self, category: ItemCategory) -> str:
        return {
            ItemCategory.EXTRA: self._config.extra_path,
            ItemCategory.DRINK: self._config.drink_path,
            ItemCategory.DESSERT: self._config.dessert_path,
        }[category]

    def _units(self, quantity: int) -> List[int]:
        """Per-request quantities for a line."""
        if self._config.expand_quantities:
            return [1] * quantity
        return [quantity]

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def submit(
        self,
        basket: ExternalBasket,
        idempotency_token: str,
    ) -> SubmissionReceipt:
        delivery = basket.delivery

        timeout = aiohttp.ClientTimeout(total=self._timeout_config.submission_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            headers: Dict[str, str] = {}

            try:
                headers = await self._fetch_csrf(session)
                await self._build_cart(session, basket, headers)
            except _BackendHTTPError as e:
                raise ExternalSubmissionError(
                    f"Cart build refused: HTTP {e.status}",
                    SubmissionOutcome.REJECTED,
                    backend_code="CART_BUILD_FAILED",
                    status=e.status,
                )
            except aiohttp.ClientError as e:
                raise ExternalSubmissionError(
                    f"Cart build failed: {e}",
                    SubmissionOutcome.REJECTED,
                    backend_code="CART_BUILD_FAILED",
                )

            form = aiohttp.FormData()
            form.add_field("name", delivery.customer_name)
            form.add_field("phone", delivery.customer_phone)
            form.add_field("confirmPhone", delivery.customer_phone)
            if delivery.address:
                form.add_field("address", delivery.address)
            form.add_field("type", delivery.delivery_type.value)
            if delivery.requested_for:
                form.add_field("requestedFor", delivery.requested_for)
            form.add_field("transaction_id", idempotency_token)

            try:
                async with session.post(
                    self._url(self._config.order_path),
                    data=form,
                    headers=headers,
                ) as response:
                    body = await _read_body(response)
            except _BackendHTTPError as e:
                outcome = (
                    SubmissionOutcome.REJECTED if e.status < 500
                    else SubmissionOutcome.UNKNOWN
                )
                raise ExternalSubmissionError(
                    f"Order submission failed: HTTP {e.status}",
                    outcome,
                    backend_code="ORDER_HTTP_ERROR",
                    status=e.status,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise ExternalSubmissionError(
                    f"Order submission outcome unknown: {e}",
                    SubmissionOutcome.UNKNOWN,
                    backend_code="ORDER_TRANSPORT_ERROR",
                )

        if not isinstance(body, dict) or not body.get("orderId"):
            # Accepted at HTTP level but no order id: the order may exist
            raise ExternalSubmissionError(
                "Order response missing orderId",
                SubmissionOutcome.UNKNOWN,
                backend_code="ORDER_RESPONSE_INVALID",
            )

        logger.info(
            f"Legacy backend accepted group order {basket.group_order_id}: "
            f"order {body['orderId']}"
        )

        return SubmissionReceipt(
            external_order_id=str(body["orderId"]),
            external_transaction_id=str(body.get("transaction_id") or idempotency_token),
            raw_response=body,
            accepted_at=utcnow(),
        )

    async def _fetch_csrf(self, session: aiohttp.ClientSession) -> Dict[str, str]:
        async with session.get(self._url(self._config.csrf_path)) as response:
            body = await _read_body(response)
        token = body.get("csrf_token") if isinstance(body, dict) else None
        return {"X-CSRF-Token": token} if token else {}

    async def _build_cart(
        self,
        session: aiohttp.ClientSession,
        basket: ExternalBasket,
        headers: Dict[str, str],
    ) -> None:
        for line in basket.lines:
            if line.composite is not None:
                fields = self.composite_form(line.composite)
                # The cart endpoint has no quantity field for composites
                for _ in range(line.quantity):
                    async with session.post(
                        self._url(self._config.cart_path),
                        data=fields,
                        headers=headers,
                    ) as response:
                        await _read_body(response)

            elif line.simple is not None:
                path = self._simple_path(line.simple.category)
                for units in self._units(line.quantity):
                    async with session.post(
                        self._url(path),
                        json=self.simple_payload(line.simple, units),
                        headers=headers,
                    ) as response:
                        await _read_body(response)

        logger.debug(
            f"Built cart for group order {basket.group_order_id}: "
            f"{len(basket.lines)} lines, {basket.total_units()} units"
        )
