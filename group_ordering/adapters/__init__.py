"""
Group Ordering - Adapters Package.

============================================================
PURPOSE
============================================================
External adapter implementations.

AVAILABLE ADAPTERS:
- LegacyStockProvider: Legacy stock endpoint
- LegacyBackendClient: Legacy ordering site
- StaticStockProvider: For testing
- MockSubmissionClient: For testing

============================================================
"""

# Base types
from .base import (
    ExternalSubmissionClient,
    StockSnapshotProvider,
    LEGACY_STOCK_KEYS,
    parse_stock_document,
    fetch_stock_snapshot,
)

# Adapters
from .legacy import LegacyBackendClient, LegacyStockProvider
from .mock import (
    MockSubmissionClient,
    MockSubmissionConfig,
    MockBackendOrder,
    StaticStockProvider,
)


__all__ = [
    "ExternalSubmissionClient",
    "StockSnapshotProvider",
    "LEGACY_STOCK_KEYS",
    "parse_stock_document",
    "fetch_stock_snapshot",
    "LegacyBackendClient",
    "LegacyStockProvider",
    "MockSubmissionClient",
    "MockSubmissionConfig",
    "MockBackendOrder",
    "StaticStockProvider",
]
