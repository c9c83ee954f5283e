"""
Group Ordering Package.

============================================================
PURPOSE
============================================================
Collects food orders from many participants into one shared
group order and hands the aggregate to a legacy, non-idempotent
ordering backend exactly once.

CRITICAL PRINCIPLE:
    "EXPIRED is derived, never stored."
    "A group order reaches the backend exactly once."

AUTHORITY BOUNDARIES:
    LEADER CAN:
        - Update, close and finalize the group order
        - Submit the aggregate to the backend
        - Mark participants reimbursed

    PARTICIPANT CAN:
        - Edit, submit and delete their own order while OPEN
        - Mark their own order paid

============================================================
MODULES
============================================================
- types: Statuses, items, orders, stock, exceptions
- config: Configuration
- errors: Error taxonomy and codes
- state_machine: Effective status and transition guard
- identity: Deterministic item ids
- validation: Mutation, shape and availability checks
- codec: Versioned item bag encoding
- basket: External basket and summary
- adapters: Stock source and ordering backend (legacy, mock)
- notifications: Notifiers and fire-and-forget dispatcher
- models: ORM models for persistence
- database: Async engine and sessions
- repository: Store interfaces and SQL implementations
- memory: In-memory stores
- orchestrator: Lifecycle transitions and backend submission
- service: Caller-facing operations
- logging_setup: Logging configuration

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    GroupOrderStatus,
    ParticipantOrderStatus,
    ItemCategory,
    StockCategory,
    DeliveryType,
    SubmissionOutcome,
    # Dataclasses
    Selection,
    CompositeItem,
    SimpleItem,
    OrderItems,
    GroupOrder,
    ParticipantOrder,
    StockEntry,
    StockSnapshot,
    DeliveryDetails,
    BasketLine,
    ExternalBasket,
    SubmissionReceipt,
    # Exceptions
    GroupOrderingError,
    NotFoundError,
    UnauthorizedError,
    InvalidStatusError,
    OutOfStockError,
    EmptyOrderError,
    NothingToSubmitError,
    InvalidItemError,
    InvalidGroupOrderError,
    ConcurrentModificationError,
    StockUnavailableError,
    ItemsDecodeError,
    ExternalSubmissionError,
    # Helpers
    utcnow,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    TimeoutConfig,
    IdempotencyConfig,
    CompositeRulesConfig,
    GroupOrderPolicyConfig,
    BackendConfig,
    NotificationConfig,
    DatabaseConfig,
    GroupOrderingConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    to_error_response,
)

# ============================================================
# CORE
# ============================================================
from .state_machine import (
    effective_status,
    can_accept_mutations,
    TransitionGuard,
    GroupOrderTransition,
    VALID_TRANSITIONS,
)
from .identity import identify_composite, identify_simple, assign_item_ids
from .validation import OrderAggregationValidator, ValidationResult, raise_for_result
from .codec import ITEMS_SCHEMA_VERSION, encode_items, decode_items
from .basket import build_basket, summarize, GroupOrderSummary, CategorySummary

# ============================================================
# ADAPTERS / NOTIFICATIONS
# ============================================================
from .adapters import (
    ExternalSubmissionClient,
    StockSnapshotProvider,
    LegacyBackendClient,
    LegacyStockProvider,
    MockSubmissionClient,
    StaticStockProvider,
)
from .notifications import (
    NotificationType,
    Notification,
    Notifier,
    LoggingNotifier,
    PushGatewayNotifier,
    NotificationDispatcher,
)

# ============================================================
# PERSISTENCE
# ============================================================
from .repository import (
    GroupOrderRepository,
    ParticipantOrderStore,
    SqlGroupOrderRepository,
    SqlParticipantOrderStore,
)
from .memory import InMemoryGroupOrderRepository, InMemoryParticipantOrderStore
from .database import create_engine_from_config, create_session_factory, create_all_tables

# ============================================================
# SERVICES
# ============================================================
from .orchestrator import SubmissionOrchestrator, SubmissionResult
from .service import GroupOrderService, GroupOrderView
from .logging_setup import setup_logging


__version__ = "1.0.0"

__all__ = [
    # Types
    "GroupOrderStatus",
    "ParticipantOrderStatus",
    "ItemCategory",
    "StockCategory",
    "DeliveryType",
    "SubmissionOutcome",
    "Selection",
    "CompositeItem",
    "SimpleItem",
    "OrderItems",
    "GroupOrder",
    "ParticipantOrder",
    "StockEntry",
    "StockSnapshot",
    "DeliveryDetails",
    "BasketLine",
    "ExternalBasket",
    "SubmissionReceipt",
    "GroupOrderingError",
    "NotFoundError",
    "UnauthorizedError",
    "InvalidStatusError",
    "OutOfStockError",
    "EmptyOrderError",
    "NothingToSubmitError",
    "InvalidItemError",
    "InvalidGroupOrderError",
    "ConcurrentModificationError",
    "StockUnavailableError",
    "ItemsDecodeError",
    "ExternalSubmissionError",
    "utcnow",
    # Config
    "TimeoutConfig",
    "IdempotencyConfig",
    "CompositeRulesConfig",
    "GroupOrderPolicyConfig",
    "BackendConfig",
    "NotificationConfig",
    "DatabaseConfig",
    "GroupOrderingConfig",
    # Errors
    "ErrorCategory",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "to_error_response",
    # Core
    "effective_status",
    "can_accept_mutations",
    "TransitionGuard",
    "GroupOrderTransition",
    "VALID_TRANSITIONS",
    "identify_composite",
    "identify_simple",
    "assign_item_ids",
    "OrderAggregationValidator",
    "ValidationResult",
    "raise_for_result",
    "ITEMS_SCHEMA_VERSION",
    "encode_items",
    "decode_items",
    "build_basket",
    "summarize",
    "GroupOrderSummary",
    "CategorySummary",
    # Adapters / notifications
    "ExternalSubmissionClient",
    "StockSnapshotProvider",
    "LegacyBackendClient",
    "LegacyStockProvider",
    "MockSubmissionClient",
    "StaticStockProvider",
    "NotificationType",
    "Notification",
    "Notifier",
    "LoggingNotifier",
    "PushGatewayNotifier",
    "NotificationDispatcher",
    # Persistence
    "GroupOrderRepository",
    "ParticipantOrderStore",
    "SqlGroupOrderRepository",
    "SqlParticipantOrderStore",
    "InMemoryGroupOrderRepository",
    "InMemoryParticipantOrderStore",
    "create_engine_from_config",
    "create_session_factory",
    "create_all_tables",
    # Services
    "SubmissionOrchestrator",
    "SubmissionResult",
    "GroupOrderService",
    "GroupOrderView",
    "setup_logging",
]
