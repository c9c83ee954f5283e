"""
Group Ordering - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the group ordering core.

CRITICAL CONSTRAINTS:
- External submission is always time-bounded
- No automatic retry of an unknown-outcome submission
- Deterministic behavior

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """
    Timeout configuration.
    """

    submission_timeout_seconds: float = 30.0
    """Bound on one external submission call (cart build + order)."""

    stock_fetch_timeout_seconds: float = 10.0
    """Bound on one stock snapshot fetch."""

    notification_timeout_seconds: float = 5.0
    """Bound on one notification delivery."""


# ============================================================
# IDEMPOTENCY CONFIGURATION
# ============================================================

@dataclass
class IdempotencyConfig:
    """
    Idempotency configuration.

    The token is generated once per Finalize -> Submit cycle and
    reused by every retry until the backend gives a definite answer.
    """

    token_prefix: str = "GO_"
    """Prefix for idempotency tokens."""

    release_token_on_rejection: bool = True
    """Discard the token after a definite rejection (nothing was created)."""


# ============================================================
# COMPOSITE ITEM RULES
# ============================================================

@dataclass
class CompositeRulesConfig:
    """
    Shape rules for composite items.
    """

    max_components_by_size: Dict[str, int] = field(default_factory=lambda: {
        "tacos_L": 1,
        "tacos_BOWL": 2,
        "tacos_L_mixte": 3,
        "tacos_XL": 3,
        "tacos_XXL": 4,
        "tacos_GIGA": 5,
    })
    """Maximum component count per size. Sizes absent here are rejected."""

    min_components: int = 1
    """Minimum component count."""

    max_modifiers: int = 3
    """Maximum modifier count."""

    sizes_without_toppings: List[str] = field(default_factory=lambda: ["tacos_BOWL"])
    """Sizes that cannot carry toppings."""

    enforce: bool = True
    """Whether shape rules are checked at all."""


# ============================================================
# GROUP ORDER POLICY
# ============================================================

@dataclass
class GroupOrderPolicyConfig:
    """
    Group order creation policy.
    """

    past_start_tolerance_seconds: float = 60.0
    """How far in the past a new window may start."""

    max_window_hours: Optional[float] = None
    """Upper bound on window length (None for unbounded)."""


# ============================================================
# BACKEND CONFIGURATION
# ============================================================

@dataclass
class BackendConfig:
    """
    Legacy ordering backend configuration.
    """

    base_url: str = "http://localhost:8080"
    """Backend base URL."""

    stock_path: str = "/office/stock_management.php?type=all"
    csrf_path: str = "/ajax/refresh_token.php"
    cart_path: str = "/ajax/owt.php"
    extra_path: str = "/ajax/ues.php"
    drink_path: str = "/ajax/ubs.php"
    dessert_path: str = "/ajax/uds.php"
    order_path: str = "/ajax/RocknRoll.php"

    expand_quantities: bool = True
    """Send N identical lines instead of one line with quantity N."""


# ============================================================
# NOTIFICATION CONFIGURATION
# ============================================================

@dataclass
class NotificationConfig:
    """
    Notification configuration.
    """

    enabled: bool = True
    """Whether notifications are sent."""

    gateway_url: str = ""
    """Push gateway endpoint. Empty means log-only."""

    gateway_token_env: str = "PUSH_GATEWAY_TOKEN"
    """Environment variable for the gateway bearer token."""

    frontend_url: str = "http://localhost:3000"
    """Base URL used to build notification links."""

    def group_order_url(self, group_order_id: str) -> str:
        """Link to a group order page."""
        return f"{self.frontend_url.rstrip('/')}/orders/{group_order_id}"


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """
    Database configuration.
    """

    url: str = "sqlite+aiosqlite:///:memory:"
    """SQLAlchemy async database URL."""

    echo: bool = False
    """Log SQL statements."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class GroupOrderingConfig:
    """
    Master configuration for the group ordering core.
    """

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    composite_rules: CompositeRulesConfig = field(default_factory=CompositeRulesConfig)
    policy: GroupOrderPolicyConfig = field(default_factory=GroupOrderPolicyConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    log_level: str = "INFO"
    """Logging level."""

    log_format: str = "text"
    """Log output format (json or text)."""

    @classmethod
    def for_testing(cls) -> "GroupOrderingConfig":
        """Get configuration for testing."""
        return cls(
            timeout=TimeoutConfig(
                submission_timeout_seconds=1.0,
                stock_fetch_timeout_seconds=1.0,
                notification_timeout_seconds=1.0,
            ),
            notification=NotificationConfig(gateway_url=""),
            database=DatabaseConfig(url="sqlite+aiosqlite:///:memory:"),
            log_level="DEBUG",
        )

    @classmethod
    def for_production(cls) -> "GroupOrderingConfig":
        """Get configuration for production."""
        return cls(
            timeout=TimeoutConfig(submission_timeout_seconds=30.0),
            policy=GroupOrderPolicyConfig(max_window_hours=24.0),
            log_format="json",
        )

    @classmethod
    def from_env(cls) -> "GroupOrderingConfig":
        """Load configuration from environment variables (and .env)."""
        load_dotenv()
        return cls(
            timeout=TimeoutConfig(
                submission_timeout_seconds=float(os.getenv("SUBMISSION_TIMEOUT_SECONDS", "30")),
                stock_fetch_timeout_seconds=float(os.getenv("STOCK_FETCH_TIMEOUT_SECONDS", "10")),
                notification_timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5")),
            ),
            idempotency=IdempotencyConfig(
                token_prefix=os.getenv("IDEMPOTENCY_TOKEN_PREFIX", "GO_"),
            ),
            backend=BackendConfig(
                base_url=os.getenv("BACKEND_API_BASE_URL", "http://localhost:8080"),
                expand_quantities=os.getenv("BACKEND_EXPAND_QUANTITIES", "true").lower() == "true",
            ),
            notification=NotificationConfig(
                enabled=os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true",
                gateway_url=os.getenv("PUSH_GATEWAY_URL", ""),
                frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            ),
            database=DatabaseConfig(
                url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:"),
                echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.timeout.submission_timeout_seconds <= 0:
            errors.append("submission_timeout_seconds must be positive")

        if self.timeout.stock_fetch_timeout_seconds <= 0:
            errors.append("stock_fetch_timeout_seconds must be positive")

        if self.composite_rules.max_modifiers < 0:
            errors.append("max_modifiers must not be negative")

        if self.log_format not in {"json", "text"}:
            errors.append("log_format must be json or text")

        return errors
