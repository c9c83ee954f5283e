"""
Group Ordering - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of every failure the core can surface, and
its translation into caller-facing error responses.

ERROR CATEGORIES:
1. Lookup Errors - Group or participant order missing
2. Authorization Errors - Wrong leader/owner
3. State Errors - Action outside the allowed lifecycle state
4. Validation Errors - Items, stock, empty baskets
5. Concurrency Errors - Lost compare-and-set
6. External Errors - Backend rejection or unknown outcome
7. Internal Errors - Corrupt stored data, bugs

RETRYABLE vs NON-RETRYABLE:
- Retryable: retry the whole operation from a fresh read
- Non-retryable: the caller must change something first

============================================================
"""

from enum import Enum
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass

from .types import GroupOrderingError


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    LOOKUP = "LOOKUP"
    AUTHORIZATION = "AUTHORIZATION"
    STATE = "STATE"
    VALIDATION = "VALIDATION"
    CONCURRENCY = "CONCURRENCY"
    EXTERNAL = "EXTERNAL"
    INTERNAL = "INTERNAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    http_status: int
    """HTTP-equivalent status for the API layer."""

    is_retryable: bool
    """Whether the same operation may succeed when retried."""

    description: str
    """Human-readable description."""

    recommended_action: str = ""
    """What the caller should do."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    "NOT_FOUND": ErrorCodeInfo(
        code="NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        http_status=404,
        is_retryable=False,
        description="Group order or participant order not found",
    ),
    "UNAUTHORIZED": ErrorCodeInfo(
        code="UNAUTHORIZED",
        category=ErrorCategory.AUTHORIZATION,
        http_status=403,
        is_retryable=False,
        description="Caller is not allowed to perform this action",
    ),
    "INVALID_STATUS": ErrorCodeInfo(
        code="INVALID_STATUS",
        category=ErrorCategory.STATE,
        http_status=409,
        is_retryable=False,
        description="Group order is not in a state that allows this action",
        recommended_action="Show the current effective status to the user",
    ),
    "OUT_OF_STOCK": ErrorCodeInfo(
        code="OUT_OF_STOCK",
        category=ErrorCategory.VALIDATION,
        http_status=422,
        is_retryable=False,
        description="One or more items are out of stock",
        recommended_action="Remove the listed items and retry",
    ),
    "EMPTY_ORDER": ErrorCodeInfo(
        code="EMPTY_ORDER",
        category=ErrorCategory.VALIDATION,
        http_status=422,
        is_retryable=False,
        description="Cannot submit an empty order",
    ),
    "NOTHING_TO_SUBMIT": ErrorCodeInfo(
        code="NOTHING_TO_SUBMIT",
        category=ErrorCategory.VALIDATION,
        http_status=422,
        is_retryable=False,
        description="No submitted participant orders to send",
    ),
    "INVALID_ITEM": ErrorCodeInfo(
        code="INVALID_ITEM",
        category=ErrorCategory.VALIDATION,
        http_status=400,
        is_retryable=False,
        description="Line item violates composition rules",
    ),
    "INVALID_GROUP_ORDER": ErrorCodeInfo(
        code="INVALID_GROUP_ORDER",
        category=ErrorCategory.VALIDATION,
        http_status=400,
        is_retryable=False,
        description="Group order details are invalid",
    ),
    "CONCURRENT_MODIFICATION": ErrorCodeInfo(
        code="CONCURRENT_MODIFICATION",
        category=ErrorCategory.CONCURRENCY,
        http_status=409,
        is_retryable=True,
        description="Group order changed while the action was running",
        recommended_action="Retry the whole operation from a fresh read",
    ),
    "EXTERNAL_REJECTED": ErrorCodeInfo(
        code="EXTERNAL_REJECTED",
        category=ErrorCategory.EXTERNAL,
        http_status=502,
        is_retryable=False,
        description="Ordering backend rejected the order",
        recommended_action="Fix the rejection cause, then submit again",
    ),
    "EXTERNAL_UNKNOWN_OUTCOME": ErrorCodeInfo(
        code="EXTERNAL_UNKNOWN_OUTCOME",
        category=ErrorCategory.EXTERNAL,
        http_status=504,
        is_retryable=True,
        description="Ordering backend did not answer; the order may exist",
        recommended_action="Retry submission; the same idempotency token is reused",
    ),
    "STOCK_UNAVAILABLE": ErrorCodeInfo(
        code="STOCK_UNAVAILABLE",
        category=ErrorCategory.EXTERNAL,
        http_status=503,
        is_retryable=True,
        description="Stock snapshot could not be fetched",
        recommended_action="Retry shortly; nothing was submitted",
    ),
    "ITEMS_DECODE_FAILED": ErrorCodeInfo(
        code="ITEMS_DECODE_FAILED",
        category=ErrorCategory.INTERNAL,
        http_status=500,
        is_retryable=False,
        description="Stored item bag could not be decoded",
        recommended_action="Investigate stored schema version",
    ),
    "INTERNAL_ERROR": ErrorCodeInfo(
        code="INTERNAL_ERROR",
        category=ErrorCategory.INTERNAL,
        http_status=500,
        is_retryable=False,
        description="Internal error",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        http_status=500,
        is_retryable=False,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


def to_error_response(error: Exception) -> Dict[str, Any]:
    """
    Translate an exception into a caller-facing error body.

    Unknown exceptions become INTERNAL_ERROR without leaking
    their message.
    """
    if isinstance(error, GroupOrderingError):
        info = get_error_info(error.code)
        message = error.message
        details = dict(error.details)
    else:
        info = get_error_info("INTERNAL_ERROR")
        message = "Internal error"
        details = {}

    return {
        "code": info.code,
        "message": message,
        "status": info.http_status,
        "retryable": info.is_retryable,
        "details": details,
    }


def http_status_for(error: Exception, default: Optional[int] = 500) -> int:
    """HTTP-equivalent status for an exception."""
    if isinstance(error, GroupOrderingError):
        return get_error_info(error.code).http_status
    return default


# ============================================================
# ERROR SETS
# ============================================================

RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

VALIDATION_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items()
    if info.category == ErrorCategory.VALIDATION
}
