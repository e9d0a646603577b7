"""
Settlement Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Registry of every error code the engine can surface.

ERROR CATEGORIES:
1. Validation Errors - Placement rejected before any state change
2. Ledger Errors - Wallet operation rejected
3. Order Errors - State machine or fill accounting rejected
4. Integrity Errors - Invariant violation or failed commit

BUSINESS vs FATAL:
- Business errors map to 4xx responses and never alert
- Fatal errors roll back, alert the operator and are never
  retried automatically

============================================================
"""

from enum import Enum
from typing import Dict, Set
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    LEDGER = "LEDGER"
    ORDER = "ORDER"
    INTEGRITY = "INTEGRITY"


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Business rejection, logged only."""

    ERROR = "ERROR"
    """Unexpected failure, contained to one operation."""

    FATAL = "FATAL"
    """Integrity at risk, requires operator action."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    http_status: int
    """Status code an API layer should answer with."""

    description: str

    is_fatal: bool = False
    """Whether this error must be reported to an operator."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "VAL_UNKNOWN_SYMBOL": ErrorCodeInfo(
        code="VAL_UNKNOWN_SYMBOL",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        http_status=404,
        description="Symbol is not registered or not active",
    ),
    "VAL_INVALID_PRICE": ErrorCodeInfo(
        code="VAL_INVALID_PRICE",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        http_status=400,
        description="Price missing for a limit order, non-positive, or no reference price available",
    ),
    "VAL_INVALID_QUANTITY": ErrorCodeInfo(
        code="VAL_INVALID_QUANTITY",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        http_status=400,
        description="Quantity must be positive",
    ),
    # ========== LEDGER ERRORS ==========
    "LED_INSUFFICIENT_FUNDS": ErrorCodeInfo(
        code="LED_INSUFFICIENT_FUNDS",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.WARNING,
        http_status=400,
        description="Available balance is below the required amount",
    ),
    "LED_INVALID_UNLOCK": ErrorCodeInfo(
        code="LED_INVALID_UNLOCK",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.ERROR,
        http_status=409,
        description="Unlock amount exceeds locked balance",
    ),
    "LED_INVALID_AMOUNT": ErrorCodeInfo(
        code="LED_INVALID_AMOUNT",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.WARNING,
        http_status=400,
        description="Amount must be positive",
    ),
    "LED_WALLET_EXISTS": ErrorCodeInfo(
        code="LED_WALLET_EXISTS",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.WARNING,
        http_status=409,
        description="Wallet already exists for this user and currency",
    ),
    "LED_WALLET_NOT_FOUND": ErrorCodeInfo(
        code="LED_WALLET_NOT_FOUND",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.WARNING,
        http_status=404,
        description="No wallet for this user and currency",
    ),
    # ========== ORDER ERRORS ==========
    "ORD_INVALID_TRANSITION": ErrorCodeInfo(
        code="ORD_INVALID_TRANSITION",
        category=ErrorCategory.ORDER,
        severity=ErrorSeverity.WARNING,
        http_status=409,
        description="Order status transition not allowed",
    ),
    "ORD_STALE_STATE": ErrorCodeInfo(
        code="ORD_STALE_STATE",
        category=ErrorCategory.ORDER,
        severity=ErrorSeverity.WARNING,
        http_status=409,
        description="Order status changed concurrently",
    ),
    "ORD_OVERFILL": ErrorCodeInfo(
        code="ORD_OVERFILL",
        category=ErrorCategory.ORDER,
        severity=ErrorSeverity.ERROR,
        http_status=409,
        description="Cumulative fill would exceed order quantity",
    ),
    "ORD_NOT_FOUND": ErrorCodeInfo(
        code="ORD_NOT_FOUND",
        category=ErrorCategory.ORDER,
        severity=ErrorSeverity.WARNING,
        http_status=404,
        description="Order does not exist or belongs to another user",
    ),
    # ========== INTEGRITY ERRORS ==========
    "INT_LEDGER_INTEGRITY": ErrorCodeInfo(
        code="INT_LEDGER_INTEGRITY",
        category=ErrorCategory.INTEGRITY,
        severity=ErrorSeverity.FATAL,
        http_status=500,
        description="Ledger invariant violated",
        is_fatal=True,
    ),
    "INT_PERSISTENCE": ErrorCodeInfo(
        code="INT_PERSISTENCE",
        category=ErrorCategory.INTEGRITY,
        severity=ErrorSeverity.FATAL,
        http_status=500,
        description="Database transaction could not complete atomically",
        is_fatal=True,
    ),
    "INT_UNKNOWN": ErrorCodeInfo(
        code="INT_UNKNOWN",
        category=ErrorCategory.INTEGRITY,
        severity=ErrorSeverity.ERROR,
        http_status=500,
        description="Unclassified internal error",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo, or the INT_UNKNOWN entry for unregistered codes
    """
    return ERROR_CODES.get(code, ERROR_CODES["INT_UNKNOWN"])


def error_code_for(exc: BaseException) -> str:
    """Error code carried by an exception, INT_UNKNOWN for foreign ones."""
    return getattr(exc, "code", None) or "INT_UNKNOWN"


def is_fatal(code: str) -> bool:
    """Check if an error code must be escalated to an operator."""
    return get_error_info(code).is_fatal


def http_status_for(code: str) -> int:
    return get_error_info(code).http_status


FATAL_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_fatal
}
