"""
Trade Settlement - Error Taxonomy.

============================================================
PURPOSE
============================================================
Exceptions raised by the settlement core and the error code
registry used by logging and alerting.

ERROR CATEGORIES:
1. Transition Errors - Edge not in the graph, or a lost race
2. Lookup Errors - Trade does not exist
3. Delivery Errors - Outbound settlement event not delivered
4. Configuration Errors - Invalid settings

HANDLING:
- Supervisors treat InvalidTransition as a benign skip
- TradeNotFound is skipped and logged
- DeliveryFailure never rolls back the local transition

============================================================
"""

from enum import Enum
from typing import Optional, Dict, Set
from dataclasses import dataclass


# ============================================================
# EXCEPTIONS
# ============================================================

class SettlementError(Exception):
    """Base exception for the settlement core."""

    code: str = "INT_UNEXPECTED_ERROR"


class InvalidTransition(SettlementError):
    """Requested edge is not in the graph, or a precondition failed."""

    code = "TRN_INVALID_EDGE"

    def __init__(
        self,
        trade_id: int,
        from_status: str,
        to_status: str,
        reason: str = "",
    ):
        self.trade_id = trade_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Trade {trade_id}: {from_status} -> {to_status} not allowed"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ConcurrencyConflict(InvalidTransition):
    """Another writer changed the trade between read and write."""

    code = "TRN_CONCURRENT_UPDATE"

    def __init__(
        self,
        trade_id: int,
        from_status: str,
        to_status: str,
        expected_version: Optional[int] = None,
    ):
        self.expected_version = expected_version
        super().__init__(
            trade_id,
            from_status,
            to_status,
            reason=f"stale version {expected_version}",
        )


class TradeNotFound(SettlementError):
    """No trade with the given id."""

    code = "LKP_TRADE_NOT_FOUND"

    def __init__(self, trade_id: int):
        self.trade_id = trade_id
        super().__init__(f"Trade {trade_id} not found")


class DeliveryFailure(SettlementError):
    """Settlement event not delivered after all attempts."""

    code = "DLV_RETRIES_EXHAUSTED"

    def __init__(self, event_id: str, attempts: int, last_error: Optional[str] = None):
        self.event_id = event_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Event {event_id} undelivered after {attempts} attempts: {last_error}"
        )


class MessageBusError(SettlementError):
    """One delivery attempt to the message bus failed."""

    code = "DLV_BUS_ERROR"


class ConfigurationError(SettlementError):
    """Invalid configuration value."""

    code = "CFG_INVALID_VALUE"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    TRANSITION = "TRANSITION"
    LOOKUP = "LOOKUP"
    DELIVERY = "DELIVERY"
    SWEEP = "SWEEP"
    CONFIGURATION = "CONFIGURATION"
    INTERNAL = "INTERNAL"


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Non-critical, informational."""

    ERROR = "ERROR"
    """Standard error, needs attention."""

    CRITICAL = "CRITICAL"
    """Funds may be stuck until someone acts."""


@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    severity: ErrorSeverity
    """Error severity."""

    is_retryable: bool
    """Whether a later attempt may succeed."""

    description: str
    """Human-readable description."""

    recommended_action: str
    """Recommended action to take."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== TRANSITION ERRORS ==========
    "TRN_INVALID_EDGE": ErrorCodeInfo(
        code="TRN_INVALID_EDGE",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Requested status change is not allowed from the current status",
        recommended_action="Re-read the trade; the request is usually a duplicate",
    ),
    "TRN_CONCURRENT_UPDATE": ErrorCodeInfo(
        code="TRN_CONCURRENT_UPDATE",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Trade was modified by another writer",
        recommended_action="Retry against the fresh status",
    ),

    # ========== LOOKUP ERRORS ==========
    "LKP_TRADE_NOT_FOUND": ErrorCodeInfo(
        code="LKP_TRADE_NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Trade does not exist",
        recommended_action="Check the identifier in the inbound message",
    ),

    # ========== DELIVERY ERRORS ==========
    "DLV_RETRIES_EXHAUSTED": ErrorCodeInfo(
        code="DLV_RETRIES_EXHAUSTED",
        category=ErrorCategory.DELIVERY,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Settlement event not delivered to the message bus",
        recommended_action="Re-publish failed events once the bus is reachable",
    ),

    "DLV_BUS_ERROR": ErrorCodeInfo(
        code="DLV_BUS_ERROR",
        category=ErrorCategory.DELIVERY,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Message bus rejected or dropped one delivery attempt",
        recommended_action="None; the publisher retries",
    ),

    # ========== SWEEP ERRORS ==========
    "SWP_RECORD_FAILED": ErrorCodeInfo(
        code="SWP_RECORD_FAILED",
        category=ErrorCategory.SWEEP,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Sweep failed to process a trade",
        recommended_action="Next cycle retries; investigate if it repeats",
    ),
    "SWP_CYCLE_FAILED": ErrorCodeInfo(
        code="SWP_CYCLE_FAILED",
        category=ErrorCategory.SWEEP,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Sweep cycle aborted before processing candidates",
        recommended_action="Check store connectivity",
    ),

    # ========== CONFIGURATION ERRORS ==========
    "CFG_INVALID_VALUE": ErrorCodeInfo(
        code="CFG_INVALID_VALUE",
        category=ErrorCategory.CONFIGURATION,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Configuration value is invalid",
        recommended_action="Fix the SETTLEMENT_* environment variables",
    ),

    # ========== INTERNAL ERRORS ==========
    "INT_UNEXPECTED_ERROR": ErrorCodeInfo(
        code="INT_UNEXPECTED_ERROR",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Unexpected internal error",
        recommended_action="Investigate error logs",
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
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def error_code_for(exc: BaseException, default: str = "INT_UNEXPECTED_ERROR") -> str:
    """Registry code of an exception; other exceptions map to `default`."""
    if isinstance(exc, SettlementError):
        return exc.code
    return default


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

CRITICAL_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items()
    if info.severity == ErrorSeverity.CRITICAL
}
