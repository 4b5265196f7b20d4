"""
Ledger Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Unified error handling for the ledger engine:
- Error code registry with retry classification
- Exception hierarchy raised across the engine
- Kraken error message mapping

============================================================
ERROR CLASSES
============================================================
1. TransientUpstreamError  - timeout / network / rate limit,
                             retried with backoff
2. DataIntegrityWarning    - malformed record, skipped and counted
3. ConfigurationError      - missing live-mode option, fatal at startup
4. AuthoritativeFetchError - live fetch failed, always surfaced
5. UpstreamError           - non-retryable upstream rejection
6. StoragePersistenceError - backing store failure

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional


logger = logging.getLogger(__name__)


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    PERMISSION = "PERMISSION"
    INVALID_REQUEST = "INVALID_REQUEST"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    CONFIGURATION = "CONFIGURATION"
    STORAGE = "STORAGE"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether an error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry on next tick
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass(frozen=True)
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    retry: RetryEligibility
    description: str

    @property
    def retryable(self) -> bool:
        return self.retry in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    "LE-NET-001": ErrorCodeInfo(
        "LE-NET-001", ErrorCategory.NETWORK, RetryEligibility.BACKOFF,
        "Connection to upstream failed",
    ),
    "LE-NET-002": ErrorCodeInfo(
        "LE-NET-002", ErrorCategory.TIMEOUT, RetryEligibility.BACKOFF,
        "Upstream request timed out",
    ),
    "LE-NET-003": ErrorCodeInfo(
        "LE-NET-003", ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF,
        "Upstream rate limit exceeded",
    ),
    "LE-EXC-001": ErrorCodeInfo(
        "LE-EXC-001", ErrorCategory.EXCHANGE_ERROR, RetryEligibility.BACKOFF,
        "Exchange temporarily unavailable",
    ),
    "LE-EXC-002": ErrorCodeInfo(
        "LE-EXC-002", ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY,
        "Exchange rejected credentials",
    ),
    "LE-EXC-003": ErrorCodeInfo(
        "LE-EXC-003", ErrorCategory.PERMISSION, RetryEligibility.NO_RETRY,
        "API key lacks permission",
    ),
    "LE-EXC-004": ErrorCodeInfo(
        "LE-EXC-004", ErrorCategory.INVALID_REQUEST, RetryEligibility.NO_RETRY,
        "Exchange rejected request arguments",
    ),
    "LE-EXC-099": ErrorCodeInfo(
        "LE-EXC-099", ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY,
        "Unclassified exchange error",
    ),
    "LE-DAT-001": ErrorCodeInfo(
        "LE-DAT-001", ErrorCategory.DATA_INTEGRITY, RetryEligibility.NO_RETRY,
        "Malformed record skipped",
    ),
    "LE-CFG-001": ErrorCodeInfo(
        "LE-CFG-001", ErrorCategory.CONFIGURATION, RetryEligibility.NO_RETRY,
        "Missing or invalid configuration",
    ),
    "LE-BAL-001": ErrorCodeInfo(
        "LE-BAL-001", ErrorCategory.EXCHANGE_ERROR, RetryEligibility.NO_RETRY,
        "Authoritative balance fetch failed",
    ),
    "LE-STO-001": ErrorCodeInfo(
        "LE-STO-001", ErrorCategory.STORAGE, RetryEligibility.RETRY,
        "Backing store operation failed",
    ),
}


def get_error_info(code: str) -> Optional[ErrorCodeInfo]:
    """Get info for an error code."""
    return ERROR_CODES.get(code)


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    info = ERROR_CODES.get(code)
    return info.retryable if info else False


# ============================================================
# EXCEPTION HIERARCHY
# ============================================================

class LedgerEngineError(Exception):
    """Base exception for the ledger engine."""

    default_code = "LE-EXC-099"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}
        self.cause = cause

    @property
    def info(self) -> Optional[ErrorCodeInfo]:
        return get_error_info(self.code)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class TransientUpstreamError(LedgerEngineError):
    """Timeout, network or rate-limit failure talking to an upstream."""

    default_code = "LE-NET-001"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, code=code, **kwargs)
        self.retry_after = retry_after

    @property
    def is_rate_limit(self) -> bool:
        return self.code == "LE-NET-003"

    @property
    def is_timeout(self) -> bool:
        return self.code == "LE-NET-002"


class UpstreamError(LedgerEngineError):
    """Upstream rejected the request and retrying will not help."""

    default_code = "LE-EXC-099"


class DataIntegrityWarning(LedgerEngineError):
    """A trade, order or fill record is malformed and must be skipped."""

    default_code = "LE-DAT-001"


class ConfigurationError(LedgerEngineError):
    """A required option is missing for the selected mode."""

    default_code = "LE-CFG-001"


class AuthoritativeFetchError(LedgerEngineError):
    """The exchange could not be read in live mode."""

    default_code = "LE-BAL-001"


class StoragePersistenceError(LedgerEngineError):
    """The backing store failed a read or write."""

    default_code = "LE-STO-001"


# ============================================================
# FACTORIES
# ============================================================

def create_timeout_error(operation: str, timeout_seconds: float) -> TransientUpstreamError:
    """Create a timeout error for an upstream operation."""
    return TransientUpstreamError(
        f"{operation} timed out after {timeout_seconds}s",
        code="LE-NET-002",
        context={"operation": operation, "timeout_seconds": timeout_seconds},
    )


def create_network_error(operation: str, cause: BaseException) -> TransientUpstreamError:
    """Create a network error for an upstream operation."""
    return TransientUpstreamError(
        f"{operation} failed: {cause}",
        code="LE-NET-001",
        context={"operation": operation},
        cause=cause,
    )


def create_rate_limit_error(
    operation: str,
    retry_after: Optional[float] = None,
) -> TransientUpstreamError:
    """Create a rate limit error."""
    return TransientUpstreamError(
        f"{operation} rate limited",
        code="LE-NET-003",
        retry_after=retry_after,
        context={"operation": operation},
    )


# ============================================================
# KRAKEN ERROR MAPPING
# ============================================================

# Kraken error prefixes to registry codes
KRAKEN_ERROR_MAP: Dict[str, str] = {
    "EAPI:Rate limit exceeded": "LE-NET-003",
    "EOrder:Rate limit exceeded": "LE-NET-003",
    "EGeneral:Too many requests": "LE-NET-003",
    "EService:Unavailable": "LE-EXC-001",
    "EService:Busy": "LE-EXC-001",
    "EService:Market in cancel_only mode": "LE-EXC-001",
    "EGeneral:Temporary lockout": "LE-NET-003",
    "EAPI:Invalid key": "LE-EXC-002",
    "EAPI:Invalid signature": "LE-EXC-002",
    "EAPI:Invalid nonce": "LE-EXC-002",
    "EGeneral:Permission denied": "LE-EXC-003",
    "EGeneral:Invalid arguments": "LE-EXC-004",
}


def map_kraken_error(
    messages: Iterable[str],
    http_status: Optional[int] = None,
    operation: str = "kraken",
) -> LedgerEngineError:
    """
    Map a Kraken error array (or HTTP status) to an engine exception.

    Args:
        messages: The `error` array from a Kraken response
        http_status: HTTP status code, if any
        operation: Operation name for context

    Returns:
        TransientUpstreamError for retryable conditions,
        UpstreamError otherwise
    """
    messages = [str(m) for m in messages or []]
    joined = "; ".join(messages) or f"HTTP {http_status}"

    code = None
    for message in messages:
        for prefix, mapped in KRAKEN_ERROR_MAP.items():
            if message.startswith(prefix):
                code = mapped
                break
        if code:
            break

    if code is None:
        if http_status == 429:
            code = "LE-NET-003"
        elif http_status in (401, 403):
            code = "LE-EXC-002"
        elif http_status and http_status >= 500:
            code = "LE-EXC-001"
        else:
            code = "LE-EXC-099"

    context = {"operation": operation, "http_status": http_status, "errors": messages}
    if is_retryable(code):
        return TransientUpstreamError(f"{operation}: {joined}", code=code, context=context)
    return UpstreamError(f"{operation}: {joined}", code=code, context=context)
