"""
Ledger Engine.

============================================================
PURPOSE
============================================================
Performance and consistency layer behind a trading account's
order/fill history:

- Ledger cache: hour-bucketed trade history with paginated
  bulk load and incremental background sync
- Position reconstructor: orders + fills -> open positions
- Balance reconstructor: paper-mode derivation, live-mode
  exchange authority

One instance serves exactly one trading scope.

============================================================
"""

from .types import (
    AssetBalance,
    BalanceSnapshot,
    Fill,
    HourBucketMetadata,
    Order,
    OrderCandidate,
    OrderSide,
    OrderStatus,
    Position,
    PositionReport,
    TradeRecord,
    TradingMode,
)
from .errors import (
    AuthoritativeFetchError,
    ConfigurationError,
    DataIntegrityWarning,
    ErrorCategory,
    LedgerEngineError,
    RetryEligibility,
    StoragePersistenceError,
    TransientUpstreamError,
    UpstreamError,
    get_error_info,
    is_retryable,
    map_kraken_error,
)
from .config import (
    BackoffConfig,
    BalanceConfig,
    CacheConfig,
    ExchangeConfig,
    LedgerEngineConfig,
    StorageConfig,
    SyncConfig,
    TimeoutConfig,
)
from .clock import ClockProtocol, MockClock, SystemClock
from .cache import LedgerCache, PutResult
from .backoff import BackoffController
from .sync import SyncCoordinator, SyncKind, SyncResult
from .positions import (
    aggregate_positions,
    count_open_positions,
    derive_open_positions,
    has_open_positions,
)
from .balances import BalanceReconstructor, reconstruct_paper_balances
from .service import LedgerService


__all__ = [
    # Types
    "TradeRecord",
    "HourBucketMetadata",
    "Order",
    "Fill",
    "OrderCandidate",
    "OrderSide",
    "OrderStatus",
    "TradingMode",
    "Position",
    "PositionReport",
    "AssetBalance",
    "BalanceSnapshot",
    # Errors
    "LedgerEngineError",
    "TransientUpstreamError",
    "UpstreamError",
    "DataIntegrityWarning",
    "ConfigurationError",
    "AuthoritativeFetchError",
    "StoragePersistenceError",
    "ErrorCategory",
    "RetryEligibility",
    "get_error_info",
    "is_retryable",
    "map_kraken_error",
    # Config
    "LedgerEngineConfig",
    "CacheConfig",
    "SyncConfig",
    "BackoffConfig",
    "TimeoutConfig",
    "BalanceConfig",
    "ExchangeConfig",
    "StorageConfig",
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    # Components
    "LedgerCache",
    "PutResult",
    "BackoffController",
    "SyncCoordinator",
    "SyncKind",
    "SyncResult",
    "derive_open_positions",
    "has_open_positions",
    "count_open_positions",
    "aggregate_positions",
    "BalanceReconstructor",
    "reconstruct_paper_balances",
    "LedgerService",
]
