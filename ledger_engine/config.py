"""
Ledger Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the ledger engine.

Sources, in order of precedence:
1. Explicit constructor arguments / for_testing()
2. YAML file (from_yaml)
3. Environment variables, with .env support (from_env)

CRITICAL CONSTRAINTS:
- Live mode requires exchange credentials (validated at startup)
- Bounded loads: page size and total cap are always finite

============================================================
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from ledger_engine.errors import ConfigurationError
from ledger_engine.types import TradingMode


logger = logging.getLogger(__name__)


# ============================================================
# CACHE CONFIGURATION
# ============================================================

@dataclass
class CacheConfig:
    """Ledger cache key layout and retention."""

    key_prefix: str = "trade-ledger"
    """Namespace for every key this instance writes."""

    retention_seconds: int = 7 * 24 * 60 * 60
    """TTL applied to every trade key (refreshed on write)."""

    lookup_window_seconds: Optional[int] = None
    """Window scanned by un-hinted id lookups. Defaults to retention."""

    @property
    def effective_lookup_window(self) -> int:
        return self.lookup_window_seconds or self.retention_seconds


# ============================================================
# SYNC CONFIGURATION
# ============================================================

@dataclass
class SyncConfig:
    """
    Trade history synchronization.

    SAFETY: every load is bounded by max_total_trades.
    """

    batch_size: int = 50
    """Trades requested per page."""

    max_total_trades: int = 1000
    """Hard cap on trades ingested by a single load."""

    sync_interval_seconds: float = 60.0
    """Incremental sync period."""

    full_sync_interval_seconds: float = 30 * 60.0
    """Full re-sync period."""

    enable_background_sync: bool = True
    """Whether LedgerService.start() launches the sync loops."""

    trade_type: str = "all"
    """Trade type filter passed to the history source."""

    synthetic_seed: Optional[int] = None
    """Seed for the paper-mode synthetic trade source."""


@dataclass
class BackoffConfig:
    """Exponential backoff after transient upstream failures."""

    initial_delay_seconds: float = 1.0
    """Deferral after the first failure."""

    max_delay_seconds: float = 300.0
    """Cap on deferral."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""


@dataclass
class TimeoutConfig:
    """Upstream call timeouts."""

    request_timeout_seconds: float = 30.0
    """Explicit timeout around every upstream call."""

    connect_timeout_seconds: float = 10.0
    """TCP connect timeout for the HTTP session."""


# ============================================================
# BALANCE CONFIGURATION
# ============================================================

@dataclass
class BalanceConfig:
    """Balance reconstruction scope."""

    symbol: str = "BTC/USD"
    """Trading pair as BASE/QUOTE."""

    cache_ttl_seconds: float = 0.5
    """Memo TTL for computed/fetched balances."""

    initial_balances: Dict[str, Decimal] = field(default_factory=lambda: {
        "USD": Decimal("10000"),
        "BTC": Decimal("0"),
    })
    """Paper-mode starting totals per asset."""

    @property
    def assets(self) -> Tuple[str, str]:
        """(base, quote) parsed from the symbol."""
        if "/" not in self.symbol:
            raise ConfigurationError(f"Symbol must look like BASE/QUOTE: {self.symbol!r}")
        base, quote = self.symbol.split("/", 1)
        return base.strip().upper(), quote.strip().upper()


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class ExchangeConfig:
    """Exchange connection settings."""

    name: str = "kraken"

    base_url: str = "https://api.kraken.com"

    api_key_env: str = "KRAKEN_API_KEY"
    """Environment variable holding the API key."""

    api_secret_env: str = "KRAKEN_API_SECRET"
    """Environment variable holding the base64 API secret."""

    api_key: Optional[str] = None
    """Explicit key (overrides the env var)."""

    api_secret: Optional[str] = None
    """Explicit secret (overrides the env var)."""

    def get_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        """Resolve (key, secret) from explicit values or the environment."""
        return (
            self.api_key or os.getenv(self.api_key_env),
            self.api_secret or os.getenv(self.api_secret_env),
        )

    def has_credentials(self) -> bool:
        key, secret = self.get_credentials()
        return bool(key) and bool(secret)


# ============================================================
# STORAGE CONFIGURATION
# ============================================================

@dataclass
class StorageConfig:
    """Backing stores."""

    kv_backend: str = "memory"
    """Key-value adapter: 'memory' or 'sql'."""

    database_url: Optional[str] = None
    """SQLAlchemy URL for the SQL adapters."""

    pool_size: int = 5

    max_overflow: int = 10

    pool_recycle_seconds: int = 3600

    echo: bool = False


# ============================================================
# MASTER CONFIGURATION
# ============================================================

_SECTIONS = ("cache", "sync", "backoff", "timeouts", "balance", "exchange", "storage")


@dataclass
class LedgerEngineConfig:
    """
    Master configuration for one ledger engine instance.

    One instance serves exactly one trading scope.
    """

    mode: TradingMode = TradingMode.PAPER

    scope_id: str = "default"
    """Trading scope (session/account) this instance serves."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @property
    def paper_mode(self) -> bool:
        return self.mode == TradingMode.PAPER

    def validate(self) -> None:
        """
        Check the configuration is usable.

        Raises:
            ConfigurationError: on the first invalid option
        """
        if self.sync.batch_size <= 0:
            raise ConfigurationError("sync.batch_size must be positive")
        if self.sync.max_total_trades <= 0:
            raise ConfigurationError("sync.max_total_trades must be positive")
        if self.sync.sync_interval_seconds <= 0 or self.sync.full_sync_interval_seconds <= 0:
            raise ConfigurationError("sync intervals must be positive")
        if self.cache.retention_seconds <= 0:
            raise ConfigurationError("cache.retention_seconds must be positive")
        if self.timeouts.request_timeout_seconds <= 0:
            raise ConfigurationError("timeouts.request_timeout_seconds must be positive")
        if self.backoff.backoff_multiplier < 1:
            raise ConfigurationError("backoff.backoff_multiplier must be >= 1")
        base, quote = self.balance.assets
        if not base or not quote or base == quote:
            raise ConfigurationError(f"Invalid trading pair: {self.balance.symbol!r}")
        if self.storage.kv_backend not in ("memory", "sql"):
            raise ConfigurationError(f"Unknown kv_backend: {self.storage.kv_backend!r}")
        if self.storage.kv_backend == "sql" and not self.storage.database_url:
            raise ConfigurationError("storage.database_url is required for the sql backend")
        if self.mode == TradingMode.LIVE and not self.exchange.has_credentials():
            raise ConfigurationError(
                f"Live mode requires {self.exchange.api_key_env} and {self.exchange.api_secret_env}",
                context={"scope_id": self.scope_id},
            )

    # --------------------------------------------------------
    # FACTORIES
    # --------------------------------------------------------

    @classmethod
    def for_testing(cls) -> "LedgerEngineConfig":
        """Small pages, short intervals, no backoff wait."""
        return cls(
            mode=TradingMode.PAPER,
            scope_id="test",
            cache=CacheConfig(key_prefix="test-ledger"),
            sync=SyncConfig(
                batch_size=5,
                max_total_trades=20,
                sync_interval_seconds=0.05,
                full_sync_interval_seconds=0.2,
                enable_background_sync=False,
                synthetic_seed=42,
            ),
            backoff=BackoffConfig(initial_delay_seconds=0.01, max_delay_seconds=0.05),
            timeouts=TimeoutConfig(request_timeout_seconds=1.0, connect_timeout_seconds=1.0),
            balance=BalanceConfig(
                symbol="BTC/USD",
                cache_ttl_seconds=0.5,
                initial_balances={"USD": Decimal("1000"), "BTC": Decimal("0")},
            ),
        )

    @classmethod
    def from_env(cls, dotenv_path: Optional[Union[str, Path]] = None) -> "LedgerEngineConfig":
        """
        Load configuration from environment variables (.env honored).

        Environment variables:
        - LEDGER_MODE (paper | live)
        - LEDGER_SCOPE_ID
        - LEDGER_KEY_PREFIX
        - LEDGER_RETENTION_SECONDS
        - LEDGER_BATCH_SIZE
        - LEDGER_MAX_TOTAL_TRADES
        - LEDGER_SYNC_INTERVAL
        - LEDGER_FULL_SYNC_INTERVAL
        - LEDGER_BACKGROUND_SYNC
        - LEDGER_REQUEST_TIMEOUT
        - LEDGER_BACKOFF_INITIAL / LEDGER_BACKOFF_MAX / LEDGER_BACKOFF_MULTIPLIER
        - LEDGER_SYMBOL
        - LEDGER_BALANCE_CACHE_TTL
        - LEDGER_INITIAL_BALANCES (e.g. "USD=1000,BTC=0")
        - LEDGER_KV_BACKEND
        - LEDGER_DATABASE_URL
        """
        load_dotenv(dotenv_path)
        config = cls()

        if os.getenv("LEDGER_MODE"):
            config.mode = _parse_mode(os.getenv("LEDGER_MODE"))
        if os.getenv("LEDGER_SCOPE_ID"):
            config.scope_id = os.getenv("LEDGER_SCOPE_ID")

        if os.getenv("LEDGER_KEY_PREFIX"):
            config.cache.key_prefix = os.getenv("LEDGER_KEY_PREFIX")
        if os.getenv("LEDGER_RETENTION_SECONDS"):
            config.cache.retention_seconds = int(os.getenv("LEDGER_RETENTION_SECONDS"))

        if os.getenv("LEDGER_BATCH_SIZE"):
            config.sync.batch_size = int(os.getenv("LEDGER_BATCH_SIZE"))
        if os.getenv("LEDGER_MAX_TOTAL_TRADES"):
            config.sync.max_total_trades = int(os.getenv("LEDGER_MAX_TOTAL_TRADES"))
        if os.getenv("LEDGER_SYNC_INTERVAL"):
            config.sync.sync_interval_seconds = float(os.getenv("LEDGER_SYNC_INTERVAL"))
        if os.getenv("LEDGER_FULL_SYNC_INTERVAL"):
            config.sync.full_sync_interval_seconds = float(os.getenv("LEDGER_FULL_SYNC_INTERVAL"))
        if os.getenv("LEDGER_BACKGROUND_SYNC"):
            config.sync.enable_background_sync = _parse_bool(os.getenv("LEDGER_BACKGROUND_SYNC"))

        if os.getenv("LEDGER_REQUEST_TIMEOUT"):
            config.timeouts.request_timeout_seconds = float(os.getenv("LEDGER_REQUEST_TIMEOUT"))
        if os.getenv("LEDGER_BACKOFF_INITIAL"):
            config.backoff.initial_delay_seconds = float(os.getenv("LEDGER_BACKOFF_INITIAL"))
        if os.getenv("LEDGER_BACKOFF_MAX"):
            config.backoff.max_delay_seconds = float(os.getenv("LEDGER_BACKOFF_MAX"))
        if os.getenv("LEDGER_BACKOFF_MULTIPLIER"):
            config.backoff.backoff_multiplier = float(os.getenv("LEDGER_BACKOFF_MULTIPLIER"))

        if os.getenv("LEDGER_SYMBOL"):
            config.balance.symbol = os.getenv("LEDGER_SYMBOL")
        if os.getenv("LEDGER_BALANCE_CACHE_TTL"):
            config.balance.cache_ttl_seconds = float(os.getenv("LEDGER_BALANCE_CACHE_TTL"))
        if os.getenv("LEDGER_INITIAL_BALANCES"):
            config.balance.initial_balances = _parse_balances(os.getenv("LEDGER_INITIAL_BALANCES"))

        if os.getenv("LEDGER_KV_BACKEND"):
            config.storage.kv_backend = os.getenv("LEDGER_KV_BACKEND")
        if os.getenv("LEDGER_DATABASE_URL"):
            config.storage.database_url = os.getenv("LEDGER_DATABASE_URL")

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "LedgerEngineConfig":
        """
        Load configuration from a YAML file.

        Top-level keys: mode, scope_id and one mapping per section
        (cache, sync, backoff, timeouts, balance, exchange, storage).

        Raises:
            ConfigurationError: unreadable file or unknown section
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load YAML config from {path}: {e}", cause=e)
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"YAML config {path} must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LedgerEngineConfig":
        config = cls()
        for key, value in data.items():
            if key == "mode":
                config.mode = _parse_mode(value)
            elif key == "scope_id":
                config.scope_id = str(value)
            elif key in _SECTIONS:
                if not isinstance(value, Mapping):
                    raise ConfigurationError(f"Config section '{key}' must be a mapping")
                _update_section(getattr(config, key), value, key)
            else:
                logger.warning(f"Ignoring unknown config key '{key}'")
        if "balance" in data and "initial_balances" in data["balance"]:
            config.balance.initial_balances = {
                str(asset).upper(): Decimal(str(amount))
                for asset, amount in data["balance"]["initial_balances"].items()
            }
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, secrets masked."""
        result = {"mode": self.mode.value, "scope_id": self.scope_id}
        for name in _SECTIONS:
            result[name] = asdict(getattr(self, name))
        result["exchange"]["api_key"] = "***" if self.exchange.api_key else None
        result["exchange"]["api_secret"] = "***" if self.exchange.api_secret else None
        result["balance"]["initial_balances"] = {
            asset: str(amount) for asset, amount in self.balance.initial_balances.items()
        }
        return result


# ============================================================
# HELPERS
# ============================================================

def _parse_mode(value: Any) -> TradingMode:
    if isinstance(value, TradingMode):
        return value
    try:
        return TradingMode(str(value).upper())
    except ValueError:
        raise ConfigurationError(f"Unknown trading mode: {value!r}")


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_balances(value: str) -> Dict[str, Decimal]:
    """Parse "USD=1000,BTC=0.5"."""
    balances = {}
    for item in value.split(","):
        if not item.strip():
            continue
        if "=" not in item:
            raise ConfigurationError(f"Malformed initial balance entry: {item!r}")
        asset, amount = item.split("=", 1)
        balances[asset.strip().upper()] = Decimal(amount.strip())
    return balances


def _update_section(section: Any, values: Mapping[str, Any], name: str) -> None:
    known = {f.name for f in fields(section)} if is_dataclass(section) else set()
    for key, value in values.items():
        if key == "initial_balances":
            continue
        if key not in known:
            logger.warning(f"Ignoring unknown option '{name}.{key}'")
            continue
        setattr(section, key, value)
