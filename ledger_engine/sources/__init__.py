"""
Ledger Engine - Upstream Sources.

Trade history and balance sources: the signed Kraken client for
live mode and the synthetic generator for paper sessions.
"""

from .base import (
    AccountBalanceSource,
    TradeHistorySource,
    TradePage,
    parse_trade_entries,
)
from .kraken import KrakenRESTClient, normalize_asset
from .synthetic import SyntheticTradeSource


__all__ = [
    "TradeHistorySource",
    "AccountBalanceSource",
    "TradePage",
    "parse_trade_entries",
    "KrakenRESTClient",
    "normalize_asset",
    "SyntheticTradeSource",
]
