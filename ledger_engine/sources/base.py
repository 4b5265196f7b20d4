"""
Ledger Engine - Upstream Source Interfaces.

============================================================
PURPOSE
============================================================
Abstract interfaces for the two upstream collaborators:

- TradeHistorySource:   paginated trade history (sync input)
- AccountBalanceSource: authoritative balances (live mode)

Implementations raise TransientUpstreamError for timeouts,
network failures and rate limits, UpstreamError for requests
that will not succeed on retry.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ledger_engine.errors import DataIntegrityWarning
from ledger_engine.types import AssetBalance, TradeRecord


logger = logging.getLogger(__name__)


@dataclass
class TradePage:
    """One page of trade history."""

    trades: List[TradeRecord] = field(default_factory=list)
    next_offset: int = 0
    total_count: Optional[int] = None
    raw_count: int = 0
    """Entries the upstream returned, including ones skipped as malformed."""

    skipped: int = 0


class TradeHistorySource(ABC):
    """Paginated source of executed trades."""

    @property
    @abstractmethod
    def source_id(self) -> str:
        pass

    @abstractmethod
    async def fetch_trades(
        self,
        trade_type: str,
        start: datetime,
        end: datetime,
        offset: int,
    ) -> TradePage:
        """
        Fetch one page of trades in [start, end] starting at offset.

        next_offset of the returned page must be greater than offset
        whenever the page is non-empty.
        """
        pass

    async def close(self) -> None:
        pass


class AccountBalanceSource(ABC):
    """Authoritative per-asset balances."""

    @abstractmethod
    async def fetch_balances(self) -> Dict[str, AssetBalance]:
        pass

    async def close(self) -> None:
        pass


def parse_trade_entries(entries: Mapping[str, Any]) -> Tuple[List[TradeRecord], int]:
    """
    Parse an {id: raw trade} mapping, skipping malformed entries.

    Returns:
        (trades, skipped count)
    """
    trades = []
    skipped = 0
    for trade_id, raw in entries.items():
        try:
            trades.append(TradeRecord.from_exchange(trade_id, raw))
        except DataIntegrityWarning as e:
            skipped += 1
            logger.warning(f"Skipping malformed trade {trade_id}: {e}")
    return trades, skipped
