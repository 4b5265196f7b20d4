"""
Ledger Engine - Synthetic Trade Source.

Paper-mode stand-in for the exchange trade history. Trades are
generated deterministically from (start, offset) so repeated
fetches of the same page yield the same ids, and they enter the
cache through the same path as live trades.
"""

import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from ledger_engine.sources.base import TradeHistorySource, TradePage
from ledger_engine.types import OrderSide, TradeRecord


logger = logging.getLogger(__name__)


DEFAULT_PAIRS = ("ETHUSD", "XBTUSD", "ADAUSD")


class SyntheticTradeSource(TradeHistorySource):
    """
    Generates random trades inside the requested window.

    Args:
        page_size: Trades per page
        total_trades: Trades available in total (None = unbounded)
        pairs: Pairs to draw from
        seed: Base seed for reproducible pages
    """

    def __init__(
        self,
        page_size: int = 50,
        total_trades: Optional[int] = None,
        pairs=DEFAULT_PAIRS,
        seed: Optional[int] = None,
    ):
        self._page_size = page_size
        self._total_trades = total_trades
        self._pairs = tuple(pairs)
        self._seed = seed
        self.calls = 0

    @property
    def source_id(self) -> str:
        return "synthetic"

    async def fetch_trades(
        self,
        trade_type: str,
        start: datetime,
        end: datetime,
        offset: int,
    ) -> TradePage:
        self.calls += 1
        count = self._page_size
        if self._total_trades is not None:
            count = max(0, min(count, self._total_trades - offset))

        base = int(start.timestamp())
        rng = random.Random(f"{self._seed}:{base}:{offset}")
        window = max((end - start).total_seconds(), 1.0)

        trades: List[TradeRecord] = []
        for i in range(count):
            side = rng.choice((OrderSide.BUY, OrderSide.SELL))
            if trade_type in ("buy", "sell") and side.value.lower() != trade_type:
                side = OrderSide(trade_type.upper())
            price = Decimal(str(round(1000 + rng.random() * 1000, 2)))
            volume = Decimal(str(round(0.01 + rng.random() * 0.5, 6)))
            trades.append(TradeRecord(
                id=f"SYNTH-TRADE-{base}-{offset + i}",
                pair=rng.choice(self._pairs),
                side=side,
                price=price,
                volume=volume,
                cost=(price * volume).quantize(Decimal("0.00000001")),
                fee=Decimal(str(round(rng.random() * 5, 4))),
                timestamp=start + timedelta(seconds=rng.random() * window),
                order_id=f"SYNTH-ORDER-{base}-{offset + i}",
                order_type="limit",
            ))

        logger.debug(f"Generated {len(trades)} synthetic trades at offset {offset}")
        return TradePage(
            trades=trades,
            next_offset=offset + len(trades),
            total_count=self._total_trades,
            raw_count=len(trades),
        )
