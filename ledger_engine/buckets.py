"""
Ledger Engine - Hour Buckets and Key Layout.

Trades are partitioned by the UTC hour of their timestamp. A trade
belongs to exactly one bucket, determined solely by its timestamp.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List

from ledger_engine.types import TradeRecord


METADATA_FIELD = "_metadata"

_HOUR = timedelta(hours=1)


def floor_to_hour(moment: datetime) -> datetime:
    """Truncate a datetime to the start of its UTC hour."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def hour_label(moment: datetime) -> str:
    """YYYY-MM-DD-HH label of the hour containing `moment`."""
    return floor_to_hour(moment).strftime("%Y-%m-%d-%H")


class KeyLayout:
    """Builds every key a ledger cache instance touches."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    def bucket(self, moment: datetime) -> str:
        return f"{self.prefix}:trades:{hour_label(moment)}"

    def trade(self, trade_id: str) -> str:
        return f"{self.prefix}:trade:{trade_id}"

    def pair(self, pair: str) -> str:
        return f"{self.prefix}:pair:{pair}"

    @property
    def timeline(self) -> str:
        return f"{self.prefix}:timeline"

    @property
    def namespace(self) -> str:
        return f"{self.prefix}:"

    def hour_keys(self, start: datetime, end: datetime) -> List[str]:
        """Bucket keys from start to end inclusive, oldest first."""
        return [self.bucket(hour) for hour in iterate_hours(start, end)]


def iterate_hours(start: datetime, end: datetime) -> Iterable[datetime]:
    """Yield hour starts covering [start, end], oldest first."""
    current = floor_to_hour(start)
    last = floor_to_hour(end)
    while current <= last:
        yield current
        current += _HOUR


def group_by_hour(trades: Iterable[TradeRecord]) -> Dict[datetime, List[TradeRecord]]:
    """Group trades by the hour bucket they belong to, in first-seen order."""
    groups: Dict[datetime, List[TradeRecord]] = OrderedDict()
    for trade in trades:
        groups.setdefault(floor_to_hour(trade.timestamp), []).append(trade)
    return groups
