"""
Ledger Engine - Backoff Controller.

Exponential backoff state machine fed by transient upstream
failures. While a deferral is active, sync attempts are skipped
instead of hitting the upstream again.

    delay(n) = min(initial * multiplier ** (n - 1), max)

A server-provided retry_after wins when it is longer.
"""

import logging
from typing import Any, Dict, Optional

from ledger_engine.clock import ClockProtocol, get_clock
from ledger_engine.config import BackoffConfig
from ledger_engine.errors import TransientUpstreamError


logger = logging.getLogger(__name__)


class BackoffController:
    """Tracks consecutive transient failures and the resulting deferral."""

    def __init__(self, config: Optional[BackoffConfig] = None, clock: Optional[ClockProtocol] = None):
        self._config = config or BackoffConfig()
        self._clock = clock or get_clock()
        self._failures = 0
        self._rate_limits = 0
        self._deferred_until = 0.0
        self._last_delay = 0.0

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def next_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        delay = self._config.initial_delay_seconds * (self._config.backoff_multiplier ** (failures - 1))
        return min(delay, self._config.max_delay_seconds)

    def record_failure(self, error: TransientUpstreamError) -> float:
        """Register a transient failure. Returns the deferral in seconds."""
        self._failures += 1
        if error.is_rate_limit:
            self._rate_limits += 1
        delay = self.next_delay(self._failures)
        if error.retry_after:
            delay = max(delay, min(error.retry_after, self._config.max_delay_seconds))
        self._last_delay = delay
        self._deferred_until = self._clock.timestamp() + delay
        logger.warning(
            f"Upstream transient failure #{self._failures} ({error.code}); "
            f"deferring syncs for {delay:.2f}s"
        )
        return delay

    def record_success(self) -> None:
        if self._failures:
            logger.info(f"Upstream recovered after {self._failures} transient failures")
        self._failures = 0
        self._deferred_until = 0.0
        self._last_delay = 0.0

    def remaining(self) -> float:
        return max(0.0, self._deferred_until - self._clock.timestamp())

    def is_deferred(self) -> bool:
        return self.remaining() > 0

    def get_state(self) -> Dict[str, Any]:
        return {
            "consecutive_failures": self._failures,
            "rate_limit_hits": self._rate_limits,
            "deferred": self.is_deferred(),
            "remaining_seconds": self.remaining(),
            "last_delay_seconds": self._last_delay,
        }
