"""
Ledger Engine - Kraken REST Client.

============================================================
PURPOSE
============================================================
Live upstream for the ledger engine:
- TradesHistory: paginated trade history for sync
- BalanceEx:     authoritative balances for live mode

============================================================
SIGNING
============================================================
API-Sign = base64(HMAC-SHA512(base64decode(secret),
                              path + SHA256(nonce + postdata)))
Nonces are microsecond timestamps, strictly increasing per client.

============================================================
"""

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from ledger_engine.config import ExchangeConfig, TimeoutConfig
from ledger_engine.errors import (
    ConfigurationError,
    DataIntegrityWarning,
    create_network_error,
    create_timeout_error,
    map_kraken_error,
)
from ledger_engine.logging_utils import mask_headers, mask_params
from ledger_engine.sources.base import (
    AccountBalanceSource,
    TradeHistorySource,
    TradePage,
    parse_trade_entries,
)
from ledger_engine.types import AssetBalance, to_decimal


logger = logging.getLogger(__name__)


TRADES_HISTORY_PATH = "/0/private/TradesHistory"
BALANCE_EX_PATH = "/0/private/BalanceEx"

# Kraken legacy asset codes to common tickers
KRAKEN_ASSET_ALIASES = {
    "XXBT": "BTC",
    "XBT": "BTC",
    "XETH": "ETH",
    "XXRP": "XRP",
    "XLTC": "LTC",
    "XXLM": "XLM",
    "XXDG": "DOGE",
    "XDG": "DOGE",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "ZGBP": "GBP",
    "ZCAD": "CAD",
    "ZJPY": "JPY",
}


def normalize_asset(code: str) -> str:
    """Map a Kraken asset code to its common ticker."""
    code = code.upper()
    return KRAKEN_ASSET_ALIASES.get(code, code)


class KrakenRESTClient(TradeHistorySource, AccountBalanceSource):
    """
    Signed Kraken private-endpoint client.

    Args:
        config: Exchange configuration (credentials resolved from env)
        timeout_config: Request timeouts
        session: Optional externally owned aiohttp session
    """

    def __init__(
        self,
        config: Optional[ExchangeConfig] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or ExchangeConfig()
        self._timeout_config = timeout_config or TimeoutConfig()

        api_key, api_secret = self._config.get_credentials()
        if not api_key or not api_secret:
            raise ConfigurationError(
                f"Kraken credentials missing: set {self._config.api_key_env} "
                f"and {self._config.api_secret_env}"
            )
        try:
            self._secret = base64.b64decode(api_secret, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError("Kraken API secret is not valid base64", cause=e)
        self._api_key = api_key

        self._session = session
        self._owns_session = session is None
        self._last_nonce = 0
        self.api_calls = 0

    @property
    def source_id(self) -> str:
        return "kraken"

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _next_nonce(self) -> int:
        nonce = max(int(time.time() * 1_000_000), self._last_nonce + 1)
        self._last_nonce = nonce
        return nonce

    def sign(self, path: str, data: Dict[str, Any]) -> str:
        """Compute API-Sign for a payload that already carries its nonce."""
        post_data = urlencode(data)
        encoded = (str(data["nonce"]) + post_data).encode()
        message = path.encode() + hashlib.sha256(encoded).digest()
        mac = hmac.new(self._secret, message, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    # --------------------------------------------------------
    # TRANSPORT
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._timeout_config.connect_timeout_seconds,
                total=self._timeout_config.request_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _private(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """POST a signed private request and return its `result`."""
        data = dict(params or {})
        data["nonce"] = self._next_nonce()
        headers = {
            "API-Key": self._api_key,
            "API-Sign": self.sign(path, data),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        url = f"{self._config.base_url}{path}"
        logger.debug(f"POST {path} params={mask_params(data)} headers={mask_headers(headers)}")

        self.api_calls += 1
        try:
            async with self._get_session().post(url, data=urlencode(data), headers=headers) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                if response.status != 200 or not isinstance(body, dict):
                    errors = body.get("error", []) if isinstance(body, dict) else []
                    raise map_kraken_error(errors, http_status=response.status, operation=path)
                if body.get("error"):
                    raise map_kraken_error(body["error"], http_status=response.status, operation=path)
                return body.get("result", {})
        except aiohttp.ClientError as e:
            raise create_network_error(path, e)
        except asyncio.TimeoutError:
            raise create_timeout_error(path, self._timeout_config.request_timeout_seconds)

    # --------------------------------------------------------
    # TRADE HISTORY
    # --------------------------------------------------------

    async def fetch_trades(
        self,
        trade_type: str,
        start: datetime,
        end: datetime,
        offset: int,
    ) -> TradePage:
        result = await self._private(TRADES_HISTORY_PATH, {
            "type": trade_type,
            "trades": "true",
            "start": int(start.timestamp()),
            "end": int(end.timestamp()),
            "ofs": offset,
        })
        entries = result.get("trades") or {}
        trades, skipped = parse_trade_entries(entries)
        count = result.get("count")
        logger.debug(f"TradesHistory ofs={offset}: {len(entries)} entries, count={count}")
        return TradePage(
            trades=trades,
            next_offset=offset + len(entries),
            total_count=int(count) if count is not None else None,
            raw_count=len(entries),
            skipped=skipped,
        )

    # --------------------------------------------------------
    # BALANCES
    # --------------------------------------------------------

    async def fetch_balances(self) -> Dict[str, AssetBalance]:
        result = await self._private(BALANCE_EX_PATH)
        balances: Dict[str, AssetBalance] = {}
        for code, raw in (result or {}).items():
            try:
                if isinstance(raw, dict):
                    total = to_decimal(raw.get("balance"), "balance")
                    reserved = to_decimal(raw.get("hold_trade"), "hold_trade", required=False) or Decimal("0")
                else:
                    total = to_decimal(raw, "balance")
                    reserved = Decimal("0")
            except DataIntegrityWarning as e:
                logger.warning(f"Skipping malformed balance for {code}: {e}")
                continue
            asset = normalize_asset(code)
            balances[asset] = AssetBalance(asset=asset, total=total, reserved=reserved)
        return balances

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
