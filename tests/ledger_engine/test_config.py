"""
Configuration Tests.

============================================================
PURPOSE
============================================================
Tests for LedgerEngineConfig loading and validation.

============================================================
"""

from decimal import Decimal

import pytest

from ledger_engine.config import BalanceConfig, LedgerEngineConfig
from ledger_engine.errors import ConfigurationError
from ledger_engine.types import TradingMode


# ============================================================
# DEFAULT TESTS
# ============================================================

class TestDefaults:
    """Tests for defaults and test settings."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = LedgerEngineConfig()
        assert config.mode == TradingMode.PAPER
        assert config.cache.key_prefix == "trade-ledger"
        assert config.cache.retention_seconds == 7 * 24 * 3600
        assert config.sync.batch_size == 50
        assert config.sync.max_total_trades == 1000
        assert config.sync.sync_interval_seconds == 60.0
        assert config.sync.full_sync_interval_seconds == 1800.0
        assert config.balance.cache_ttl_seconds == 0.5
        config.validate()

    def test_for_testing_is_valid(self):
        """The testing preset validates and stays in paper mode."""
        config = LedgerEngineConfig.for_testing()
        config.validate()
        assert config.paper_mode
        assert config.sync.enable_background_sync is False

    def test_balance_assets(self):
        """The symbol splits into base and quote."""
        assert BalanceConfig(symbol="eth/usdt").assets == ("ETH", "USDT")
        with pytest.raises(ConfigurationError):
            BalanceConfig(symbol="BTCUSD").assets


# ============================================================
# VALIDATION TESTS
# ============================================================

class TestValidation:
    """Tests for validate()."""

    def test_live_requires_credentials(self, monkeypatch):
        """Live mode without credentials is rejected."""
        monkeypatch.delenv("KRAKEN_API_KEY", raising=False)
        monkeypatch.delenv("KRAKEN_API_SECRET", raising=False)
        config = LedgerEngineConfig(mode=TradingMode.LIVE)
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_live_with_credentials(self):
        """Explicit credentials satisfy live mode."""
        config = LedgerEngineConfig(mode=TradingMode.LIVE)
        config.exchange.api_key = "key"
        config.exchange.api_secret = "c2VjcmV0"
        config.validate()

    def test_bad_batch_size(self):
        """Non-positive batch sizes are rejected."""
        config = LedgerEngineConfig()
        config.sync.batch_size = 0
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_sql_backend_needs_url(self):
        """The sql backend requires a database URL."""
        config = LedgerEngineConfig()
        config.storage.kv_backend = "sql"
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_unknown_backend(self):
        """Unknown backends are rejected."""
        config = LedgerEngineConfig()
        config.storage.kv_backend = "redis"
        with pytest.raises(ConfigurationError):
            config.validate()


# ============================================================
# LOADING TESTS
# ============================================================

class TestLoading:
    """Tests for from_env, from_yaml and to_dict."""

    def test_from_env(self, monkeypatch, tmp_path):
        """LEDGER_* variables override defaults."""
        monkeypatch.setenv("LEDGER_MODE", "paper")
        monkeypatch.setenv("LEDGER_SCOPE_ID", "session-9")
        monkeypatch.setenv("LEDGER_KEY_PREFIX", "env-ledger")
        monkeypatch.setenv("LEDGER_BATCH_SIZE", "25")
        monkeypatch.setenv("LEDGER_BACKGROUND_SYNC", "false")
        monkeypatch.setenv("LEDGER_INITIAL_BALANCES", "USD=250.5, BTC=0.1")

        config = LedgerEngineConfig.from_env(tmp_path / "missing.env")

        assert config.scope_id == "session-9"
        assert config.cache.key_prefix == "env-ledger"
        assert config.sync.batch_size == 25
        assert config.sync.enable_background_sync is False
        assert config.balance.initial_balances == {"USD": Decimal("250.5"), "BTC": Decimal("0.1")}

    def test_from_env_bad_mode(self, monkeypatch, tmp_path):
        """An unknown mode is a configuration error."""
        monkeypatch.setenv("LEDGER_MODE", "simulation")
        with pytest.raises(ConfigurationError):
            LedgerEngineConfig.from_env(tmp_path / "missing.env")

    def test_from_yaml(self, tmp_path):
        """YAML sections map onto the config dataclasses."""
        path = tmp_path / "ledger.yaml"
        path.write_text(
            "mode: paper\n"
            "scope_id: yaml-scope\n"
            "cache:\n"
            "  key_prefix: yaml-ledger\n"
            "  retention_seconds: 3600\n"
            "sync:\n"
            "  batch_size: 10\n"
            "  unknown_option: 1\n"
            "balance:\n"
            "  symbol: ETH/USD\n"
            "  initial_balances:\n"
            "    usd: 500\n"
            "storage:\n"
            "  kv_backend: sql\n"
            "  database_url: 'sqlite://'\n"
        )

        config = LedgerEngineConfig.from_yaml(path)

        assert config.scope_id == "yaml-scope"
        assert config.cache.key_prefix == "yaml-ledger"
        assert config.cache.retention_seconds == 3600
        assert config.sync.batch_size == 10
        assert config.balance.assets == ("ETH", "USD")
        assert config.balance.initial_balances == {"USD": Decimal("500")}
        config.validate()

    def test_from_yaml_missing_file(self, tmp_path):
        """An unreadable file is a configuration error."""
        with pytest.raises(ConfigurationError):
            LedgerEngineConfig.from_yaml(tmp_path / "nope.yaml")

    def test_from_yaml_not_mapping(self, tmp_path):
        """A YAML list is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            LedgerEngineConfig.from_yaml(path)

    def test_to_dict_masks_secrets(self):
        """Secrets never appear in to_dict()."""
        config = LedgerEngineConfig()
        config.exchange.api_key = "real-key"
        config.exchange.api_secret = "real-secret"
        data = config.to_dict()
        assert data["exchange"]["api_key"] == "***"
        assert data["exchange"]["api_secret"] == "***"
        assert data["mode"] == "PAPER"
