"""
Secure Logging Utility Tests.
"""

from ledger_engine.logging_utils import mask_headers, mask_params, mask_value


class TestMasking:
    """Secrets never reach logs in clear text."""

    def test_mask_value(self):
        """Long values keep a short prefix, short ones are fully hidden."""
        assert mask_value("abcdefgh") == "abcd...***"
        assert mask_value("abc") == "***"
        assert mask_value("") == "***"

    def test_mask_headers(self):
        """Kraken auth headers are masked case-insensitively."""
        masked = mask_headers({"API-Key": "key-123456", "API-Sign": "sig-abcdef", "Accept": "json"})
        assert masked["API-Key"] == "key-...***"
        assert masked["API-Sign"] == "sig-...***"
        assert masked["Accept"] == "json"

    def test_mask_params_nested(self):
        """Nested parameter dicts are masked too."""
        masked = mask_params({"nonce": 1, "otp": "123456", "inner": {"secret": "s3cr3t-value"}})
        assert masked["nonce"] == 1
        assert masked["otp"] == "1234...***"
        assert masked["inner"]["secret"] == "s3cr...***"
