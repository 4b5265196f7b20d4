"""
Ledger Engine - Secure Logging Utilities.

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, secrets or signatures
2. Mask sensitive headers (API-Key, API-Sign)
3. Sanitize request parameters before debug logging

============================================================
"""

from typing import Any, Dict


# Header names that should be masked
SENSITIVE_HEADERS = {
    "api-key",
    "api-sign",
    "authorization",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "api_key",
    "apikey",
    "secret",
    "api_secret",
    "otp",
    "signature",
    "sign",
    "password",
}


def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of headers with sensitive values masked."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of request parameters with sensitive values masked."""
    if not params:
        return {}
    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        else:
            masked[key] = value
    return masked
