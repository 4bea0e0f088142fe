from typing import Any

from django.conf import settings

DEFAULTS = {
    "NO_CREDIT_LIMIT_POLICY": "reject",
    "ENFORCE_CREDIT_LIMIT": False,
    "ALLOCATION_MAX_RETRIES": 3,
    "RETRY_BACKOFF_SECONDS": 0.05,
    "DUNNING_MAX_WORKERS": 1,
    "DEFAULT_CURRENCY": "USD",
    "SMS_GATEWAY_URL": "",
    "SMS_GATEWAY_TOKEN": "",
    "LETTER_GATEWAY_URL": "",
    "LETTER_GATEWAY_TOKEN": "",
}


def ledger_setting(name: str) -> Any:
    """Read a receivables setting, falling back to the built-in default."""
    configured = getattr(settings, "RECEIVABLES", {}) or {}
    if name in configured:
        return configured[name]
    return DEFAULTS[name]
