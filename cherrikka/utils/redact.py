"""Secret redaction for settings documents."""

from typing import Any

REDACTED = "***REDACTED***"

SECRET_KEY_TOKENS = (
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "access_key",
    "secretaccesskey",
)


def should_redact_key(key: str) -> bool:
    low = key.strip().lower()
    return any(token in low for token in SECRET_KEY_TOKENS)


def redact(value: Any) -> Any:
    """Return a copy of value with every secret-looking key's value masked.

    Empty strings stay empty so "no key configured" remains visible.
    """
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if should_redact_key(key):
                out[key] = item if item == "" else REDACTED
            else:
                out[key] = redact(item)
        return out
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value
