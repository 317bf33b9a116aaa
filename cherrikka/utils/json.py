"""JSON helpers shared by every parser and builder.

Two concerns live here: tolerant decoding of values that may arrive either as
structured data or as JSON text, and the canonical encoder that reproduces
Go's ``encoding/json`` output byte for byte (sorted keys, compact separators,
HTML-safe escapes).
"""

import copy
import json
from typing import Any

_GO_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _escape(text: str) -> str:
    for raw, escaped in _GO_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def _go_numbers(value: Any) -> Any:
    # encoding/json writes integral floats below 1e21 without a fraction
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return int(value)
        return value
    if isinstance(value, dict):
        return {k: _go_numbers(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_go_numbers(v) for v in value]
    return value


def go_json(value: Any) -> str:
    """Encode compactly with keys sorted at every level, Go-style escapes."""
    text = json.dumps(_go_numbers(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return _escape(text)


def go_json_pretty(value: Any) -> str:
    """Same as go_json but indented by two spaces (MarshalIndent layout)."""
    text = json.dumps(_go_numbers(value), sort_keys=True, indent=2, ensure_ascii=False)
    return _escape(text)


def parse_json_field(raw: str | dict | None) -> dict[str, Any] | None:
    """Parse a JSON string or dict, returning None on failure or empty.

    Returns None for: None, empty string, empty dict, invalid JSON, non-dict JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw if raw else None
    if isinstance(raw, str):
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict) and parsed:
                return parsed
        except (ValueError, TypeError):
            pass
    return None


def parse_json_or_none(raw: str | bytes | dict | list | None) -> Any:
    """Parse JSON text or return structured value as-is, None on failure.

    Accepts dicts and lists as-is without re-parsing.
    Returns None for: None, empty string, invalid JSON.
    """
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (str, bytes)):
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            return None
    return None


def as_dict(value: Any) -> dict[str, Any]:
    """The value if it is a dict, otherwise a fresh empty dict."""
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    """The value if it is a list, otherwise a fresh empty list."""
    return value if isinstance(value, list) else []


def as_str(value: Any) -> str:
    """Stripped string value, empty for anything that is not a string."""
    return value.strip() if isinstance(value, str) else ""


def pick_first_string(*values: Any) -> str:
    for value in values:
        s = as_str(value)
        if s:
            return s
    return ""


def clone(value: Any) -> Any:
    return copy.deepcopy(value)


def is_meaningful(value: Any) -> bool:
    """False for None, blank strings, False, and empty containers."""
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def set_if_present(dst: dict[str, Any], key: str, value: Any) -> None:
    """Assign unless the value is None, a blank string, or an empty container."""
    if value is None:
        return
    if isinstance(value, str) and not value.strip():
        return
    if isinstance(value, (list, dict)) and not value:
        return
    dst[key] = value


def merge_missing(dst: dict[str, Any], src: dict[str, Any] | None) -> None:
    """Copy keys from src that dst does not already have."""
    for key, value in (src or {}).items():
        if key not in dst:
            dst[key] = clone(value)
