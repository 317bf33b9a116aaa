"""Small helpers for warnings, timestamps, hashing and file typing."""

import hashlib
import posixpath
from datetime import UTC, datetime
from collections.abc import Iterable

EPOCH_RFC3339 = "1970-01-01T00:00:00Z"

_IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
_VIDEO_EXTS = {".mp4", ".mov", ".mkv", ".webm"}
_AUDIO_EXTS = {".mp3", ".wav", ".m4a", ".aac", ".ogg"}
_TEXT_EXTS = {".txt", ".md", ".csv"}


def dedupe_warnings(items: Iterable[str]) -> list[str]:
    """Strip, drop blanks, dedupe, sort."""
    return sorted({item.strip() for item in items if item and item.strip()})


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_ext(name: str) -> str:
    """Extension including the dot, like Go's filepath.Ext."""
    base = posixpath.basename(name)
    idx = base.rfind(".")
    return base[idx:] if idx >= 0 else ""


def logical_type(mime: str = "", ext: str = "") -> str:
    """Infer image/video/audio/text/document from MIME, then extension."""
    low_mime = (mime or "").strip().lower()
    for prefix in ("image", "video", "audio", "text"):
        if low_mime == prefix or low_mime.startswith(prefix + "/"):
            return prefix
    low_ext = (ext or "").strip().lower()
    if low_ext in _IMAGE_EXTS:
        return "image"
    if low_ext in _VIDEO_EXTS:
        return "video"
    if low_ext in _AUDIO_EXTS:
        return "audio"
    if low_ext in _TEXT_EXTS:
        return "text"
    return "document"


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 / ISO 8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_millis(value: str | None) -> int | None:
    parsed = parse_rfc3339(value)
    return int(parsed.timestamp() * 1000) if parsed else None


def millis_to_rfc3339(ms: int | float | None) -> str:
    if ms is None:
        return ""
    moment = datetime.fromtimestamp(int(ms) / 1000, tz=UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def now_rfc3339() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def fallback(value: str | None, default: str) -> str:
    return value if value and value.strip() else default
