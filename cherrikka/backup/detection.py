"""Detect backup format from the paths present in an archive."""

from dataclasses import dataclass, field
from collections.abc import Mapping

FORMAT_CHERRY = "cherry"
FORMAT_RIKKA = "rikka"
FORMAT_UNKNOWN = "unknown"


class BackupFormatError(Exception):
    """Raised when a backup cannot be converted as requested."""


class MalformedArchiveError(BackupFormatError):
    """Raised when mandatory archive content is absent or undecodable."""


@dataclass
class DetectResult:
    format: str
    hints: list[str] = field(default_factory=list)


def detect_format(entries: Mapping[str, bytes]) -> DetectResult:
    """Detect format by marker paths.

    Returns "cherry" for data.json plus anything under Data/, "rikka" for
    settings.json plus rikka_hub.db, otherwise "unknown". Hints list every
    marker that was seen, in a fixed order.
    """
    names = set(entries)
    has_data_json = "data.json" in names
    has_data_dir = any(n.startswith("Data/") for n in names)
    has_settings = "settings.json" in names
    has_db = "rikka_hub.db" in names
    has_upload = any(n.startswith("upload/") for n in names)

    hints = [
        hint
        for hint, present in (
            ("data.json", has_data_json),
            ("Data/", has_data_dir),
            ("settings.json", has_settings),
            ("rikka_hub.db", has_db),
            ("upload/", has_upload),
        )
        if present
    ]

    if has_data_json and has_data_dir:
        return DetectResult(FORMAT_CHERRY, hints)
    if has_settings and has_db:
        return DetectResult(FORMAT_RIKKA, hints)
    return DetectResult(FORMAT_UNKNOWN, hints)


def require_format(entries: Mapping[str, bytes], declared: str = "auto", label: str = "") -> DetectResult:
    """Detect, then reject unknown archives and mismatches with a declared format."""
    detected = detect_format(entries)
    suffix = f" ({label})" if label else ""
    if detected.format == FORMAT_UNKNOWN:
        raise BackupFormatError(f"cannot detect backup format{suffix}")
    if declared not in ("", "auto") and declared != detected.format:
        raise BackupFormatError(
            f"source format mismatch: detected={detected.format} flag={declared}{suffix}"
        )
    return detected
