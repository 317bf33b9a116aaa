"""Zip container I/O: an archive is a mapping of slash paths to bytes."""

import io
import zipfile
from collections.abc import Mapping

from cherrikka.backup.detection import MalformedArchiveError

# Fixed timestamp so identical entries always produce identical zip bytes.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def normalize_entry_name(name: str) -> str:
    name = name.replace("\\", "/")
    while name.startswith("./"):
        name = name[2:]
    return name.lstrip("/")


def read_archive(content: bytes) -> dict[str, bytes]:
    """Read every file entry of a zip; directory entries are skipped."""
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            entries: dict[str, bytes] = {}
            for info in zf.infolist():
                if info.is_dir():
                    continue
                name = normalize_entry_name(info.filename)
                if not name:
                    continue
                entries[name] = zf.read(info)
            return entries
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError) as e:
        raise MalformedArchiveError(f"Invalid zip archive: {e}") from e


def write_archive(entries: Mapping[str, bytes]) -> bytes:
    """Write entries sorted by path, deflated, with fixed timestamps."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name in sorted(entries):
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, entries[name])
    return buf.getvalue()
