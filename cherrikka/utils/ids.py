"""Name-based identifier derivation.

Every id minted during a conversion is a UUIDv5 over a composed seed string,
so the same input always produces the same output ids.
"""

import re
import uuid

# uuid.NAMESPACE_OID, spelled out because both counterpart engines hardcode it.
ID_NAMESPACE = uuid.UUID("6ba7b812-9dad-11d1-80b4-00c04fd430c8")

_SAFE_STEM = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_uuid(value: str | None) -> bool:
    if not value or not value.strip():
        return False
    try:
        uuid.UUID(value.strip())
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def derive_uuid(seed: str) -> str:
    return str(uuid.uuid5(ID_NAMESPACE, seed))


def ensure_uuid(candidate: str | None, seed: str) -> str:
    """Return candidate when it already parses as a UUID, else derive one from seed."""
    candidate = (candidate or "").strip()
    if is_valid_uuid(candidate):
        return candidate
    return derive_uuid(seed or "cherrikka:empty-seed")


def derive_hex(seed: str) -> str:
    """Derived UUID without dashes, usable as a filesystem stem."""
    return derive_uuid(seed).replace("-", "")


def is_safe_file_stem(value: str | None) -> bool:
    return bool(value) and bool(_SAFE_STEM.match(value))


def cherry_file_id(file_id: str, name: str, ext: str, relative_src: str, sha256: str) -> str:
    """Stable file id for Format A, derived from everything known about the file."""
    seed = "|".join(part.strip() for part in (file_id, name, ext, relative_src, sha256))
    return str(uuid.uuid5(uuid.NAMESPACE_URL, seed))
