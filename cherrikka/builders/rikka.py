"""Build a RikkaHub backup (settings.json + rikka_hub.db + upload/) from a BackupIR."""

import logging
import posixpath
from collections.abc import Callable, Mapping
from typing import Any

import aiosqlite

from cherrikka.builders.common import DEFAULT_TITLE, flatten_tool_part, reference_millis
from cherrikka.db.connection import Database
from cherrikka.db.schema import (
    DEFAULT_ASSISTANT_ID,
    DEFAULT_IDENTITY_HASH,
    RIKKA_SCHEMA_SQL,
    ROOM_MASTER_ID,
)
from cherrikka.ir.models import BackupIR, IRConversation, IRFile, IRMessage, IRPart, normalize_role
from cherrikka.mapping.normalize import ensure_normalized_settings
from cherrikka.mapping.to_rikka import build_rikka_settings
from cherrikka.utils.common import dedupe_warnings, fallback, file_ext, to_millis
from cherrikka.utils.ids import derive_hex, derive_uuid, ensure_uuid, is_valid_uuid
from cherrikka.utils.json import as_dict, as_list, clone, go_json, parse_json_or_none, pick_first_string
from cherrikka.utils.redact import redact

logger = logging.getLogger(__name__)

UPLOAD_DIR = "upload/"
DEVICE_UPLOAD_ROOT = "/data/user/0/me.rerere.rikkahub/files/upload/"
PART_TYPE_PREFIX = "me.rerere.ai.ui.UIMessagePart."
TITLE_MAX_CHARS = 80


async def build_rikka(
    ir: BackupIR,
    template_entries: Mapping[str, bytes] | None,
    redact_secrets: bool,
    id_map: dict[str, str],
) -> tuple[dict[str, bytes], list[str]]:
    """Return the archive entries for a Format B backup, plus warnings.

    id_map receives ``file:`` entries mapped to upload-relative paths, and
    ``topic:``/``message:`` entries mapped to the written UUIDs.
    """
    warnings = list(ensure_normalized_settings(ir))
    now_ms = reference_millis(ir)

    settings, settings_warnings = build_rikka_settings(ir, _load_base_settings(ir, template_entries))
    warnings.extend(settings_warnings)
    if redact_secrets:
        settings = redact(settings)

    entries: dict[str, bytes] = {"settings.json": go_json(settings).encode("utf-8")}
    identity_hash = await _resolve_identity_hash(template_entries)

    db = await Database.connect(":memory:", RIKKA_SCHEMA_SQL)
    try:
        await db.execute(
            "INSERT OR REPLACE INTO room_master_table (id, identity_hash) VALUES (?, ?)",
            (ROOM_MASTER_ID, identity_hash),
        )
        path_by_id = await _materialize_files(db, ir.files, entries, id_map, now_ms, warnings)
        resolve_assistant = assistant_resolver(settings)
        await _write_conversations(
            db, ir.conversations, path_by_id, id_map, resolve_assistant, now_ms, warnings
        )
        entries["rikka_hub.db"] = await db.export_bytes()
    finally:
        await db.close()

    # Empty journal files so a restore overwrites any stale ones on device.
    entries["rikka_hub-wal"] = b""
    entries["rikka_hub-shm"] = b""

    logger.info(
        "Built rikka backup: %d conversations, %d files",
        len(ir.conversations), len(path_by_id),
    )
    return entries, dedupe_warnings(warnings)


def derive_conversation_title(conv: IRConversation) -> str:
    """Stored title, else the first user text, else any text, else a placeholder."""
    return (
        normalize_title(conv.title)
        or _title_from_messages(conv.messages, prefer_user=True)
        or _title_from_messages(conv.messages, prefer_user=False)
        or DEFAULT_TITLE
    )


def normalize_title(text: str) -> str:
    """Collapse whitespace and cap at TITLE_MAX_CHARS characters."""
    collapsed = " ".join((text or "").split())
    if len(collapsed) > TITLE_MAX_CHARS:
        return collapsed[:TITLE_MAX_CHARS].strip() + "…"
    return collapsed


def assistant_resolver(settings: dict[str, Any]) -> Callable[[str], str]:
    """Map a conversation's assistant id onto one present in settings.

    Unknown ids fall back to the selected assistant, then the first one, then
    the app's built-in default assistant.
    """
    known: set[str] = set()
    first = ""
    for item in as_list(settings.get("assistants")):
        aid = pick_first_string(as_dict(item).get("id"))
        if not is_valid_uuid(aid):
            continue
        first = first or aid
        known.add(aid)
    selected = pick_first_string(settings.get("assistantId"))
    if selected not in known:
        selected = ""
    default = selected or first or DEFAULT_ASSISTANT_ID

    def resolve(candidate: str) -> str:
        candidate = (candidate or "").strip()
        if candidate:
            if candidate in known:
                return candidate
            derived = ensure_uuid(candidate, f"assistant:{candidate}")
            if derived in known:
                return derived
        return default

    return resolve


# -------------------------------------------------------------------------
# Internal
# -------------------------------------------------------------------------


def _load_base_settings(ir: BackupIR, template_entries: Mapping[str, bytes] | None) -> dict[str, Any]:
    if template_entries and "settings.json" in template_entries:
        settings = as_dict(parse_json_or_none(template_entries["settings.json"]))
        if settings:
            return settings
    for key in ("rikka.settings", "rehydrate.rikka.settings"):
        settings = clone(as_dict(ir.config.get(key)))
        if settings:
            return settings
    return {"assistantId": DEFAULT_ASSISTANT_ID, "providers": [], "assistants": []}


async def _resolve_identity_hash(template_entries: Mapping[str, bytes] | None) -> str:
    if not template_entries or "rikka_hub.db" not in template_entries:
        return DEFAULT_IDENTITY_HASH
    try:
        async with Database.open_bytes(template_entries["rikka_hub.db"]) as db:
            if not await db.table_exists("room_master_table"):
                return DEFAULT_IDENTITY_HASH
            row = await db.fetchone(
                "SELECT identity_hash FROM room_master_table WHERE id = ?", (ROOM_MASTER_ID,)
            )
    except aiosqlite.DatabaseError as e:
        logger.warning("Template database unreadable, using default identity hash: %s", e)
        return DEFAULT_IDENTITY_HASH
    if row is None or not row["identity_hash"]:
        return DEFAULT_IDENTITY_HASH
    return row["identity_hash"]


def _pick_rel_path(value: Any) -> str:
    s = pick_first_string(value).replace("\\", "/")
    if not s:
        return ""
    if s.startswith(UPLOAD_DIR):
        return s
    base = posixpath.basename(s)
    return "" if base in ("", ".", "/") else UPLOAD_DIR + base


def _preferred_rel_path(f: IRFile, ext: str) -> str:
    return (
        _pick_rel_path(f.metadata.get("rikka.relative_path"))
        or _pick_rel_path(f.relative_src)
        or f"{UPLOAD_DIR}{derive_hex(f'rikka:file:{f.id}')}{ext}"
    )


async def _materialize_files(
    db: Database,
    files: list[IRFile],
    entries: dict[str, bytes],
    id_map: dict[str, str],
    now_ms: int,
    warnings: list[str],
) -> dict[str, str]:
    """Write payloads and managed_files rows. Returns IR file id -> device path."""
    path_by_id: dict[str, str] = {}
    used: set[str] = set()
    rows = []
    for f in files:
        ext = f.ext or file_ext(f.name)
        rel = _preferred_rel_path(f, ext)
        attempt = 1
        while rel in used:
            rel = f"{UPLOAD_DIR}{derive_hex(f'rikka:file:{f.id}#dup{attempt}')}{ext}"
            attempt += 1
        used.add(rel)
        file_name = posixpath.basename(rel)

        if f.data is None:
            entries[rel] = b""
            warnings.append(f"file {f.id} missing source payload; created empty placeholder")
        else:
            entries[rel] = f.data
        rows.append(
            (
                "upload",
                rel,
                fallback(f.name, file_name),
                fallback(f.mime_type, "application/octet-stream"),
                len(entries[rel]),
                to_millis(f.created_at) or now_ms,
                to_millis(f.updated_at) or to_millis(f.created_at) or now_ms,
            )
        )
        path_by_id[f.id] = DEVICE_UPLOAD_ROOT + file_name
        id_map[f"file:{f.id}"] = rel

    if rows:
        await db.executemany(
            "INSERT INTO managed_files (folder, relative_path, display_name, mime_type, "
            "size_bytes, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
    return path_by_id


async def _write_conversations(
    db: Database,
    conversations: list[IRConversation],
    path_by_id: dict[str, str],
    id_map: dict[str, str],
    resolve_assistant: Callable[[str], str],
    now_ms: int,
    warnings: list[str],
) -> None:
    conv_rows, node_rows = [], []
    used_conv_ids: set[str] = set()
    used_message_ids: set[str] = set()
    used_node_ids: set[str] = set()
    for conv in conversations:
        seed = f"conversation:{conv.id}:{conv.title}"
        base_id = ensure_uuid(conv.id, seed)
        conv_id = _claim_id(base_id, seed, used_conv_ids)
        if conv_id != base_id:
            warnings.append(f"duplicate conversation id {conv.id} reassigned to {conv_id}")
        id_map[f"topic:{conv.id}"] = conv_id
        created = to_millis(conv.created_at) or now_ms
        updated = to_millis(conv.updated_at) or created
        conv_rows.append(
            (
                conv_id,
                resolve_assistant(conv.assistant_id),
                derive_conversation_title(conv),
                "[]",
                created,
                updated,
                _opaque_int(conv.opaque.get("truncateIndex"), -1),
                conv.opaque.get("suggestions") if isinstance(conv.opaque.get("suggestions"), str) else "[]",
                _opaque_int(conv.opaque.get("isPinned"), 0),
            )
        )
        for index, msg in enumerate(conv.messages):
            for part in msg.parts:
                if part.file_id and part.file_id not in path_by_id:
                    warnings.append(
                        f"conversation {conv_id} message {msg.id} references missing file {part.file_id}"
                    )
            wire = _message_to_wire(msg, path_by_id)
            wire_id = wire["id"]
            wire["id"] = _claim_id(wire_id, f"message:{msg.id}:{conv_id}:{index}", used_message_ids)
            if wire["id"] != wire_id:
                warnings.append(f"duplicate message id {msg.id} reassigned to {wire['id']}")
            id_map[f"message:{msg.id}"] = wire["id"]
            node_seed = f"rikka:node:{conv_id}:{index}"
            node_id = _claim_id(derive_uuid(node_seed), node_seed, used_node_ids)
            node_rows.append((node_id, conv_id, index, go_json([wire]), 0))

    await db.executemany(
        "INSERT INTO ConversationEntity (id, assistant_id, title, nodes, create_at, update_at, "
        "truncate_index, suggestions, is_pinned) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        conv_rows,
    )
    await db.executemany(
        "INSERT INTO message_node (id, conversation_id, node_index, messages, select_index) "
        "VALUES (?, ?, ?, ?, ?)",
        node_rows,
    )


def _claim_id(candidate: str, seed: str, used: set[str]) -> str:
    """Return candidate, or a uuid derived from seed when candidate is taken."""
    claimed, attempt = candidate, 0
    while claimed in used:
        attempt += 1
        claimed = derive_uuid(f"{seed}:dup" if attempt == 1 else f"{seed}:dup:{attempt}")
    used.add(claimed)
    return claimed


def _opaque_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _title_from_messages(messages: list[IRMessage], prefer_user: bool) -> str:
    for msg in messages:
        if prefer_user and msg.role.strip().lower() != "user":
            continue
        for part in msg.parts:
            if part.type in ("text", "reasoning"):
                candidates = (part.content,)
            elif part.type == "tool":
                candidates = (part.name, part.content)
            else:
                candidates = (part.name,)
            for candidate in candidates:
                title = normalize_title(candidate)
                if title:
                    return title
    return ""


def _message_to_wire(msg: IRMessage, path_by_id: dict[str, str]) -> dict[str, Any]:
    parts = [_part_to_wire(part, path_by_id) for part in msg.parts]
    if not parts:
        parts = [{"type": PART_TYPE_PREFIX + "Text", "text": ""}]
    return {
        "id": ensure_uuid(msg.id, f"message:{msg.id}:{msg.role}"),
        "role": normalize_role(msg.role),
        "parts": parts,
        "annotations": [],
    }


def _media_url(part: IRPart, path_by_id: dict[str, str]) -> str:
    if part.file_id and part.file_id in path_by_id:
        return "file://" + path_by_id[part.file_id]
    return part.media_url


def _part_to_wire(part: IRPart, path_by_id: dict[str, str]) -> dict[str, Any]:
    if part.type == "reasoning":
        return {"type": PART_TYPE_PREFIX + "Reasoning", "reasoning": part.content}
    if part.type == "tool":
        return {"type": PART_TYPE_PREFIX + "Text", "text": flatten_tool_part(part)}
    if part.type in ("image", "video", "audio"):
        return {"type": PART_TYPE_PREFIX + part.type.capitalize(), "url": _media_url(part, path_by_id)}
    if part.type == "document":
        return {
            "type": PART_TYPE_PREFIX + "Document",
            "url": _media_url(part, path_by_id),
            "fileName": fallback(part.name, "document"),
            "mime": fallback(part.mime_type, "application/octet-stream"),
        }
    return {"type": PART_TYPE_PREFIX + "Text", "text": part.content}
