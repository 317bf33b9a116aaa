"""Parser for RikkaHub backups (settings.json + rikka_hub.db + upload/).

Each conversation turn is a ``message_node`` row whose ``messages`` column is
a JSON array of alternative snapshots. Only the selected snapshot becomes an
IR message; the alternatives are kept in the conversation's opaque bag.
"""

import json
import logging
import posixpath
from collections.abc import Mapping
from typing import Any

import aiosqlite

from cherrikka.backup.detection import MalformedArchiveError
from cherrikka.db.connection import Database
from cherrikka.ir.models import (
    SOURCE_APPS,
    BackupIR,
    IRAssistant,
    IRConversation,
    IRFile,
    IRMessage,
    IRPart,
    normalize_role,
)
from cherrikka.mapping.normalize import ensure_normalized_settings
from cherrikka.mapping.unsupported import extract_rikka_unsupported
from cherrikka.utils.common import (
    dedupe_warnings,
    file_ext,
    logical_type,
    millis_to_rfc3339,
    sha256_hex,
)
from cherrikka.utils.ids import derive_uuid
from cherrikka.utils.json import as_dict, as_list, as_str

logger = logging.getLogger(__name__)

UPLOAD_DIR = "upload/"
MANAGED_FILES_MISSING = "managed_files table missing; skipping managed file index"


async def parse_rikka(entries: Mapping[str, bytes]) -> BackupIR:
    """Parse a Format B archive into a BackupIR.

    Raises MalformedArchiveError when settings.json or rikka_hub.db is absent
    or undecodable.
    """
    settings = _load_settings(entries)
    db_bytes = entries.get("rikka_hub.db")
    if db_bytes is None:
        raise MalformedArchiveError("missing rikka_hub.db")

    ir = BackupIR(source_app=SOURCE_APPS["rikka"], source_format="rikka")
    ir.config["rikka.settings"] = settings
    if "cherrikka/manifest.json" in entries and "cherrikka/raw/source.zip" in entries:
        ir.opaque["interop.sidecar.available"] = True

    try:
        async with Database.open_bytes(db_bytes) as db:
            files_by_rel: dict[str, IRFile] = {}
            indexed = await db.table_exists("managed_files")
            if indexed:
                await _parse_managed_files(db, entries, files_by_rel, ir.warnings)
            else:
                ir.warnings.append(MANAGED_FILES_MISSING)
                logger.warning(MANAGED_FILES_MISSING)
            # Without an index every upload is unindexed; one warning covers them all.
            _merge_upload_files(entries, files_by_rel, ir.warnings if indexed else None)
            ir.files = [files_by_rel[rel] for rel in sorted(files_by_rel)]
            await _parse_conversations(db, ir, files_by_rel)
    except aiosqlite.DatabaseError as e:
        raise MalformedArchiveError(f"open rikka_hub.db: {e}") from e

    for i, item in enumerate(as_list(settings.get("assistants"))):
        am = as_dict(item)
        if not am:
            continue
        ir.assistants.append(
            IRAssistant(
                id=as_str(am.get("id")) or derive_uuid(f"rikka:assistant:{i}:{as_str(am.get('name'))}"),
                name=as_str(am.get("name")),
                prompt=am.get("systemPrompt") if isinstance(am.get("systemPrompt"), str) else "",
                model={"chatModelId": am.get("chatModelId")},
                opaque=am,
            )
        )

    isolated = extract_rikka_unsupported(settings)
    if isolated:
        ir.opaque["interop.rikka.unsupported"] = isolated
        ir.warnings.append("unsupported-isolated:rikka.settings")
    ensure_normalized_settings(ir)

    ir.warnings = dedupe_warnings(ir.warnings)
    logger.info(
        "Parsed rikka backup: %d conversations, %d assistants, %d files",
        len(ir.conversations), len(ir.assistants), len(ir.files),
    )
    return ir


async def validate_rikka(entries: Mapping[str, bytes]) -> list[str]:
    """Structural checks over the database and the settings document."""
    issues: list[str] = []
    if "settings.json" not in entries:
        issues.append("missing settings.json")
    if "rikka_hub.db" not in entries:
        issues.append("missing rikka_hub.db")
    if issues:
        return issues

    valid_assistants: set[str] = set()
    try:
        settings = _load_settings(entries)
    except MalformedArchiveError as e:
        issues.append(str(e))
    else:
        valid_assistants = {
            as_str(as_dict(a).get("id"))
            for a in as_list(settings.get("assistants"))
            if as_str(as_dict(a).get("id"))
        }

    try:
        async with Database.open_bytes(entries["rikka_hub.db"]) as db:
            managed: set[str] = set()
            if await db.table_exists("managed_files"):
                for row in await db.fetchall("SELECT relative_path FROM managed_files"):
                    rel = str(row["relative_path"]).replace("\\", "/")
                    managed.add(rel)
                    if rel not in entries:
                        issues.append(f"managed_files payload missing: {rel}")

            if await db.table_exists("message_node"):
                for row in await db.fetchall("SELECT messages FROM message_node"):
                    for rel in _file_url_paths(row["messages"]):
                        if rel not in managed:
                            issues.append(f"message_node file url has no managed_files entry: {rel}")

            if valid_assistants and await db.table_exists("ConversationEntity"):
                rows = await db.fetchall("SELECT DISTINCT assistant_id FROM ConversationEntity")
                for row in rows:
                    aid = (row["assistant_id"] or "").strip()
                    if aid and aid not in valid_assistants:
                        issues.append(f"conversation assistant_id missing in settings.assistants: {aid}")
    except aiosqlite.DatabaseError as e:
        issues.append(f"open rikka_hub.db failed: {e}")

    return dedupe_warnings(issues)


# -------------------------------------------------------------------------
# Internal
# -------------------------------------------------------------------------


def _load_settings(entries: Mapping[str, bytes]) -> dict[str, Any]:
    raw = entries.get("settings.json")
    if raw is None:
        raise MalformedArchiveError("missing settings.json")
    try:
        settings = json.loads(raw)
    except ValueError as e:
        raise MalformedArchiveError(f"parse settings.json: {e}") from e
    if not isinstance(settings, dict):
        raise MalformedArchiveError("parse settings.json: expected an object")
    return settings


def _upload_basename(url: str) -> str:
    if not url.startswith("file://"):
        return ""
    name = posixpath.basename(url[len("file://"):])
    return "" if name in ("", ".", "/") else name


def _file_url_paths(messages_json: str) -> list[str]:
    try:
        messages = json.loads(messages_json)
    except (ValueError, TypeError):
        return []
    out = []
    for message in map(as_dict, as_list(messages)):
        for part in map(as_dict, as_list(message.get("parts"))):
            name = _upload_basename(as_str(part.get("url")))
            if name:
                out.append(UPLOAD_DIR + name)
    return out


async def _parse_managed_files(
    db: Database,
    entries: Mapping[str, bytes],
    out: dict[str, IRFile],
    warnings: list[str],
) -> None:
    rows = await db.fetchall(
        "SELECT id, folder, relative_path, display_name, mime_type, size_bytes, "
        "created_at, updated_at FROM managed_files"
    )
    for row in rows:
        rel = str(row["relative_path"]).replace("\\", "/")
        display_name = row["display_name"] or ""
        mime = row["mime_type"] or ""
        ext = file_ext(display_name)
        data = entries.get(rel)
        if data is None:
            warnings.append(f"missing managed file payload: {rel}")
        out[rel] = IRFile(
            id=f"managed:{row['id']}",
            name=display_name,
            ext=ext,
            mime_type=mime,
            logical_type=logical_type(mime, ext),
            relative_src=rel,
            size=row["size_bytes"] or 0,
            created_at=millis_to_rfc3339(row["created_at"]),
            updated_at=millis_to_rfc3339(row["updated_at"]),
            hash_sha256=sha256_hex(data) if data is not None else "",
            missing=data is None,
            data=data,
            metadata={
                "managed_id": row["id"],
                "folder": row["folder"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "rikka.relative_path": rel,
                "rikka.display_name": display_name,
                "rikka.original_mime": mime,
                "rikka.original_bytes": row["size_bytes"],
            },
        )


def _merge_upload_files(
    entries: Mapping[str, bytes], out: dict[str, IRFile], warnings: list[str] | None
) -> None:
    for name in sorted(entries):
        if not name.startswith(UPLOAD_DIR) or name.endswith("/"):
            continue
        base = name[len(UPLOAD_DIR):]
        if "/" in base or name in out:
            continue
        data = entries[name]
        ext = file_ext(base)
        out[name] = IRFile(
            id=f"upload:{base}",
            name=base,
            ext=ext,
            logical_type=logical_type("", ext),
            relative_src=name,
            size=len(data),
            hash_sha256=sha256_hex(data),
            orphan=True,
            data=data,
            metadata={"discovered": True, "rikka.relative_path": name},
        )
        if warnings is not None:
            warnings.append(f"orphan upload file discovered: {name}")


async def _parse_conversations(
    db: Database, ir: BackupIR, files_by_rel: dict[str, IRFile]
) -> None:
    if not await db.table_exists("ConversationEntity"):
        return
    rows = await db.fetchall(
        "SELECT id, assistant_id, title, create_at, update_at, truncate_index, "
        "suggestions, is_pinned FROM ConversationEntity ORDER BY update_at DESC"
    )
    for row in rows:
        conv = IRConversation(
            id=row["id"],
            assistant_id=row["assistant_id"] or "",
            title=row["title"] or "",
            created_at=millis_to_rfc3339(row["create_at"]),
            updated_at=millis_to_rfc3339(row["update_at"]),
            opaque={
                "truncateIndex": row["truncate_index"],
                "suggestions": row["suggestions"],
                "isPinned": row["is_pinned"],
            },
        )
        nodes = await db.fetchall(
            "SELECT id, node_index, messages, select_index FROM message_node "
            "WHERE conversation_id = ? ORDER BY node_index ASC",
            (conv.id,),
        )
        for node in nodes:
            try:
                snapshots = json.loads(node["messages"])
            except (ValueError, TypeError):
                conv.opaque[f"node_unparsed:{node['id']}"] = node["messages"]
                continue
            snapshots = [s for s in as_list(snapshots) if isinstance(s, dict)]
            if not snapshots:
                continue
            select = node["select_index"]
            if select is None or select < 0 or select >= len(snapshots):
                select = 0
            msg = _to_message(snapshots[select], files_by_rel)
            if not msg.id:
                msg.id = derive_uuid(f"rikka:message:{node['id']}:{select}")
            conv.messages.append(msg)
            if len(snapshots) > 1:
                conv.opaque[f"node:{node['id']}:branches"] = snapshots
        ir.conversations.append(conv)


def _to_message(raw: dict[str, Any], files_by_rel: dict[str, IRFile]) -> IRMessage:
    msg = IRMessage(
        id=as_str(raw.get("id")),
        role=normalize_role(as_str(raw.get("role")), empty="assistant"),
        created_at=as_str(raw.get("createdAt")),
        model_id=as_str(raw.get("modelId")),
    )
    for item in as_list(raw.get("parts")):
        if isinstance(item, dict):
            msg.parts.append(_to_part(item, files_by_rel))
    msg.ensure_parts()
    return msg


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _to_part(pm: dict[str, Any], files_by_rel: dict[str, IRFile]) -> IRPart:
    type_tag = _text(pm.get("type"))
    part = IRPart(type="text", metadata={"rikkaType": type_tag})

    if "text" in pm:
        part.content = _text(pm["text"])
    elif "reasoning" in pm:
        part.type = "reasoning"
        part.content = _text(pm["reasoning"])
    elif "toolCallId" in pm and "toolName" in pm and "input" in pm:
        part.type = "tool"
        part.tool_call_id = _text(pm["toolCallId"])
        part.name = _text(pm["toolName"])
        part.input = _text(pm["input"])
        for out in map(as_dict, as_list(pm.get("output"))):
            if "text" in out:
                part.output.append(IRPart(type="text", content=_text(out["text"])))
    elif "fileName" in pm and "url" in pm:
        part.type = "document"
        part.name = _text(pm["fileName"])
        part.mime_type = _text(pm.get("mime"))
        _map_url_file(part, _text(pm["url"]), files_by_rel)
    elif "url" in pm:
        url = _text(pm["url"])
        part.type = _infer_media_type(url, type_tag)
        _map_url_file(part, url, files_by_rel)
    else:
        part.content = "[unsupported rikka part]"
        part.metadata["raw"] = pm
    return part


def _map_url_file(part: IRPart, url: str, files_by_rel: dict[str, IRFile]) -> None:
    if not url:
        return
    part.media_url = url
    name = _upload_basename(url)
    f = files_by_rel.get(UPLOAD_DIR + name) if name else None
    if f is None:
        return
    part.file_id = f.id
    if not part.name:
        part.name = f.name
    if not part.mime_type:
        part.mime_type = f.mime_type


def _infer_media_type(url: str, type_tag: str) -> str:
    low = type_tag.lower()
    for marker, media in ((".video", "video"), (".audio", "audio"), (".image", "image")):
        if marker in low:
            return media
    kind = logical_type("", file_ext(url))
    return "document" if kind == "text" else kind
