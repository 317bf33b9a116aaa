"""Build a Cherry Studio backup (data.json + Data/Files) from a BackupIR.

The persisted slices are re-encoded the way the app stores them: each slice
is JSON text inside the ``persist:cherry-studio`` JSON text, which is itself
a string value of ``localStorage``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from cherrikka.builders.common import DEFAULT_TITLE, flatten_tool_part, reference_millis
from cherrikka.ir.models import BackupIR, IRAssistant, IRConversation, IRFile, IRPart, normalize_role
from cherrikka.mapping.normalize import assign_unique_name, ensure_normalized_settings
from cherrikka.mapping.to_cherry import build_cherry_persist_slices
from cherrikka.utils.common import dedupe_warnings, fallback, file_ext, millis_to_rfc3339
from cherrikka.utils.ids import cherry_file_id, derive_uuid, is_safe_file_stem
from cherrikka.utils.json import as_dict, clone, go_json, merge_missing, parse_json_or_none, pick_first_string
from cherrikka.utils.redact import redact

logger = logging.getLogger(__name__)

FILES_DIR = "Data/Files/"
PERSIST_KEY = "persist:cherry-studio"
DATA_VERSION = 5

DEFAULT_ASSISTANT_SETTINGS = {"contextCount": 32, "temperature": 0.7, "streamOutput": True}


def build_cherry(
    ir: BackupIR,
    template_entries: Mapping[str, bytes] | None,
    redact_secrets: bool,
    id_map: dict[str, str],
) -> tuple[dict[str, bytes], list[str]]:
    """Return the archive entries for a Format A backup, plus warnings.

    id_map receives ``file:``, ``topic:`` and ``message:`` entries keyed by
    IR id.
    """
    warnings = list(ensure_normalized_settings(ir))
    base = _load_template(template_entries)
    now_ms = reference_millis(ir)
    now = millis_to_rfc3339(now_ms)

    indexed = as_dict(clone(base.get("indexedDB")))
    local_storage = as_dict(clone(base.get("localStorage")))
    entries: dict[str, bytes] = {}

    # Phase 1: files
    file_rows = _materialize_files(ir.files, entries, id_map, now, warnings)
    indexed["files"] = list(file_rows.values())

    # Phase 2: topics, messages, blocks
    assistants = _resolve_assistants(ir)
    known = {a.id for a in assistants}
    topics, blocks = [], []
    conv_by_assistant: dict[str, list[IRConversation]] = {}
    for index, conv in enumerate(ir.conversations):
        topic_id = conv.id or derive_uuid(f"cherry:topic:{index}:{conv.title}")
        id_map.setdefault(f"topic:{conv.id}", topic_id)
        assistant_id = conv.assistant_id
        if assistant_id not in known:
            if assistant_id:
                warnings.append(
                    f"conversation {topic_id} assistant {assistant_id} not found; bound to {assistants[0].id}"
                )
            assistant_id = assistants[0].id
        conv_by_assistant.setdefault(assistant_id, []).append(conv)

        messages = []
        for j, msg in enumerate(conv.messages):
            msg_id = msg.id or derive_uuid(f"cherry:message:{topic_id}:{j}")
            id_map[f"message:{msg.id}"] = msg_id
            block_ids = []
            for k, part in enumerate(msg.parts):
                block_id = derive_uuid(f"cherry:block:{msg_id}:{k}")
                block_ids.append(block_id)
                blocks.append(_part_to_block(block_id, msg_id, part, file_rows, now))
            messages.append(
                {
                    "id": msg_id,
                    "role": normalize_role(msg.role),
                    "assistantId": assistant_id,
                    "topicId": topic_id,
                    "createdAt": fallback(msg.created_at, now),
                    "status": "success",
                    "blocks": block_ids,
                }
            )
        topics.append(
            {
                "id": topic_id,
                "name": fallback(conv.title, DEFAULT_TITLE),
                "assistantId": assistant_id,
                "createdAt": fallback(conv.created_at, now),
                "updatedAt": fallback(conv.updated_at, now),
                "messages": messages,
            }
        )
    indexed["topics"] = topics
    indexed["message_blocks"] = blocks
    merge_missing(indexed, as_dict(ir.opaque.get("cherry.indexedDB.extra")))

    # Phase 3: persisted slices
    persist = (
        clone(as_dict(ir.config.get("cherry.persistSlices")))
        or clone(as_dict(ir.config.get("rehydrate.cherry.persistSlices")))
        or _default_persist_slices()
    )
    assistants_slice = _build_assistants_slice(assistants, conv_by_assistant, now, warnings)
    persist, slice_warnings = build_cherry_persist_slices(ir, persist, assistants_slice)
    warnings.extend(slice_warnings)
    if redact_secrets:
        persist = redact(persist)

    raw_slices = as_dict(ir.config.get("cherry.persistRawSlices")) or as_dict(
        ir.config.get("rehydrate.cherry.persistRawSlices")
    )
    outer = {
        key: value if key in raw_slices and value == raw_slices[key] else go_json(value)
        for key, value in persist.items()
    }
    local_storage[PERSIST_KEY] = go_json(outer)

    base["time"] = now_ms
    base["version"] = DATA_VERSION
    base["localStorage"] = local_storage
    base["indexedDB"] = indexed
    entries["data.json"] = go_json(base).encode("utf-8")

    logger.info(
        "Built cherry backup: %d topics, %d blocks, %d files",
        len(topics), len(blocks), len(file_rows),
    )
    return entries, dedupe_warnings(warnings)


# -------------------------------------------------------------------------
# Internal
# -------------------------------------------------------------------------


def _load_template(template_entries: Mapping[str, bytes] | None) -> dict[str, Any]:
    if not template_entries or "data.json" not in template_entries:
        return {}
    return as_dict(parse_json_or_none(template_entries["data.json"]))


def choose_file_id(f: IRFile) -> str:
    """Reuse a filesystem-safe original id, otherwise derive one."""
    cherry_id = pick_first_string(f.metadata.get("cherry_id"))
    if is_safe_file_stem(cherry_id):
        return cherry_id
    if is_safe_file_stem(f.id):
        return f.id
    return cherry_file_id(f.id, f.name, f.ext, f.relative_src, f.hash_sha256)


def _materialize_files(
    files: list[IRFile],
    entries: dict[str, bytes],
    id_map: dict[str, str],
    now: str,
    warnings: list[str],
) -> dict[str, dict[str, Any]]:
    """Write payloads and return the files table keyed by IR file id."""
    rows: dict[str, dict[str, Any]] = {}
    used: set[str] = set()
    for f in files:
        fid = choose_file_id(f)
        attempt = 1
        while fid in used:
            fid = cherry_file_id(f"{f.id}#dup{attempt}", f.name, f.ext, f.relative_src, f.hash_sha256)
            attempt += 1
        used.add(fid)
        id_map[f"file:{f.id}"] = fid

        ext = f.ext or file_ext(f.name)
        name = fid + ext
        if f.data is None:
            entries[FILES_DIR + name] = b""
            warnings.append(f"file {f.id} missing source payload; created empty placeholder")
            size = f.size
        else:
            entries[FILES_DIR + name] = f.data
            size = len(f.data)
        rows[f.id] = {
            "id": fid,
            "name": name,
            "origin_name": fallback(f.name, name),
            "path": FILES_DIR + name,
            "size": size,
            "ext": ext,
            "type": fallback(f.logical_type, fallback(f.mime_type, "other")),
            "created_at": fallback(f.created_at, now),
            "count": 1,
        }
    if not rows:
        entries[FILES_DIR + ".keep"] = b""
    return rows


def _block_file(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {
        "id": row["id"],
        "name": row["name"],
        "origin_name": row["origin_name"],
        "ext": row["ext"],
        "size": row["size"],
        "type": row["type"],
    }


def _part_to_block(
    block_id: str,
    message_id: str,
    part: IRPart,
    file_rows: dict[str, dict[str, Any]],
    now: str,
) -> dict[str, Any]:
    block: dict[str, Any] = {
        "id": block_id,
        "messageId": message_id,
        "createdAt": now,
        "status": "success",
    }
    if part.metadata:
        block["metadata"] = clone(part.metadata)
    file_info = _block_file(file_rows.get(part.file_id)) if part.file_id else None

    if part.type == "reasoning":
        block["type"] = "thinking"
        block["content"] = part.content
    elif part.type == "tool":
        block["type"] = "main_text"
        block["content"] = flatten_tool_part(part)
        block["metadata"] = {**as_dict(block.get("metadata")), "flattenedFrom": "tool"}
    elif part.type in ("image", "video"):
        block["type"] = part.type
        block["url"] = part.media_url
        if file_info:
            block["file"] = file_info
    elif part.type in ("audio", "document"):
        block["type"] = "file"
        if file_info:
            block["file"] = file_info
        if part.content:
            block["content"] = part.content
    else:
        block["type"] = "main_text"
        block["content"] = part.content
    return block


def _resolve_assistants(ir: BackupIR) -> list[IRAssistant]:
    if not ir.assistants:
        return [IRAssistant(id="default", name="Default")]
    out = []
    for i, assistant in enumerate(ir.assistants):
        if assistant.id:
            out.append(assistant)
        else:
            out.append(
                IRAssistant(
                    id=derive_uuid(f"cherry:assistant:{i}:{assistant.name}"),
                    name=assistant.name,
                    prompt=assistant.prompt,
                    description=assistant.description,
                    model=assistant.model,
                    settings=assistant.settings,
                    opaque=assistant.opaque,
                )
            )
    return out


def _build_assistants_slice(
    assistants: list[IRAssistant],
    conv_by_assistant: dict[str, list[IRConversation]],
    now: str,
    warnings: list[str],
) -> dict[str, Any]:
    items = []
    used: set[str] = set()
    for i, assistant in enumerate(assistants):
        topics = [
            {
                "id": conv.id,
                "assistantId": assistant.id,
                "name": fallback(conv.title, DEFAULT_TITLE),
                "createdAt": fallback(conv.created_at, now),
                "updatedAt": fallback(conv.updated_at, now),
                "messages": [],
                "isNameManuallyEdited": True,
            }
            for conv in conv_by_assistant.get(assistant.id, [])
        ]
        item: dict[str, Any] = {
            "id": assistant.id,
            "name": fallback(assistant.name, f"Assistant {i + 1}"),
            "prompt": assistant.prompt,
            "topics": topics,
            "type": "assistant",
            "emoji": "😀",
            "settings": clone(assistant.settings) or dict(DEFAULT_ASSISTANT_SETTINGS),
            "regularPhrases": [],
        }
        assign_unique_name(item, used, warnings)
        if assistant.description:
            item["description"] = assistant.description
        model = as_dict(assistant.model)
        chat_model = pick_first_string(model.get("id"), model.get("chatModelId"))
        if chat_model:
            item["model"] = clone(model) if model.get("id") else {"id": chat_model}
        items.append(item)

    default = clone(items[0])
    default["id"] = "default"
    default["name"] = "Default"
    default["topics"] = []
    return {
        "defaultAssistant": default,
        "assistants": items,
        "tagsOrder": [],
        "collapsedTags": {},
        "presets": [],
        "unifiedListOrder": [],
    }


def _default_persist_slices() -> dict[str, Any]:
    idle = {"lastSyncTime": None, "syncing": False, "lastSyncError": None}
    return {
        "settings": {"userName": "", "skipBackupFile": False},
        "llm": {
            "defaultModel": {
                "id": "default-model",
                "provider": "openai",
                "name": "gpt-4o-mini",
                "group": "default",
            },
            "quickModel": None,
            "translateModel": None,
        },
        "backup": {
            "webdavSync": dict(idle),
            "localBackupSync": dict(idle),
            "s3Sync": dict(idle),
        },
    }
