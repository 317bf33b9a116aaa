"""Parser for Cherry Studio backups (data.json + Data/Files).

data.json holds two stores: ``localStorage``, whose ``persist:cherry-studio``
value is a JSON string of slices that are themselves JSON strings, and
``indexedDB``, whose ``topics``/``message_blocks``/``files`` tables are
joined in memory. Payloads live under ``Data/Files`` named ``{id}{ext}``.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from cherrikka.backup.detection import MalformedArchiveError
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
from cherrikka.mapping.unsupported import extract_cherry_unsupported
from cherrikka.utils.common import dedupe_warnings, file_ext, logical_type, sha256_hex
from cherrikka.utils.ids import derive_uuid
from cherrikka.utils.json import as_dict, as_list, as_str, go_json, pick_first_string

logger = logging.getLogger(__name__)

FILES_DIR = "Data/Files/"
PERSIST_KEY = "persist:cherry-studio"
KNOWN_TABLES = ("topics", "message_blocks", "files")


def parse_cherry(entries: Mapping[str, bytes]) -> BackupIR:
    """Parse a Format A archive into a BackupIR.

    Raises MalformedArchiveError for a missing or undecodable data.json,
    indexedDB, indexedDB.topics or persist:cherry-studio value. Everything
    else degrades to a warning.
    """
    root = _load_root(entries)
    ir = BackupIR(source_app=SOURCE_APPS["cherry"], source_format="cherry")
    if _sidecar_exists(entries):
        ir.opaque["interop.sidecar.available"] = True

    local_storage = as_dict(root.get("localStorage"))
    ir.config["cherry.localStorageRaw"] = local_storage

    indexed = root.get("indexedDB", {})
    if not isinstance(indexed, dict):
        raise MalformedArchiveError("parse indexedDB: expected an object")

    blocks_by_id = {
        as_str(block.get("id")): block
        for block in map(as_dict, as_list(indexed.get("message_blocks")))
        if as_str(block.get("id"))
    }

    # Phase 1: files table, then orphans found on disk
    files_by_id: dict[str, IRFile] = {}
    for rec in map(as_dict, as_list(indexed.get("files"))):
        f = _file_from_row(rec, entries)
        if f is not None:
            files_by_id[f.id] = f
    _merge_orphan_files(entries, files_by_id)
    ir.files = [files_by_id[k] for k in sorted(files_by_id)]

    # Phase 2: topics -> conversations
    topics = indexed.get("topics", [])
    if not isinstance(topics, list):
        raise MalformedArchiveError("parse indexedDB.topics: expected an array")
    explicit_assistant: set[str] = set()
    dominant_assistant: dict[str, str] = {}
    for i, topic in enumerate(map(as_dict, topics)):
        conv = IRConversation(
            id=as_str(topic.get("id")) or derive_uuid(f"cherry:topic:{i}:{as_str(topic.get('name'))}"),
            title=as_str(topic.get("name")),
            created_at=as_str(topic.get("createdAt")),
            updated_at=as_str(topic.get("updatedAt")),
        )
        raw_messages = as_list(topic.get("messages"))
        for j, item in enumerate(raw_messages):
            if not isinstance(item, dict):
                continue
            msg = _to_message(item, blocks_by_id, files_by_id)
            if not msg.id:
                msg.id = derive_uuid(f"cherry:message:{conv.id}:{j}")
            conv.messages.append(msg)
        if as_str(topic.get("assistantId")):
            conv.assistant_id = as_str(topic.get("assistantId"))
            explicit_assistant.add(conv.id)
        else:
            dominant_assistant[conv.id] = _dominant_assistant_id(raw_messages)
        ir.conversations.append(conv)

    # Phase 3: persisted slices, assistants, fallbacks
    _parse_persist_slices(ir, local_storage)
    _apply_assistant_fallbacks(ir, explicit_assistant, dominant_assistant)
    _apply_title_fallbacks(ir)

    isolated = extract_cherry_unsupported(ir.config)
    if isolated:
        ir.opaque["interop.cherry.unsupported"] = isolated
        ir.warnings.append("unsupported-isolated:cherry.settings")
    ensure_normalized_settings(ir)

    extra = {k: v for k, v in indexed.items() if k not in KNOWN_TABLES}
    if extra:
        ir.opaque["cherry.indexedDB.extra"] = extra
    for f in ir.files:
        if f.missing:
            ir.warnings.append(f"missing cherry file payload: {f.id}")

    ir.warnings = dedupe_warnings(ir.warnings)
    logger.info(
        "Parsed cherry backup: %d conversations, %d assistants, %d files",
        len(ir.conversations), len(ir.assistants), len(ir.files),
    )
    return ir


def validate_cherry(entries: Mapping[str, bytes]) -> list[str]:
    """Structural checks that do not need a full parse. Returns issue strings."""
    issues: list[str] = []
    if "data.json" not in entries:
        issues.append("missing data.json")
    if not any(name.startswith("Data/") for name in entries):
        issues.append("missing Data directory")
    if issues:
        return issues

    try:
        root = _load_root(entries)
    except MalformedArchiveError as e:
        return [str(e)]
    indexed = as_dict(root.get("indexedDB"))

    file_ids: set[str] = set()
    for rec in map(as_dict, as_list(indexed.get("files"))):
        fid = as_str(rec.get("id"))
        if not fid:
            continue
        file_ids.add(fid)
        if _resolve_payload(entries, fid, as_str(rec.get("ext"))) is None:
            issues.append(f"indexedDB.files entry missing payload: {fid}")

    for block in map(as_dict, as_list(indexed.get("message_blocks"))):
        fid = as_str(as_dict(block.get("file")).get("id"))
        if fid and fid not in file_ids:
            issues.append(f"message_blocks.file.id not found in indexedDB.files: {fid}")

    persist_raw = as_str(as_dict(root.get("localStorage")).get(PERSIST_KEY))
    if persist_raw:
        try:
            slices, _ = _decode_slices(json.loads(persist_raw), [])
        except ValueError as e:
            issues.append(f"parse persist:cherry-studio failed: {e}")
        else:
            issues.extend(_validate_llm(slices))

    return dedupe_warnings(issues)


# -------------------------------------------------------------------------
# Internal
# -------------------------------------------------------------------------


def _load_root(entries: Mapping[str, bytes]) -> dict[str, Any]:
    raw = entries.get("data.json")
    if raw is None:
        raise MalformedArchiveError("missing data.json")
    try:
        root = json.loads(raw)
    except ValueError as e:
        raise MalformedArchiveError(f"parse data.json: {e}") from e
    if not isinstance(root, dict):
        raise MalformedArchiveError("parse data.json: expected an object")
    return root


def _sidecar_exists(entries: Mapping[str, bytes]) -> bool:
    return "cherrikka/manifest.json" in entries and "cherrikka/raw/source.zip" in entries


def _any_string(value: Any) -> str:
    """Strings stripped, whole numbers rendered without a fraction."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        if float(value).is_integer():
            return str(int(value))
        return f"{value:f}"
    return ""


def normalize_logical_type(file_type: str, ext: str) -> str:
    # a declared type wins over the extension, even when it is "document"
    if (file_type or "").strip():
        return logical_type(file_type, "")
    return logical_type("", ext)


def _resolve_payload(entries: Mapping[str, bytes], file_id: str, ext: str) -> str | None:
    exact = f"{FILES_DIR}{file_id}{ext}"
    if exact in entries:
        return exact
    for name in sorted(entries):
        if not name.startswith(FILES_DIR) or name.endswith("/"):
            continue
        base = name[len(FILES_DIR):]
        if "/" in base:
            continue
        if base == file_id or base.startswith(file_id + "."):
            return name
    return None


def _file_from_row(rec: dict[str, Any], entries: Mapping[str, bytes]) -> IRFile | None:
    fid = as_str(rec.get("id"))
    if not fid:
        return None
    name = as_str(rec.get("origin_name")) or as_str(rec.get("name"))
    ext = as_str(rec.get("ext"))
    if not ext and "." in name:
        ext = file_ext(name)
    cherry_type = as_str(rec.get("type"))

    path = _resolve_payload(entries, fid, ext)
    data = entries.get(path) if path else None
    metadata = dict(rec)
    metadata["cherry_id"] = fid
    metadata["cherry_ext"] = ext
    return IRFile(
        id=fid,
        name=name,
        ext=ext,
        mime_type=cherry_type,
        logical_type=normalize_logical_type(cherry_type, ext),
        relative_src=path or "",
        size=len(data) if data is not None else 0,
        created_at=_any_string(rec.get("created_at")) or _any_string(rec.get("createdAt")),
        hash_sha256=sha256_hex(data) if data is not None else "",
        missing=data is None,
        data=data,
        metadata=metadata,
    )


def _merge_orphan_files(entries: Mapping[str, bytes], files_by_id: dict[str, IRFile]) -> None:
    for name in sorted(entries):
        if not name.startswith(FILES_DIR) or name.endswith("/"):
            continue
        base = name[len(FILES_DIR):]
        if "/" in base or base == ".keep":
            continue
        ext = file_ext(base)
        stem = base[: len(base) - len(ext)] if ext else base
        if not stem or stem in files_by_id:
            continue
        data = entries[name]
        files_by_id[stem] = IRFile(
            id=stem,
            name=base,
            ext=ext,
            logical_type=normalize_logical_type("", ext),
            relative_src=name,
            size=len(data),
            hash_sha256=sha256_hex(data),
            orphan=True,
            data=data,
            metadata={"discovered": True, "cherry_id": stem, "cherry_ext": ext},
        )
        logger.debug("Discovered orphan cherry file %s", name)


def _to_message(
    raw: dict[str, Any], blocks_by_id: dict[str, dict], files_by_id: dict[str, IRFile]
) -> IRMessage:
    msg = IRMessage(
        id=as_str(raw.get("id")),
        role=normalize_role(as_str(raw.get("role")), empty="user"),
        created_at=as_str(raw.get("createdAt")),
        model_id=as_str(raw.get("modelId")),
    )
    for block_id in as_list(raw.get("blocks")):
        block = blocks_by_id.get(block_id) if isinstance(block_id, str) else None
        if block:
            msg.parts.append(_block_to_part(block, files_by_id))
    if not msg.parts and isinstance(raw.get("content"), str) and raw["content"]:
        msg.parts.append(IRPart(type="text", content=raw["content"]))
    msg.ensure_parts()
    return msg


def _block_to_part(block: dict[str, Any], files_by_id: dict[str, IRFile]) -> IRPart:
    block_type = as_str(block.get("type"))
    content = block.get("content") if isinstance(block.get("content"), str) else ""
    part = IRPart(type="text", metadata={"cherryBlockType": block_type})

    if block_type in ("main_text", "code", "translation", "compact"):
        part.content = content
    elif block_type == "thinking":
        part.type = "reasoning"
        part.content = content
    elif block_type == "tool":
        part.type = "tool"
        part.name = as_str(block.get("toolName"))
        part.tool_call_id = as_str(block.get("toolId"))
        if "arguments" in block:
            part.input = go_json(block["arguments"])
        if content:
            part.output = [IRPart(type="text", content=content)]
    elif block_type in ("image", "video"):
        part.type = block_type
        part.media_url = as_str(block.get("url"))
        _fill_file_info(part, block, files_by_id)
    elif block_type == "file":
        part.type = "document"
        _fill_file_info(part, block, files_by_id)
        if not part.name:
            part.name = as_str(block.get("name"))
    else:
        part.content = content or f"[unsupported cherry block: {block_type}]"
        part.metadata["raw"] = block
    return part


def _fill_file_info(part: IRPart, block: dict[str, Any], files_by_id: dict[str, IRFile]) -> None:
    fm = as_dict(block.get("file"))
    if not fm:
        return
    fid = as_str(fm.get("id"))
    if fid:
        part.file_id = fid
    if not part.name:
        part.name = pick_first_string(fm.get("origin_name"), fm.get("name"))
    if not part.mime_type and fid in files_by_id:
        part.mime_type = files_by_id[fid].mime_type


def _dominant_assistant_id(messages: list[Any]) -> str:
    """Most frequent message assistantId; the first seen wins ties."""
    counts: dict[str, int] = {}
    for item in messages:
        aid = as_str(as_dict(item).get("assistantId"))
        if aid:
            counts[aid] = counts.get(aid, 0) + 1
    best, best_count = "", 0
    for aid, count in counts.items():
        if count > best_count:
            best, best_count = aid, count
    return best


def _decode_slices(persist: Any, warnings: list[str]) -> tuple[dict[str, Any], set[str]]:
    """Second decode pass: each slice value is itself JSON text.

    Also returns the keys of slices that were not valid JSON and were kept as text.
    """
    if not isinstance(persist, dict):
        raise ValueError("persist:cherry-studio is not an object")
    decoded: dict[str, Any] = {}
    raw_keys: set[str] = set()
    for key, value in persist.items():
        if not isinstance(value, str):
            decoded[key] = value
            continue
        try:
            decoded[key] = json.loads(value)
        except ValueError:
            decoded[key] = value
            raw_keys.add(key)
            warnings.append(f"persist slice {key} is not valid JSON; kept raw")
    return decoded, raw_keys


def _parse_persist_slices(ir: BackupIR, local_storage: dict[str, Any]) -> None:
    persist_raw = local_storage.get(PERSIST_KEY)
    if not isinstance(persist_raw, str) or not persist_raw:
        return
    try:
        slices, raw_keys = _decode_slices(json.loads(persist_raw), ir.warnings)
    except ValueError as e:
        raise MalformedArchiveError(f"parse persist:cherry-studio: {e}") from e
    ir.config["cherry.persistSlices"] = slices
    raw_slices = {key: value for key, value in slices.items() if key in raw_keys}
    if raw_slices:
        ir.config["cherry.persistRawSlices"] = raw_slices

    assistants_slice = as_dict(slices.get("assistants"))
    for i, item in enumerate(as_list(assistants_slice.get("assistants"))):
        am = as_dict(item)
        if not am:
            continue
        ir.assistants.append(
            IRAssistant(
                id=as_str(am.get("id")) or derive_uuid(f"cherry:assistant:{i}:{as_str(am.get('name'))}"),
                name=as_str(am.get("name")),
                prompt=am.get("prompt") if isinstance(am.get("prompt"), str) else "",
                description=as_str(am.get("description")),
                model=as_dict(am.get("model")),
                settings=as_dict(am.get("settings")),
            )
        )

    if "settings" in slices:
        ir.config["cherry.settings"] = slices["settings"]
    if "llm" in slices:
        ir.config["cherry.llm"] = slices["llm"]


def _persist_assistants(ir: BackupIR) -> list[dict[str, Any]]:
    slices = as_dict(ir.config.get("cherry.persistSlices"))
    return [as_dict(a) for a in as_list(as_dict(slices.get("assistants")).get("assistants"))]


def _assistant_topics_from_persist(ir: BackupIR) -> dict[str, str]:
    """topic id -> owning assistant id, the owner winning over the topic's own field."""
    out: dict[str, str] = {}
    for assistant in _persist_assistants(ir):
        owner = as_str(assistant.get("id"))
        for topic in map(as_dict, as_list(assistant.get("topics"))):
            tid = as_str(topic.get("id"))
            if not tid:
                continue
            declared = as_str(topic.get("assistantId"))
            mapped = owner
            if not mapped:
                mapped = declared
            elif declared and declared != mapped:
                ir.warnings.append(
                    f"topic {tid} assistantId ({declared}) mismatches owner assistant ({mapped}), using owner"
                )
            if not mapped:
                continue
            existing = out.get(tid, "")
            if existing and existing != mapped:
                ir.warnings.append(
                    f"topic {tid} mapped to multiple assistants in persist slices: {existing} vs {mapped}"
                )
                continue
            out[tid] = mapped
    return out


def _apply_assistant_fallbacks(
    ir: BackupIR, explicit: set[str], dominant: dict[str, str]
) -> None:
    by_topic = _assistant_topics_from_persist(ir)
    for conv in ir.conversations:
        if conv.id in explicit:
            continue
        conv.assistant_id = by_topic.get(conv.id) or dominant.get(conv.id, "")


def _apply_title_fallbacks(ir: BackupIR) -> None:
    names: dict[str, str] = {}
    for assistant in _persist_assistants(ir):
        for topic in map(as_dict, as_list(assistant.get("topics"))):
            tid, name = as_str(topic.get("id")), as_str(topic.get("name"))
            if tid and name:
                names.setdefault(tid, name)
    for conv in ir.conversations:
        if not conv.title:
            conv.title = names.get(conv.id, "")


def _validate_llm(slices: dict[str, Any]) -> list[str]:
    issues: list[str] = []
    llm = as_dict(slices.get("llm"))
    providers = [as_dict(p) for p in as_list(llm.get("providers"))]
    provider_ids = {as_str(p.get("id")) for p in providers if as_str(p.get("id"))}
    model_ids: set[str] = set()

    for pm in providers:
        pid = as_str(pm.get("id"))
        if not pid:
            issues.append("llm.providers has provider with empty id")
            continue
        models = as_list(pm.get("models"))
        if not models:
            issues.append(f"llm.providers has provider without models: {pid}")
        for mm in map(as_dict, models):
            mid = pick_first_string(mm.get("id"), mm.get("modelId"))
            if not mid:
                issues.append(f"llm.providers model missing id: {pid}")
                continue
            model_ids.add(mid)
            if as_str(mm.get("modelId")):
                model_ids.add(as_str(mm.get("modelId")))
            owner = as_str(mm.get("provider"))
            if not owner:
                issues.append(f"llm.providers model missing provider: {mid}")
            elif owner not in provider_ids:
                issues.append(f"llm.providers model provider not found: {owner}")

    if not model_ids:
        return issues
    for key in ("defaultModel", "quickModel", "translateModel", "topicNamingModel"):
        model = as_dict(llm.get(key))
        if not model:
            continue
        mid = pick_first_string(model.get("id"), model.get("modelId"))
        if not mid:
            issues.append(f"llm.{key} missing model id")
        elif mid not in model_ids:
            issues.append(f"llm.{key} not found in llm.providers: {mid}")

    for assistant in map(as_dict, as_list(as_dict(slices.get("assistants")).get("assistants"))):
        model = as_dict(assistant.get("model"))
        mid = pick_first_string(model.get("id"), model.get("modelId"))
        if mid and mid not in model_ids:
            issues.append(f"assistant model not found in llm.providers: {mid}")
    return issues
