"""Canonical settings -> Format A persisted slices (settings, llm, assistants)."""

import logging
from typing import Any

from cherrikka.ir.models import BackupIR
from cherrikka.mapping.normalize import (
    CHERRY_LOCAL_KEYS,
    CHERRY_MODEL_KEYS,
    CHERRY_PROFILE_KEYS,
    canonical_to_cherry_type,
    normalize_from_source,
)
from cherrikka.mapping.unsupported import restore_cherry_unsupported
from cherrikka.utils.ids import derive_uuid
from cherrikka.utils.json import as_dict, as_list, clone, merge_missing, pick_first_string

logger = logging.getLogger(__name__)

# Format A setting -> keys accepted from canonical sync.webdav, in order
_WEBDAV_KEYS = {
    "webdavHost": ("webdavHost", "url"),
    "webdavUser": ("webdavUser", "username"),
    "webdavPass": ("webdavPass", "password"),
    "webdavPath": ("webdavPath", "path"),
    "webdavAutoSync": ("webdavAutoSync",),
    "webdavSyncInterval": ("webdavSyncInterval",),
    "webdavMaxBackups": ("webdavMaxBackups",),
    "webdavSkipBackupFile": ("webdavSkipBackupFile",),
    "webdavDisableStream": ("webdavDisableStream",),
}


def build_cherry_persist_slices(
    ir: BackupIR, base: dict[str, Any] | None, assistants_slice: dict[str, Any] | None
) -> tuple[dict[str, Any], list[str]]:
    """Return the decoded persist slices for data.json, plus warnings."""
    warnings: list[str] = []
    dst = clone(base) if base else {}

    norm = ir.settings
    if not norm:
        norm, norm_warnings = normalize_from_source(ir)
        warnings.extend(norm_warnings)

    if assistants_slice:
        dst["assistants"] = clone(assistants_slice)
    settings = clone(as_dict(dst.get("settings")))
    llm = clone(as_dict(dst.get("llm")))

    core_models = as_dict(norm.get("core.models"))
    for key in CHERRY_MODEL_KEYS:
        model = as_dict(core_models.get(key))
        if model:
            llm[key] = clone(model)

    providers = _build_providers(as_list(norm.get("core.providers")), warnings)
    if providers:
        llm["providers"] = providers

    ui = as_dict(norm.get("ui.profile"))
    for key in CHERRY_PROFILE_KEYS:
        if key in ui:
            settings[key] = clone(ui[key])

    aid = pick_first_string(as_dict(norm.get("core.selection")).get("assistantId"))
    if aid:
        settings["assistantId"] = aid

    webdav = as_dict(norm.get("sync.webdav"))
    for dst_key, src_keys in _WEBDAV_KEYS.items():
        for src_key in src_keys:
            if src_key in webdav:
                settings[dst_key] = clone(webdav[src_key])
                break

    s3 = as_dict(norm.get("sync.s3"))
    if s3:
        settings["s3"] = clone(s3)
    local = as_dict(norm.get("sync.local"))
    for key in CHERRY_LOCAL_KEYS:
        if key in local:
            settings[key] = clone(local[key])

    merge_missing(settings, as_dict(norm.get("search")))
    mcp = as_dict(norm.get("mcp"))
    if "servers" in mcp:
        settings["mcpServers"] = clone(mcp["servers"])
    merge_missing(settings, as_dict(norm.get("tts")))

    if ir.source_format == "cherry":
        merge_missing(settings, as_dict(ir.config.get("cherry.settings")))
        merge_missing(llm, as_dict(ir.config.get("cherry.llm")))
    merge_missing(settings, as_dict(ir.config.get("rehydrate.cherry.settings")))
    merge_missing(llm, as_dict(ir.config.get("rehydrate.cherry.llm")))

    if not pick_first_string(settings.get("userId")):
        settings["userId"] = derive_uuid(f"cherry:user:{_user_seed(ir)}")
    settings.setdefault("skipBackupFile", False)

    dst["settings"] = settings
    dst["llm"] = llm
    merge_missing(dst, as_dict(ir.config.get("rehydrate.cherry.persistSlices")))
    isolated = as_dict(ir.opaque.get("interop.cherry.unsupported"))
    if isolated:
        restore_cherry_unsupported(settings, dst, isolated)

    warnings.extend(_enforce_assistant_models(dst))
    warnings.extend(_enforce_selected_assistant(dst))
    return dst, sorted(set(warnings))


def _user_seed(ir: BackupIR) -> str:
    if ir.assistants:
        return ir.assistants[0].id
    if ir.conversations:
        return ir.conversations[0].id
    return "default"


def _build_providers(core: list[Any], warnings: list[str]) -> list[dict[str, Any]]:
    out = []
    for index, item in enumerate(core):
        pm = as_dict(item)
        if not pm:
            continue
        mapped = pick_first_string(pm.get("mappedType"))
        source_type = pick_first_string(pm.get("sourceType"))
        cherry_type = canonical_to_cherry_type(mapped, source_type)
        raw = clone(as_dict(pm.get("raw")))
        if not pick_first_string(raw.get("id")):
            raw["id"] = pick_first_string(pm.get("id")) or derive_uuid(f"provider:{mapped}:{index}")
        if not pick_first_string(raw.get("name")):
            raw["name"] = pick_first_string(pm.get("name"), mapped.upper(), "Imported Provider")
        if not cherry_type:
            warnings.append(f"unsupported provider kept disabled: {raw['name']}")
            cherry_type = source_type or "openai"
        raw["type"] = cherry_type
        raw.setdefault("models", [])
        for model in map(as_dict, as_list(raw["models"])):
            model.setdefault("provider", raw["id"])
            if not pick_first_string(model.get("name")):
                model["name"] = pick_first_string(model.get("displayName"), model.get("modelId"), model.get("id"))
        if not pick_first_string(raw.get("apiHost")) and pick_first_string(raw.get("baseUrl")):
            raw["apiHost"] = pick_first_string(raw.get("baseUrl"))
        raw["enabled"] = bool(canonical_to_cherry_type(mapped, source_type)) and bool(as_list(raw["models"]))
        out.append(raw)
    return out


def _enforce_selected_assistant(persist: dict[str, Any]) -> list[str]:
    """settings.assistantId must name an emitted assistant; otherwise rebind it to the first one."""
    settings = as_dict(persist.get("settings"))
    current = pick_first_string(settings.get("assistantId"))
    if not current:
        return []
    slice_ = as_dict(persist.get("assistants"))
    ids = [pick_first_string(as_dict(a).get("id")) for a in as_list(slice_.get("assistants"))]
    ids = [i for i in ids if i]
    known = set(ids)
    default_id = pick_first_string(as_dict(slice_.get("defaultAssistant")).get("id"))
    if default_id:
        known.add(default_id)
    if current in known:
        return []
    settings["assistantId"] = ids[0] if ids else default_id
    if not settings["assistantId"]:
        del settings["assistantId"]
    return ["selected assistant not found, fallback to first assistant"]


def _enforce_assistant_models(persist: dict[str, Any]) -> list[str]:
    """Point every assistant at a model owned by an enabled provider."""
    warnings: list[str] = []
    llm = as_dict(persist.get("llm"))
    enabled_models: list[dict[str, Any]] = []
    known: dict[str, dict[str, Any]] = {}
    for provider in map(as_dict, as_list(llm.get("providers"))):
        if provider.get("enabled") is False:
            continue
        for model in map(as_dict, as_list(provider.get("models"))):
            mid = pick_first_string(model.get("id"), model.get("modelId"))
            if mid:
                enabled_models.append(model)
                known.setdefault(mid, model)
    if not enabled_models:
        return warnings

    slice_ = as_dict(persist.get("assistants"))
    targets = [as_dict(a) for a in as_list(slice_.get("assistants"))]
    if as_dict(slice_.get("defaultAssistant")):
        targets.append(as_dict(slice_.get("defaultAssistant")))
    for assistant in targets:
        model = as_dict(assistant.get("model"))
        mid = pick_first_string(model.get("id"), model.get("modelId"))
        if mid in known:
            if not model.get("provider"):
                assistant["model"] = clone(known[mid])
            continue
        if mid:
            warnings.append(f"assistant model rebound to first enabled model: {pick_first_string(assistant.get('name'))}")
        assistant["model"] = clone(enabled_models[0])
    return warnings
