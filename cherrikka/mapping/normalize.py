"""Canonical settings vocabulary shared by both schemas.

normalize_* functions translate a parsed source's raw config into the
canonical ``settings`` view; ``to_rikka`` and ``to_cherry`` translate it back
out. Provider types go through the closed tables below.
"""

import logging
from typing import Any

from cherrikka.ir.models import BackupIR
from cherrikka.utils.ids import derive_uuid
from cherrikka.utils.json import as_dict, as_list, clone, pick_first_string, set_if_present

logger = logging.getLogger(__name__)

CANONICAL_KEYS = (
    "core.providers",
    "core.models",
    "core.assistants",
    "core.selection",
    "sync.webdav",
    "sync.s3",
    "sync.local",
    "ui.profile",
    "search",
    "mcp",
    "tts",
    "raw.cherry",
    "raw.rikka",
    "raw.unsupported",
    "normalizer.ver",
    "normalizer.source",
)

CHERRY_PROVIDER_TYPES = {
    "openai": "openai",
    "openai-response": "openai",
    "new-api": "openai",
    "gateway": "openai",
    "azure-openai": "openai",
    "ollama": "openai",
    "lmstudio": "openai",
    "gpustack": "openai",
    "aws-bedrock": "openai",
    "anthropic": "claude",
    "vertex-anthropic": "claude",
    "gemini": "google",
    "vertexai": "google",
}

RIKKA_PROVIDER_TYPES = {"openai": "openai", "claude": "claude", "google": "google"}

CANONICAL_TO_CHERRY = {"openai": "openai", "claude": "anthropic", "google": "gemini"}

CHERRY_MODEL_KEYS = ("defaultModel", "quickModel", "translateModel", "topicNamingModel")
RIKKA_MODEL_KEYS = (
    "chatModelId",
    "titleModelId",
    "translateModeId",
    "suggestionModelId",
    "imageGenerationModelId",
)
CHERRY_WEBDAV_KEYS = (
    "webdavHost",
    "webdavUser",
    "webdavPass",
    "webdavPath",
    "webdavAutoSync",
    "webdavSyncInterval",
    "webdavMaxBackups",
    "webdavSkipBackupFile",
    "webdavDisableStream",
)
CHERRY_LOCAL_KEYS = (
    "localBackupDir",
    "localBackupAutoSync",
    "localBackupSyncInterval",
    "localBackupMaxBackups",
    "localBackupSkipBackupFile",
)
CHERRY_PROFILE_KEYS = ("userId", "userName", "language", "targetLanguage")
CHERRY_SEARCH_KEYS = ("enableWebSearch", "webSearchProvider", "webSearchProviders")
RIKKA_SEARCH_KEYS = ("enableWebSearch", "searchServices", "searchCommonOptions", "searchServiceSelected")
TTS_KEYS = ("ttsProviders", "selectedTTSProviderId")


def default_normalized_settings() -> dict[str, Any]:
    return {
        "core.providers": [],
        "core.models": {},
        "core.assistants": [],
        "core.selection": {},
        "sync.webdav": {},
        "sync.s3": {},
        "sync.local": {},
        "ui.profile": {},
        "search": {},
        "mcp": {},
        "tts": {},
        "raw.cherry": {},
        "raw.rikka": {},
        "raw.unsupported": [],
        "normalizer.ver": 1,
        "normalizer.source": "",
    }


def cherry_provider_to_canonical(provider_type: str) -> str:
    """Canonical family for a Format A provider type, "" when unmapped."""
    return CHERRY_PROVIDER_TYPES.get(provider_type.strip().lower(), "")


def rikka_provider_to_canonical(provider_type: str) -> str:
    return RIKKA_PROVIDER_TYPES.get(provider_type.strip().lower(), "")


def canonical_to_rikka_type(mapped_type: str) -> str:
    return RIKKA_PROVIDER_TYPES.get(mapped_type.strip().lower(), "")


def canonical_to_cherry_type(mapped_type: str, source_type: str = "") -> str:
    """Prefer the original Format A type when it belongs to the same family."""
    if source_type.strip():
        source_mapped = cherry_provider_to_canonical(source_type)
        if source_mapped and (not mapped_type.strip() or source_mapped == mapped_type):
            return source_type
    return CANONICAL_TO_CHERRY.get(mapped_type.strip().lower(), "")


def ensure_normalized_settings(ir: BackupIR) -> list[str]:
    """Populate ir.settings from ir.config once. No-op when already populated."""
    if ir.settings:
        return []
    settings, warnings = normalize_from_source(ir)
    ir.settings = settings
    ir.warnings.extend(warnings)
    return warnings


def normalize_from_source(ir: BackupIR) -> tuple[dict[str, Any], list[str]]:
    fmt = (ir.source_format or "").strip().lower()
    if fmt == "cherry":
        return normalize_from_cherry_config(ir.config)
    if fmt == "rikka":
        return normalize_from_rikka_config(ir.config)
    return default_normalized_settings(), []


def assign_unique_name(assistant: dict[str, Any], used: set[str], warnings: list[str]) -> None:
    """Suffix " (2)", " (3)", ... onto case-insensitive duplicates, first seen keeps the name."""
    base = pick_first_string(assistant.get("name")) or "Imported Assistant"
    name, suffix = base, 2
    while name.strip().lower() in used:
        name = f"{base} ({suffix})"
        suffix += 1
    used.add(name.strip().lower())
    assistant["name"] = name
    if name != base:
        warnings.append(f"assistant name conflict renamed: {base} -> {name}")


def _ensure_id(entry: dict[str, Any], kind: str, index: int) -> None:
    if not pick_first_string(entry.get("id")):
        entry["id"] = derive_uuid(f"normalize:{kind}:{entry.get('name', '')}:{index}")


def _provider_entry(pm: dict[str, Any], source_type: str, mapped: str) -> dict[str, Any]:
    return {
        "id": pick_first_string(pm.get("id")),
        "name": pick_first_string(pm.get("name"), pm.get("id")),
        "sourceType": source_type,
        "mappedType": mapped,
        "raw": clone(pm),
    }


def _copy_keys(src: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {key: clone(src[key]) for key in keys if key in src}


def normalize_from_cherry_config(config: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    out = default_normalized_settings()
    out["normalizer.source"] = "cherry"
    warnings: list[str] = []

    persist = as_dict(config.get("cherry.persistSlices"))
    settings = clone(as_dict(config.get("cherry.settings"))) or clone(as_dict(persist.get("settings")))
    llm = clone(as_dict(config.get("cherry.llm"))) or clone(as_dict(persist.get("llm")))
    out["raw.cherry"] = {"settings": settings, "llm": llm}

    assistants_slice = as_dict(persist.get("assistants"))
    core_assistants = []
    for i, item in enumerate(as_list(assistants_slice.get("assistants"))):
        am = as_dict(item)
        if not am:
            continue
        model = as_dict(am.get("model"))
        a_settings = as_dict(am.get("settings"))
        entry = {
            "id": pick_first_string(am.get("id")),
            "name": pick_first_string(am.get("name")),
            "systemPrompt": pick_first_string(am.get("prompt")),
            "chatModelId": pick_first_string(model.get("id")),
            "temperature": a_settings.get("temperature"),
            "topP": a_settings.get("topP"),
            "context": a_settings.get("contextCount"),
            "stream": a_settings.get("streamOutput"),
            "maxTokens": a_settings.get("maxTokens"),
            "raw": clone(am),
        }
        _ensure_id(entry, "assistant", i)
        core_assistants.append(entry)
    out["core.assistants"] = core_assistants

    core_providers = []
    for i, item in enumerate(as_list(llm.get("providers"))):
        pm = as_dict(item)
        if not pm:
            continue
        p_type = pick_first_string(pm.get("type"), pm.get("providerType"))
        mapped = cherry_provider_to_canonical(p_type)
        if not mapped:
            warnings.append(f"unsupported cherry provider type: {p_type}")
        entry = _provider_entry(pm, p_type, mapped)
        _ensure_id(entry, "provider", i)
        core_providers.append(entry)
    out["core.providers"] = core_providers

    core_models: dict[str, Any] = {}
    for key in CHERRY_MODEL_KEYS:
        model = as_dict(llm.get(key))
        if model:
            core_models[key] = clone(model)
    for selection_key, source_key in (
        ("chatModelId", "defaultModel"),
        ("suggestionModelId", "quickModel"),
        ("translateModeId", "translateModel"),
        ("titleModelId", "topicNamingModel"),
    ):
        src = as_dict(core_models.get(source_key))
        model_id = pick_first_string(src.get("id"), src.get("modelId"), src.get("name"))
        if model_id and selection_key not in core_models:
            core_models[selection_key] = model_id
    out["core.models"] = core_models

    selection: dict[str, Any] = {}
    default_assistant = as_dict(assistants_slice.get("defaultAssistant"))
    if default_assistant:
        set_if_present(selection, "assistantId", default_assistant.get("id"))
    set_if_present(selection, "assistantId", settings.get("assistantId"))
    out["core.selection"] = selection

    out["sync.webdav"] = _copy_keys(settings, CHERRY_WEBDAV_KEYS)
    out["sync.s3"] = clone(as_dict(settings.get("s3")))
    out["sync.local"] = _copy_keys(settings, CHERRY_LOCAL_KEYS)
    out["ui.profile"] = _copy_keys(settings, CHERRY_PROFILE_KEYS)
    out["search"] = _copy_keys(settings, CHERRY_SEARCH_KEYS)
    out["mcp"] = {"servers": clone(settings["mcpServers"])} if "mcpServers" in settings else {}
    out["tts"] = _copy_keys(settings, TTS_KEYS)

    for w in warnings:
        logger.warning(w)
    return out, sorted(set(warnings))


def normalize_from_rikka_config(config: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    out = default_normalized_settings()
    out["normalizer.source"] = "rikka"
    warnings: list[str] = []

    settings = clone(as_dict(config.get("rikka.settings")))
    out["raw.rikka"] = {"settings": settings}

    core_providers = []
    for i, item in enumerate(as_list(settings.get("providers"))):
        pm = as_dict(item)
        if not pm:
            continue
        p_type = pick_first_string(pm.get("type"))
        mapped = rikka_provider_to_canonical(p_type)
        if not mapped:
            warnings.append(f"unsupported rikka provider type: {p_type}")
        entry = _provider_entry(pm, p_type, mapped)
        _ensure_id(entry, "provider", i)
        core_providers.append(entry)
    out["core.providers"] = core_providers

    core_assistants = []
    for i, item in enumerate(as_list(settings.get("assistants"))):
        am = as_dict(item)
        if not am:
            continue
        entry = {
            "id": pick_first_string(am.get("id")),
            "name": pick_first_string(am.get("name")),
            "systemPrompt": pick_first_string(am.get("systemPrompt")),
            "chatModelId": pick_first_string(am.get("chatModelId")),
            "temperature": am.get("temperature"),
            "topP": am.get("topP"),
            "context": am.get("contextMessageSize"),
            "stream": am.get("streamOutput"),
            "maxTokens": am.get("maxTokens"),
            "raw": clone(am),
        }
        _ensure_id(entry, "assistant", i)
        core_assistants.append(entry)
    out["core.assistants"] = core_assistants

    core_models: dict[str, Any] = {}
    for key in RIKKA_MODEL_KEYS:
        set_if_present(core_models, key, settings.get(key))
    out["core.models"] = core_models

    selection: dict[str, Any] = {}
    set_if_present(selection, "assistantId", settings.get("assistantId"))
    out["core.selection"] = selection

    out["sync.webdav"] = clone(as_dict(settings.get("webDavConfig")))
    out["sync.s3"] = clone(as_dict(settings.get("s3Config")))
    display = as_dict(settings.get("displaySetting"))
    out["ui.profile"] = {"displaySetting": clone(display)} if display else {}
    out["search"] = _copy_keys(settings, RIKKA_SEARCH_KEYS)
    out["mcp"] = {"servers": clone(settings["mcpServers"])} if "mcpServers" in settings else {}
    out["tts"] = _copy_keys(settings, TTS_KEYS)

    for w in warnings:
        logger.warning(w)
    return out, sorted(set(warnings))
