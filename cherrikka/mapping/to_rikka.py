"""Canonical settings -> Format B settings.json document."""

import logging
from typing import Any

from cherrikka.db.schema import DEFAULT_ASSISTANT_ID
from cherrikka.ir.models import BackupIR
from cherrikka.mapping.normalize import (
    RIKKA_MODEL_KEYS,
    assign_unique_name,
    canonical_to_rikka_type,
    normalize_from_source,
)
from cherrikka.mapping.unsupported import restore_rikka_unsupported
from cherrikka.utils.ids import ensure_uuid, is_valid_uuid
from cherrikka.utils.json import as_dict, as_list, clone, merge_missing, pick_first_string, set_if_present

logger = logging.getLogger(__name__)

DEFAULT_SYNC_ITEMS = ["DATABASE", "FILES"]
UUID_LIST_FIELDS = ("mcpServers", "tags", "modeInjectionIds", "lorebookIds")

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "claude": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta",
}

# selection key -> fallback key in canonical core.models (Format A naming)
_SELECTION_FALLBACKS = {
    "chatModelId": "defaultModel",
    "titleModelId": "topicNamingModel",
    "translateModeId": "translateModel",
    "suggestionModelId": "quickModel",
    "imageGenerationModelId": None,
}


def coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        low = value.strip().lower()
        if low in ("1", "t", "true"):
            return True
        if low in ("0", "f", "false"):
            return False
    return None


def coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def coerce_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class ModelAliases:
    """Every spelling of a model (ref, id, display name, name) -> emitted model id.

    One instance per build call. Also tracks which ids belong to enabled providers.
    """

    def __init__(self) -> None:
        self._alias: dict[str, str] = {}
        self.enabled_ids: list[str] = []

    def register(self, key: str, model_id: str) -> None:
        key, model_id = (key or "").strip(), (model_id or "").strip()
        if not key or not model_id:
            return
        self._alias.setdefault(key, model_id)
        self._alias.setdefault(key.lower(), model_id)

    def resolve(self, value: Any) -> str:
        """Resolve a string or a model dict to an emitted id, "" when unknown."""
        found = self._resolve_string(pick_first_string(value))
        if found:
            return found
        model = as_dict(value)
        for key in ("id", "modelId", "name", "displayName"):
            found = self._resolve_string(pick_first_string(model.get(key)))
            if found:
                return found
        return ""

    def _resolve_string(self, s: str) -> str:
        if not s:
            return ""
        if s in self._alias:
            return self._alias[s]
        if s.lower() in self._alias:
            return self._alias[s.lower()]
        return s if is_valid_uuid(s) else ""

    @property
    def first_enabled(self) -> str:
        return self.enabled_ids[0] if self.enabled_ids else ""


def build_rikka_settings(ir: BackupIR, base: dict[str, Any] | None) -> tuple[dict[str, Any], list[str]]:
    """Produce the settings.json document for the IR, seeded from base."""
    warnings: list[str] = []
    dst = clone(base) if base else {}
    if not dst:
        dst = {"assistantId": DEFAULT_ASSISTANT_ID, "providers": [], "assistants": []}

    norm = ir.settings
    if not norm:
        norm, norm_warnings = normalize_from_source(ir)
        warnings.extend(norm_warnings)

    aliases = ModelAliases()
    providers = _build_providers(as_list(norm.get("core.providers")), aliases, warnings)
    if providers or "providers" not in dst:
        dst["providers"] = providers

    assistants = _build_assistants(ir, as_list(norm.get("core.assistants")), aliases, warnings)
    if assistants or "assistants" not in dst:
        dst["assistants"] = assistants

    _apply_model_selection(dst, as_dict(norm.get("core.models")), aliases)

    aid = pick_first_string(as_dict(norm.get("core.selection")).get("assistantId"))
    if aid:
        dst["assistantId"] = ensure_uuid(aid, f"assistant:{aid}")

    webdav_raw = as_dict(norm.get("sync.webdav"))
    if webdav_raw:
        webdav: dict[str, Any] = {}
        set_if_present(webdav, "url", pick_first_string(webdav_raw.get("url"), webdav_raw.get("webdavHost")))
        set_if_present(webdav, "username", pick_first_string(webdav_raw.get("username"), webdav_raw.get("webdavUser")))
        set_if_present(webdav, "password", pick_first_string(webdav_raw.get("password"), webdav_raw.get("webdavPass")))
        set_if_present(webdav, "path", pick_first_string(webdav_raw.get("path"), webdav_raw.get("webdavPath")))
        webdav["items"] = clone(webdav_raw["items"]) if "items" in webdav_raw else list(DEFAULT_SYNC_ITEMS)
        dst["webDavConfig"] = webdav
    s3 = clone(as_dict(norm.get("sync.s3")))
    if s3:
        s3.setdefault("items", list(DEFAULT_SYNC_ITEMS))
        dst["s3Config"] = s3

    ui = as_dict(norm.get("ui.profile"))
    if "displaySetting" in ui:
        dst["displaySetting"] = clone(ui["displaySetting"])
    search = as_dict(norm.get("search"))
    for key in ("enableWebSearch", "searchServices", "searchCommonOptions", "searchServiceSelected"):
        if key in search:
            dst[key] = clone(search[key])
    mcp = as_dict(norm.get("mcp"))
    if "servers" in mcp:
        dst["mcpServers"] = clone(mcp["servers"])
    tts = as_dict(norm.get("tts"))
    for key in ("ttsProviders", "selectedTTSProviderId"):
        if key in tts:
            dst[key] = clone(tts[key])

    if ir.source_format == "rikka":
        merge_missing(dst, as_dict(ir.config.get("rikka.settings")))
    merge_missing(dst, as_dict(ir.config.get("rehydrate.rikka.settings")))
    isolated = as_dict(ir.opaque.get("interop.rikka.unsupported"))
    if isolated:
        restore_rikka_unsupported(dst, isolated)

    warnings.extend(enforce_rikka_consistency(dst))
    for w in warnings:
        logger.debug("rikka settings: %s", w)
    return dst, sorted(set(warnings))


def _apply_model_selection(dst: dict[str, Any], core_models: dict[str, Any], aliases: ModelAliases) -> None:
    for key, fallback_key in _SELECTION_FALLBACKS.items():
        candidates = [core_models.get(key)]
        if fallback_key:
            candidates.append(core_models.get(fallback_key))
        for candidate in candidates:
            resolved = aliases.resolve(candidate)
            if resolved:
                dst[key] = resolved
                break


def _upper_set(values: Any, allowed: tuple[str, ...]) -> list[str]:
    out: list[str] = []
    for item in as_list(values):
        val = pick_first_string(item).upper()
        if val in allowed and val not in out:
            out.append(val)
    return out


def _model_type(value: Any) -> str:
    upper = pick_first_string(value).upper()
    return upper if upper in ("IMAGE", "EMBEDDING") else "CHAT"


def _build_providers(core: list[Any], aliases: ModelAliases, warnings: list[str]) -> list[dict[str, Any]]:
    out = []
    for index, item in enumerate(core):
        pm = as_dict(item)
        if not pm:
            continue
        raw = as_dict(pm.get("raw"))
        mapped = pick_first_string(pm.get("mappedType"))
        p_type = canonical_to_rikka_type(mapped)
        display = pick_first_string(raw.get("name"), pm.get("name"), mapped.upper(), "Imported Provider")
        if not p_type:
            # Unmapped families are kept, disabled, under the generic compatible type.
            warnings.append(f"unsupported provider kept disabled: {display}")
            p_type = "openai"

        seed = pick_first_string(raw.get("id"), pm.get("id"), raw.get("name"), pm.get("name"), mapped) or str(index)
        provider_id = ensure_uuid(pick_first_string(raw.get("id"), pm.get("id")), f"provider:{seed}")
        provider: dict[str, Any] = {"id": provider_id, "name": display, "type": p_type}
        set_if_present(provider, "apiKey", pick_first_string(raw.get("apiKey")))
        set_if_present(
            provider,
            "baseUrl",
            pick_first_string(raw.get("baseUrl"), raw.get("apiHost"), _DEFAULT_BASE_URLS[p_type]),
        )
        if p_type == "openai":
            provider["chatCompletionsPath"] = pick_first_string(raw.get("chatCompletionsPath"), "/chat/completions")
            if coerce_bool(raw.get("useResponseApi")) is not None:
                provider["useResponseApi"] = coerce_bool(raw.get("useResponseApi"))
        elif p_type == "google":
            if coerce_bool(raw.get("vertexAI")) is not None:
                provider["vertexAI"] = coerce_bool(raw.get("vertexAI"))
            for key in ("privateKey", "serviceAccountEmail", "location", "projectId"):
                set_if_present(provider, key, pick_first_string(raw.get(key)))

        models = []
        for m_index, m_item in enumerate(as_list(raw.get("models"))):
            mm = as_dict(m_item)
            if not mm:
                continue
            ref = pick_first_string(mm.get("modelId"), mm.get("id"), mm.get("name"), mm.get("displayName")) or str(m_index)
            model_id = ensure_uuid(pick_first_string(mm.get("id")), f"model:{provider_id}:{ref}")
            declared_type = pick_first_string(mm.get("type"))
            model_type = _model_type(declared_type)
            if declared_type and model_type != declared_type.upper():
                warnings.append(f"normalized unsupported model type to CHAT: {declared_type}")
            model: dict[str, Any] = {
                "id": model_id,
                "modelId": pick_first_string(mm.get("modelId"), ref),
                "displayName": pick_first_string(mm.get("displayName"), mm.get("name"), ref),
                "type": model_type,
            }
            for key, allowed in (
                ("inputModalities", ("TEXT", "IMAGE")),
                ("outputModalities", ("TEXT", "IMAGE")),
                ("abilities", ("TOOL", "REASONING")),
            ):
                vals = _upper_set(mm.get(key), allowed)
                if vals:
                    model[key] = vals
            tools = []
            for tool in as_list(mm.get("tools")):
                low = pick_first_string(tool).lower()
                if low in ("search", "url_context") and low not in tools:
                    tools.append(low)
            if tools:
                model["tools"] = tools

            for key in (ref, model_id, model["displayName"], pick_first_string(mm.get("name"))):
                aliases.register(key, model_id)
            models.append(model)

        provider["models"] = models
        provider["enabled"] = bool(canonical_to_rikka_type(mapped)) and bool(models)
        if provider["enabled"]:
            aliases.enabled_ids.extend(m["id"] for m in models)
        out.append(provider)
    return out


def _sanitize_uuid_list(assistant: dict[str, Any], key: str, warnings: list[str]) -> None:
    if key not in assistant:
        return
    items = as_list(assistant[key])
    if not items:
        del assistant[key]
        return
    kept = []
    for item in items:
        candidate = pick_first_string(item) or pick_first_string(as_dict(item).get("id"), as_dict(item).get("uuid"))
        if is_valid_uuid(candidate):
            kept.append(candidate)
    if kept:
        assistant[key] = kept
    else:
        del assistant[key]
        warnings.append(f"dropped non-uuid assistant field: {key}")


def _assistant_from_raw(raw: dict[str, Any], used: set[str], aliases: ModelAliases, warnings: list[str]) -> dict[str, Any]:
    assistant: dict[str, Any] = {
        "id": pick_first_string(raw.get("id")),
        "name": pick_first_string(raw.get("name")),
        "systemPrompt": raw.get("systemPrompt") if isinstance(raw.get("systemPrompt"), str) else "",
        "chatModelId": pick_first_string(raw.get("chatModelId")),
    }
    for key, coerce in (
        ("temperature", coerce_float),
        ("topP", coerce_float),
        ("contextMessageSize", coerce_int),
        ("streamOutput", coerce_bool),
        ("maxTokens", coerce_int),
        ("enableMemory", coerce_bool),
        ("useGlobalMemory", coerce_bool),
        ("enableRecentChatsReference", coerce_bool),
    ):
        value = coerce(raw.get(key))
        if value is not None:
            assistant[key] = value
    set_if_present(assistant, "messageTemplate", pick_first_string(raw.get("messageTemplate")))
    for key in UUID_LIST_FIELDS:
        if key in raw:
            assistant[key] = clone(raw[key])

    seed = assistant["id"] or assistant["name"] or "unnamed"
    assistant["id"] = ensure_uuid(assistant["id"], f"assistant:{seed}")
    assign_unique_name(assistant, used, warnings)
    for key in UUID_LIST_FIELDS:
        _sanitize_uuid_list(assistant, key, warnings)

    chat_model = assistant.pop("chatModelId")
    if chat_model:
        resolved = aliases.resolve(chat_model)
        if resolved:
            assistant["chatModelId"] = resolved
        else:
            warnings.append(f"assistant chat model not found, dropped: {chat_model}")
    assistant.setdefault("streamOutput", True)
    assistant.setdefault("contextMessageSize", 64)
    return assistant


def _build_assistants(
    ir: BackupIR, core: list[Any], aliases: ModelAliases, warnings: list[str]
) -> list[dict[str, Any]]:
    used: set[str] = set()
    out = []
    for item in core:
        am = as_dict(item)
        if not am:
            continue
        raw = clone(as_dict(am.get("raw")))
        for key in ("id", "name", "chatModelId"):
            raw[key] = pick_first_string(raw.get(key), am.get(key))
        if not pick_first_string(raw.get("systemPrompt")):
            raw["systemPrompt"] = am.get("systemPrompt")
        for key, canonical in (
            ("temperature", "temperature"),
            ("topP", "topP"),
            ("contextMessageSize", "context"),
            ("streamOutput", "stream"),
            ("maxTokens", "maxTokens"),
        ):
            raw.setdefault(key, am.get(canonical))
        out.append(_assistant_from_raw(raw, used, aliases, warnings))

    if out or not ir.assistants:
        return out

    for a in ir.assistants:
        raw = {
            "id": a.id,
            "name": a.name or "Imported Assistant",
            "systemPrompt": a.prompt,
            "chatModelId": pick_first_string(a.model.get("chatModelId"), a.model.get("id")),
        }
        for key, setting in (
            ("temperature", "temperature"),
            ("topP", "topP"),
            ("contextMessageSize", "contextCount"),
            ("streamOutput", "streamOutput"),
            ("maxTokens", "maxTokens"),
        ):
            if setting in a.settings:
                raw[key] = a.settings[setting]
        out.append(_assistant_from_raw(raw, used, aliases, warnings))
    return out


def enforce_rikka_consistency(settings: dict[str, Any]) -> list[str]:
    """Rebind dangling model and assistant references before the document is written.

    Only models of enabled providers are valid targets.
    """
    warnings: list[str] = []
    enabled_ids: list[str] = []
    for provider in map(as_dict, as_list(settings.get("providers"))):
        provider["id"] = ensure_uuid(
            pick_first_string(provider.get("id")),
            f"provider:consistency:{pick_first_string(provider.get('id'), provider.get('name'))}",
        )
        for model in map(as_dict, as_list(provider.get("models"))):
            ref = pick_first_string(model.get("modelId"), model.get("id"), model.get("name"), model.get("displayName"))
            model["id"] = ensure_uuid(pick_first_string(model.get("id")), f"model:consistency:{provider['id']}:{ref}")
            if not pick_first_string(model.get("modelId")):
                model["modelId"] = ref
            if not pick_first_string(model.get("displayName")):
                model["displayName"] = pick_first_string(model.get("name"), model.get("modelId"))
            model["type"] = _model_type(model.get("type"))
        models = as_list(provider.get("models"))
        enabled = bool(canonical_to_rikka_type(pick_first_string(provider.get("type")))) and bool(models)
        provider["enabled"] = enabled and provider.get("enabled", True) is not False
        if provider["enabled"]:
            enabled_ids.extend(as_dict(m)["id"] for m in models)
    valid = set(enabled_ids)
    first_model = enabled_ids[0] if enabled_ids else ""

    assistant_ids: list[str] = []
    used_names: set[str] = set()
    for assistant in map(as_dict, as_list(settings.get("assistants"))):
        seed = pick_first_string(assistant.get("id"), assistant.get("name"))
        assistant["id"] = ensure_uuid(pick_first_string(assistant.get("id")), f"assistant:consistency:{seed}")
        assign_unique_name(assistant, used_names, warnings)
        for key in UUID_LIST_FIELDS:
            _sanitize_uuid_list(assistant, key, warnings)
        chat_model = pick_first_string(assistant.get("chatModelId"))
        if chat_model not in valid:
            if first_model:
                if chat_model:
                    warnings.append(f"assistant model rebound to first enabled model: {assistant['name']}")
                assistant["chatModelId"] = first_model
            else:
                assistant.pop("chatModelId", None)
        assistant_ids.append(assistant["id"])

    if assistant_ids:
        current = pick_first_string(settings.get("assistantId"))
        selected = ensure_uuid(current, f"assistant:selected:{current}")
        if selected in assistant_ids:
            settings["assistantId"] = selected
        else:
            settings["assistantId"] = assistant_ids[0]
            warnings.append("selected assistant not found, fallback to first assistant")
    else:
        settings["assistantId"] = DEFAULT_ASSISTANT_ID

    for key in RIKKA_MODEL_KEYS:
        current = pick_first_string(settings.get(key))
        if current in valid:
            continue
        if current:
            warnings.append(f"selected model {key} not found in providers")
        if first_model:
            settings[key] = first_model
        else:
            settings.pop(key, None)
    return sorted(set(warnings))
