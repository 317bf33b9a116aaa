"""Isolation of settings that have no counterpart in the other schema.

Extracted fragments ride in ``opaque`` so a later conversion back into the
native schema can restore them.
"""

from typing import Any

from cherrikka.utils.json import as_dict, as_list, clone, is_meaningful, pick_first_string

RIKKA_TOP_LEVEL_KEYS = ("modeInjections", "lorebooks", "memoryEntities", "memories")
RIKKA_ASSISTANT_KEYS = (
    "modeInjectionIds",
    "lorebookIds",
    "enableMemory",
    "useGlobalMemory",
    "regexes",
    "localTools",
)


def extract_rikka_unsupported(settings: dict[str, Any]) -> dict[str, Any]:
    """Memory, lorebook and injection settings, plus the per-assistant bits."""
    out: dict[str, Any] = {}
    for key in RIKKA_TOP_LEVEL_KEYS:
        if is_meaningful(settings.get(key)):
            out[key] = clone(settings[key])

    assistants_out = []
    for item in as_list(settings.get("assistants")):
        assistant = as_dict(item)
        if not assistant:
            continue
        entry: dict[str, Any] = {}
        for key in RIKKA_ASSISTANT_KEYS:
            if is_meaningful(assistant.get(key)):
                entry[key] = clone(assistant[key])
        if not entry:
            continue
        if pick_first_string(assistant.get("id")):
            entry["id"] = pick_first_string(assistant.get("id"))
        if pick_first_string(assistant.get("name")):
            entry["name"] = pick_first_string(assistant.get("name"))
        assistants_out.append(entry)
    if assistants_out:
        out["assistants"] = assistants_out
    return out


def _memory_keys(src: dict[str, Any]) -> dict[str, Any]:
    return {
        key: clone(value)
        for key, value in src.items()
        if "memory" in key.strip().lower() and is_meaningful(value)
    }


def extract_cherry_unsupported(config: dict[str, Any]) -> dict[str, Any]:
    """Any memory-related key in the settings blob or the persisted slices."""
    out: dict[str, Any] = {}
    settings_mem = _memory_keys(as_dict(config.get("cherry.settings")))
    if settings_mem:
        out["settings"] = settings_mem
    persist_mem = _memory_keys(as_dict(config.get("cherry.persistSlices")))
    if persist_mem:
        out["persistSlices"] = persist_mem
    return out


def restore_rikka_unsupported(settings: dict[str, Any], isolated: dict[str, Any]) -> None:
    """Fill missing keys back into a Format B settings document."""
    for key in RIKKA_TOP_LEVEL_KEYS:
        if key in isolated and not is_meaningful(settings.get(key)):
            settings[key] = clone(isolated[key])

    by_id: dict[str, dict[str, Any]] = {}
    by_name: dict[str, dict[str, Any]] = {}
    for item in as_list(settings.get("assistants")):
        assistant = as_dict(item)
        if pick_first_string(assistant.get("id")):
            by_id[pick_first_string(assistant.get("id"))] = assistant
        if pick_first_string(assistant.get("name")):
            by_name.setdefault(pick_first_string(assistant.get("name")), assistant)

    for item in as_list(isolated.get("assistants")):
        entry = as_dict(item)
        target = by_id.get(pick_first_string(entry.get("id"))) or by_name.get(
            pick_first_string(entry.get("name"))
        )
        if target is None:
            continue
        for key in RIKKA_ASSISTANT_KEYS:
            if key in entry and not is_meaningful(target.get(key)):
                target[key] = clone(entry[key])


def restore_cherry_unsupported(
    settings: dict[str, Any], persist: dict[str, Any], isolated: dict[str, Any]
) -> None:
    """Fill missing memory keys back into the settings slice and the outer persist map."""
    for key, value in as_dict(isolated.get("settings")).items():
        if not is_meaningful(settings.get(key)):
            settings[key] = clone(value)
    for key, value in as_dict(isolated.get("persistSlices")).items():
        if not is_meaningful(persist.get(key)):
            persist[key] = clone(value)
