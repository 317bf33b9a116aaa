"""Tests for settings normalization, per-target settings mapping and
isolation of settings that have no counterpart on the other side."""

from cherrikka.backup.archive import read_archive
from cherrikka.ir import BackupIR
from cherrikka.mapping.normalize import (
    CANONICAL_KEYS,
    assign_unique_name,
    canonical_to_cherry_type,
    cherry_provider_to_canonical,
    default_normalized_settings,
)
from cherrikka.mapping.to_cherry import build_cherry_persist_slices
from cherrikka.mapping.to_rikka import build_rikka_settings
from cherrikka.parsers.cherry import parse_cherry
from cherrikka.parsers.rikka import parse_rikka
from tests.fixtures import (
    RIKKA_ASSISTANT_ID,
    RIKKA_MODEL_ID,
    RIKKA_PROVIDER_ID,
    cherry_assistant,
    cherry_persist,
    cherry_provider,
    make_cherry_archive,
    make_cherry_data,
    make_rikka_archive,
    rikka_settings,
)


def _cherry_ir(**persist_kwargs):
    data = make_cherry_data(persist=cherry_persist(**persist_kwargs))
    return parse_cherry(read_archive(make_cherry_archive(data)))


async def _rikka_ir(settings=None):
    return await parse_rikka(read_archive(await make_rikka_archive(settings=settings)))


def _enabled_model_ids(settings):
    return {
        m["id"]
        for p in settings["providers"]
        if p["enabled"]
        for m in p["models"]
    }


class TestNormalize:
    def test_all_canonical_keys_present(self):
        ir = _cherry_ir()
        assert set(CANONICAL_KEYS) <= set(ir.settings)
        assert ir.settings["normalizer.source"] == "cherry"

    def test_cherry_provider_families(self):
        assert cherry_provider_to_canonical("azure-openai") == "openai"
        assert cherry_provider_to_canonical("Anthropic") == "claude"
        assert cherry_provider_to_canonical("vertexai") == "google"
        assert cherry_provider_to_canonical("mistral") == ""

    def test_original_cherry_type_preserved_in_family(self):
        assert canonical_to_cherry_type("openai", "ollama") == "ollama"
        assert canonical_to_cherry_type("claude", "ollama") == "anthropic"

    def test_unmapped_provider_type_warns(self):
        ir = _cherry_ir(providers=[cherry_provider("m", "mistral")])
        assert "unsupported cherry provider type: mistral" in ir.warnings


class TestBuildRikkaSettings:
    def test_cherry_provider_and_assistant_mapped(self):
        settings, _ = build_rikka_settings(_cherry_ir(), None)
        provider = settings["providers"][0]
        assert provider["type"] == "openai"
        assert provider["enabled"] is True
        assert provider["apiKey"] == "sk-test-123"
        assert provider["models"][0]["modelId"] == "gpt-4o"
        assistant = settings["assistants"][0]
        assert assistant["name"] == "Helper"
        assert assistant["systemPrompt"] == "You are helpful."
        assert assistant["chatModelId"] == provider["models"][0]["id"]
        assert assistant["contextMessageSize"] == 10

    def test_duplicate_assistant_names_renamed(self):
        ir = _cherry_ir(assistants=[cherry_assistant("a1", "Default"), cherry_assistant("a2", "default")])
        settings, warnings = build_rikka_settings(ir, None)
        assert [a["name"] for a in settings["assistants"]] == ["Default", "default (2)"]
        assert "assistant name conflict renamed: default -> default (2)" in warnings

    def test_every_assistant_points_at_enabled_model(self):
        ir = _cherry_ir(
            providers=[
                cherry_provider("m", "mistral", models=[{"id": "mistral-large", "provider": "m"}]),
                cherry_provider(),
            ],
            assistants=[cherry_assistant(model={"id": "mistral-large", "provider": "m"})],
        )
        settings, warnings = build_rikka_settings(ir, None)
        disabled = settings["providers"][0]
        assert disabled["enabled"] is False
        assert "unsupported provider kept disabled: M" in warnings
        valid = _enabled_model_ids(settings)
        assert all(a["chatModelId"] in valid for a in settings["assistants"])
        assert settings["chatModelId"] in valid

    def test_selected_assistant_exists(self):
        settings, _ = build_rikka_settings(_cherry_ir(), None)
        assert settings["assistantId"] in {a["id"] for a in settings["assistants"]}

    async def test_rikka_settings_survive_round_trip(self):
        ir = await _rikka_ir()
        settings, _ = build_rikka_settings(ir, None)
        assert settings["providers"][0]["id"] == RIKKA_PROVIDER_ID
        assert settings["chatModelId"] == RIKKA_MODEL_ID

    async def test_unsupported_rikka_settings_isolated_and_restored(self):
        ir = await _rikka_ir(rikka_settings(lorebooks=[{"id": "lb", "name": "World"}]))
        assert "unsupported-isolated:rikka.settings" in ir.warnings
        assert ir.opaque["interop.rikka.unsupported"]["lorebooks"] == [{"id": "lb", "name": "World"}]
        ir.config.clear()
        settings, _ = build_rikka_settings(ir, None)
        assert settings["lorebooks"] == [{"id": "lb", "name": "World"}]


TAG_ID = "22222222-2222-4222-8222-222222222222"


def _rikka_assistant(**fields):
    assistant = dict(rikka_settings()["assistants"][0])
    assistant.update(fields)
    return assistant


class TestAssistantUuidLists:
    async def test_invalid_entries_filtered_out(self):
        ir = await _rikka_ir(rikka_settings(assistants=[_rikka_assistant(tags=[TAG_ID, "not-a-uuid", {"id": "bad"}])]))
        settings, _ = build_rikka_settings(ir, None)
        assert settings["assistants"][0]["tags"] == [TAG_ID]

    async def test_field_dropped_when_nothing_valid_remains(self):
        ir = await _rikka_ir(rikka_settings(assistants=[_rikka_assistant(mcpServers=["x", {"id": "bad"}])]))
        settings, warnings = build_rikka_settings(ir, None)
        assert "mcpServers" not in settings["assistants"][0]
        assert "dropped non-uuid assistant field: mcpServers" in warnings

    async def test_restored_fields_are_filtered_too(self):
        ir = await _rikka_ir()
        ir.config.clear()
        ir.opaque["interop.rikka.unsupported"] = {
            "assistants": [{"id": RIKKA_ASSISTANT_ID, "lorebookIds": ["lore", TAG_ID]}]
        }
        settings, _ = build_rikka_settings(ir, None)
        assert settings["assistants"][0]["lorebookIds"] == [TAG_ID]

    def test_template_assistants_get_unique_names(self):
        ir = BackupIR(source_app="cherry-studio", source_format="cherry")
        ir.settings = default_normalized_settings()
        template = {
            "assistants": [
                {"id": RIKKA_ASSISTANT_ID, "name": "Helper"},
                {"id": TAG_ID, "name": "helper"},
            ]
        }
        settings, warnings = build_rikka_settings(ir, template)
        assert [a["name"] for a in settings["assistants"]] == ["Helper", "helper (2)"]
        assert "assistant name conflict renamed: helper -> helper (2)" in warnings


class TestAssignUniqueName:
    def test_counter_skips_taken_suffixes(self):
        used = {"bot", "bot (2)"}
        assistant = {"name": "Bot"}
        warnings = []
        assign_unique_name(assistant, used, warnings)
        assert assistant["name"] == "Bot (3)"
        assert warnings == ["assistant name conflict renamed: Bot -> Bot (3)"]

    def test_blank_name_gets_placeholder(self):
        assistant = {"name": " "}
        assign_unique_name(assistant, set(), [])
        assert assistant["name"] == "Imported Assistant"


class TestBuildCherryPersistSlices:
    async def test_rikka_providers_mapped_back(self):
        ir = await _rikka_ir()
        persist, _ = build_cherry_persist_slices(ir, None, None)
        provider = persist["llm"]["providers"][0]
        assert provider["type"] == "openai"
        assert provider["apiHost"] == "https://api.openai.com/v1"
        assert provider["models"][0]["provider"] == RIKKA_PROVIDER_ID
        assert provider["models"][0]["name"] == "GPT-4o"
        assert persist["settings"]["userId"]

    def test_memory_settings_isolated_and_restored(self):
        ir = _cherry_ir(settings={"userName": "t", "memoryConfig": {"enabled": True}})
        assert ir.opaque["interop.cherry.unsupported"]["settings"] == {"memoryConfig": {"enabled": True}}
        ir.config.clear()
        persist, _ = build_cherry_persist_slices(ir, None, None)
        assert persist["settings"]["memoryConfig"] == {"enabled": True}

    def test_assistant_model_rebound_to_enabled_provider(self):
        ir = _cherry_ir()
        slice_ = {"assistants": [{"id": "x", "name": "X", "model": {"id": "nope"}}]}
        persist, warnings = build_cherry_persist_slices(ir, None, slice_)
        assert persist["assistants"]["assistants"][0]["model"]["id"] == "gpt-4o"
        assert "assistant model rebound to first enabled model: X" in warnings

    async def test_dangling_selected_assistant_rebound_to_first(self):
        ir = await _rikka_ir(rikka_settings(assistantId="00000000-0000-4000-8000-000000000999"))
        slice_ = {"assistants": [{"id": RIKKA_ASSISTANT_ID, "name": "Rikka"}]}
        persist, warnings = build_cherry_persist_slices(ir, None, slice_)
        assert persist["settings"]["assistantId"] == RIKKA_ASSISTANT_ID
        assert "selected assistant not found, fallback to first assistant" in warnings

    async def test_selected_assistant_kept_when_emitted(self):
        ir = await _rikka_ir()
        slice_ = {"assistants": [{"id": RIKKA_ASSISTANT_ID, "name": "Rikka"}]}
        persist, warnings = build_cherry_persist_slices(ir, None, slice_)
        assert persist["settings"]["assistantId"] == RIKKA_ASSISTANT_ID
        assert "selected assistant not found, fallback to first assistant" not in warnings
