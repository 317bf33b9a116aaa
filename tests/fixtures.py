"""Shared test helpers: build small Cherry Studio and RikkaHub archives in memory."""

import json
from typing import Any

from cherrikka.backup.archive import write_archive
from cherrikka.db.connection import Database
from cherrikka.db.schema import DEFAULT_IDENTITY_HASH, RIKKA_SCHEMA_SQL, ROOM_MASTER_ID

RIKKA_ASSISTANT_ID = "11111111-1111-4111-8111-111111111111"
RIKKA_PROVIDER_ID = "22222222-2222-4222-8222-222222222222"
RIKKA_MODEL_ID = "33333333-3333-4333-8333-333333333333"
RIKKA_CONVERSATION_ID = "44444444-4444-4444-8444-444444444444"


# ---------------------------------------------------------------------------
# Cherry Studio (Format A)
# ---------------------------------------------------------------------------


def cherry_provider(
    provider_id: str = "openai",
    provider_type: str = "openai",
    models: list[dict] | None = None,
    **overrides: Any,
) -> dict:
    """One llm.providers entry. Models default to a single gpt-4o."""
    if models is None:
        models = [{"id": "gpt-4o", "provider": provider_id, "name": "GPT-4o", "group": "gpt"}]
    provider = {
        "id": provider_id,
        "type": provider_type,
        "name": provider_id.title(),
        "apiKey": "sk-test-123",
        "apiHost": "https://api.openai.com",
        "models": models,
        "enabled": True,
    }
    provider.update(overrides)
    return provider


def cherry_assistant(assistant_id: str = "a1", name: str = "Helper", **overrides: Any) -> dict:
    assistant = {
        "id": assistant_id,
        "name": name,
        "prompt": "You are helpful.",
        "model": {"id": "gpt-4o", "provider": "openai", "name": "GPT-4o", "group": "gpt"},
        "settings": {"contextCount": 10, "temperature": 0.5, "streamOutput": True},
        "topics": [],
    }
    assistant.update(overrides)
    return assistant


def cherry_persist(
    assistants: list[dict] | None = None,
    providers: list[dict] | None = None,
    settings: dict | None = None,
    **extra_slices: Any,
) -> str:
    """The persist:cherry-studio value: JSON text whose slices are JSON text."""
    assistants = assistants if assistants is not None else [cherry_assistant()]
    providers = providers if providers is not None else [cherry_provider()]
    slices = {
        "assistants": {"defaultAssistant": assistants[0] if assistants else {}, "assistants": assistants},
        "llm": {
            "providers": providers,
            "defaultModel": {"id": "gpt-4o", "provider": "openai", "name": "GPT-4o", "group": "gpt"},
        },
        "settings": settings if settings is not None else {"userName": "tester", "language": "en-US"},
    }
    slices.update(extra_slices)
    return json.dumps({key: json.dumps(value) for key, value in slices.items()})


def cherry_text_topic(
    topic_id: str = "t1",
    text: str = "hello",
    assistant_id: str = "a1",
    created_at: str = "2024-05-01T10:00:00Z",
) -> tuple[dict, list[dict]]:
    """A topic holding one user message with one main_text block."""
    block = {
        "id": f"{topic_id}-b1",
        "messageId": f"{topic_id}-m1",
        "type": "main_text",
        "content": text,
        "createdAt": created_at,
        "status": "success",
    }
    topic = {
        "id": topic_id,
        "assistantId": assistant_id,
        "messages": [
            {
                "id": f"{topic_id}-m1",
                "role": "user",
                "assistantId": assistant_id,
                "topicId": topic_id,
                "createdAt": created_at,
                "blocks": [block["id"]],
            }
        ],
    }
    return topic, [block]


def make_cherry_data(
    topics: list[dict] | None = None,
    blocks: list[dict] | None = None,
    files: list[dict] | None = None,
    persist: str | None = None,
    **indexed_extra: Any,
) -> dict:
    if topics is None and blocks is None:
        topic, blocks = cherry_text_topic()
        topics = [topic]
    indexed = {"topics": topics or [], "message_blocks": blocks or [], "files": files or []}
    indexed.update(indexed_extra)
    return {
        "time": 1714557600000,
        "version": 5,
        "localStorage": {"persist:cherry-studio": persist if persist is not None else cherry_persist()},
        "indexedDB": indexed,
    }


def make_cherry_archive(data: dict | None = None, payloads: dict[str, bytes] | None = None) -> bytes:
    """Zip a data.json plus Data/Files payloads (keyed by file name)."""
    entries = {"data.json": json.dumps(data if data is not None else make_cherry_data()).encode()}
    for name, content in (payloads or {}).items():
        entries[f"Data/Files/{name}"] = content
    if not payloads:
        entries["Data/Files/.keep"] = b""
    return write_archive(entries)


# ---------------------------------------------------------------------------
# RikkaHub (Format B)
# ---------------------------------------------------------------------------


def rikka_settings(**overrides: Any) -> dict:
    settings = {
        "assistantId": RIKKA_ASSISTANT_ID,
        "chatModelId": RIKKA_MODEL_ID,
        "providers": [
            {
                "id": RIKKA_PROVIDER_ID,
                "type": "openai",
                "name": "OpenAI",
                "enabled": True,
                "apiKey": "sk-rikka-456",
                "baseUrl": "https://api.openai.com/v1",
                "models": [
                    {"id": RIKKA_MODEL_ID, "modelId": "gpt-4o", "displayName": "GPT-4o", "type": "CHAT"}
                ],
            }
        ],
        "assistants": [
            {
                "id": RIKKA_ASSISTANT_ID,
                "name": "Rikka",
                "systemPrompt": "Be brief.",
                "chatModelId": RIKKA_MODEL_ID,
                "streamOutput": True,
                "contextMessageSize": 64,
            }
        ],
    }
    settings.update(overrides)
    return settings


def rikka_message(text: str, role: str = "user", message_id: str = "") -> dict:
    msg = {"role": role, "parts": [{"type": "me.rerere.ai.ui.UIMessagePart.Text", "text": text}]}
    if message_id:
        msg["id"] = message_id
    return msg


async def make_rikka_db(
    conversations: list[dict] | None = None,
    managed_files: list[dict] | None = None,
    with_managed_table: bool = True,
) -> bytes:
    """Build a rikka_hub.db image.

    Each conversation dict holds ConversationEntity columns plus ``nodes``, a
    list of message snapshot lists (one list per node).
    """
    if conversations is None:
        conversations = [
            {
                "id": RIKKA_CONVERSATION_ID,
                "title": "Greeting",
                "nodes": [[rikka_message("hi there")], [rikka_message("hello!", role="assistant")]],
            }
        ]
    db = await Database.connect(":memory:", RIKKA_SCHEMA_SQL)
    try:
        await db.execute(
            "INSERT INTO room_master_table (id, identity_hash) VALUES (?, ?)",
            (ROOM_MASTER_ID, DEFAULT_IDENTITY_HASH),
        )
        if not with_managed_table:
            await db.execute("DROP TABLE managed_files")
        for conv in conversations:
            await db.execute(
                "INSERT INTO ConversationEntity (id, assistant_id, title, nodes, create_at, update_at) "
                "VALUES (?, ?, ?, '[]', ?, ?)",
                (
                    conv["id"],
                    conv.get("assistant_id", RIKKA_ASSISTANT_ID),
                    conv.get("title", ""),
                    conv.get("create_at", 1714557600000),
                    conv.get("update_at", 1714557700000),
                ),
            )
            for index, snapshots in enumerate(conv.get("nodes", [])):
                await db.execute(
                    "INSERT INTO message_node (id, conversation_id, node_index, messages, select_index) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (f"{conv['id']}-node-{index}", conv["id"], index, json.dumps(snapshots), 0),
                )
        for row in managed_files or []:
            await db.execute(
                "INSERT INTO managed_files (folder, relative_path, display_name, mime_type, "
                "size_bytes, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    "upload",
                    row["relative_path"],
                    row.get("display_name", row["relative_path"].rsplit("/", 1)[-1]),
                    row.get("mime_type", "application/octet-stream"),
                    row.get("size_bytes", 0),
                    1714557600000,
                    1714557600000,
                ),
            )
        return await db.export_bytes()
    finally:
        await db.close()


async def make_rikka_archive(
    settings: dict | None = None,
    db_bytes: bytes | None = None,
    uploads: dict[str, bytes] | None = None,
) -> bytes:
    entries = {
        "settings.json": json.dumps(settings if settings is not None else rikka_settings()).encode(),
        "rikka_hub.db": db_bytes if db_bytes is not None else await make_rikka_db(),
    }
    for name, content in (uploads or {}).items():
        entries[f"upload/{name}"] = content
    return write_archive(entries)
