"""Tests for the Format B parser and its structural validator."""

import pytest

from cherrikka.backup.archive import read_archive
from cherrikka.backup.detection import MalformedArchiveError
from cherrikka.parsers.rikka import MANAGED_FILES_MISSING, parse_rikka, validate_rikka
from tests.fixtures import (
    RIKKA_ASSISTANT_ID,
    RIKKA_CONVERSATION_ID,
    make_rikka_archive,
    make_rikka_db,
    rikka_message,
    rikka_settings,
)


async def _entries(**kwargs):
    return read_archive(await make_rikka_archive(**kwargs))


class TestParseRikka:
    async def test_conversation_nodes_become_messages(self):
        ir = await parse_rikka(await _entries())
        assert ir.source_format == "rikka"
        assert ir.source_app == "rikkahub"
        conv = ir.conversations[0]
        assert conv.id == RIKKA_CONVERSATION_ID
        assert conv.title == "Greeting"
        assert conv.assistant_id == RIKKA_ASSISTANT_ID
        assert [(m.role, m.parts[0].content) for m in conv.messages] == [
            ("user", "hi there"),
            ("assistant", "hello!"),
        ]
        assert conv.created_at == "2024-05-01T10:00:00Z"

    async def test_assistants_from_settings(self):
        ir = await parse_rikka(await _entries())
        assert [(a.id, a.name, a.prompt) for a in ir.assistants] == [
            (RIKKA_ASSISTANT_ID, "Rikka", "Be brief.")
        ]

    async def test_selected_branch_read_and_others_kept_opaque(self):
        branches = [rikka_message("first try"), rikka_message("second try")]
        db = await make_rikka_db([{"id": RIKKA_CONVERSATION_ID, "title": "x", "nodes": [branches]}])
        ir = await parse_rikka(await _entries(db_bytes=db))
        conv = ir.conversations[0]
        assert conv.messages[0].parts[0].content == "first try"
        branch_keys = [k for k in conv.opaque if k.endswith(":branches")]
        assert len(branch_keys) == 1
        assert conv.opaque[branch_keys[0]] == branches

    async def test_upload_url_resolves_managed_file(self):
        image = {
            "role": "user",
            "parts": [{
                "type": "me.rerere.ai.ui.UIMessagePart.Image",
                "url": "file:///data/user/0/me.rerere.rikkahub/files/upload/cat.png",
            }],
        }
        db = await make_rikka_db(
            [{"id": RIKKA_CONVERSATION_ID, "title": "pic", "nodes": [[image]]}],
            managed_files=[{"relative_path": "upload/cat.png", "mime_type": "image/png", "size_bytes": 3}],
        )
        ir = await parse_rikka(await _entries(db_bytes=db, uploads={"cat.png": b"PNG"}))
        part = ir.conversations[0].messages[0].parts[0]
        assert part.type == "image"
        assert part.file_id == "managed:1"
        assert part.name == "cat.png"
        f = ir.file_by_id()["managed:1"]
        assert f.data == b"PNG"
        assert f.mime_type == "image/png"
        assert not f.orphan

    async def test_missing_managed_table_warns_once(self):
        """Every upload becomes an orphan, but only the table warning is emitted."""
        db = await make_rikka_db(with_managed_table=False)
        ir = await parse_rikka(await _entries(db_bytes=db, uploads={"a.png": b"1", "b.txt": b"2"}))
        assert ir.warnings.count(MANAGED_FILES_MISSING) == 1
        assert not [w for w in ir.warnings if w.startswith("orphan upload file discovered")]
        assert len(ir.files) == 2
        assert all(f.orphan for f in ir.files)

    async def test_unindexed_upload_warns_when_table_exists(self):
        ir = await parse_rikka(await _entries(uploads={"stray.bin": b"?"}))
        assert "orphan upload file discovered: upload/stray.bin" in ir.warnings

    async def test_missing_managed_payload(self):
        db = await make_rikka_db(managed_files=[{"relative_path": "upload/gone.pdf"}])
        ir = await parse_rikka(await _entries(db_bytes=db))
        assert "missing managed file payload: upload/gone.pdf" in ir.warnings
        assert ir.files[0].missing

    async def test_tool_part_parsed(self):
        tool = {
            "role": "assistant",
            "parts": [{
                "type": "me.rerere.ai.ui.UIMessagePart.ToolResult",
                "toolCallId": "c1",
                "toolName": "search",
                "input": '{"q":"x"}',
                "output": [{"text": "found"}],
            }],
        }
        db = await make_rikka_db([{"id": RIKKA_CONVERSATION_ID, "title": "t", "nodes": [[tool]]}])
        ir = await parse_rikka(await _entries(db_bytes=db))
        part = ir.conversations[0].messages[0].parts[0]
        assert part.type == "tool"
        assert part.name == "search"
        assert part.output[0].content == "found"

    async def test_untagged_media_typed_by_extension(self):
        msg = {
            "role": "user",
            "parts": [
                {"type": "me.rerere.ai.ui.UIMessagePart.Media", "url": "https://example.com/clip.mp4"},
                {"type": "me.rerere.ai.ui.UIMessagePart.Media", "url": "https://example.com/notes.txt"},
            ],
        }
        db = await make_rikka_db([{"id": RIKKA_CONVERSATION_ID, "title": "t", "nodes": [[msg]]}])
        ir = await parse_rikka(await _entries(db_bytes=db))
        assert [p.type for p in ir.conversations[0].messages[0].parts] == ["video", "document"]

    async def test_missing_database(self):
        with pytest.raises(MalformedArchiveError, match="missing rikka_hub.db"):
            await parse_rikka({"settings.json": b"{}"})

    async def test_corrupt_database(self):
        entries = {"settings.json": b"{}", "rikka_hub.db": b"not sqlite at all" * 100}
        with pytest.raises(MalformedArchiveError, match="open rikka_hub.db"):
            await parse_rikka(entries)


class TestValidateRikka:
    async def test_clean_archive_has_no_issues(self):
        assert await validate_rikka(await _entries()) == []

    async def test_missing_markers(self):
        assert await validate_rikka({}) == ["missing settings.json", "missing rikka_hub.db"]

    async def test_unknown_conversation_assistant(self):
        settings = rikka_settings(assistants=[{"id": "55555555-5555-4555-8555-555555555555", "name": "Other"}])
        issues = await validate_rikka(await _entries(settings=settings))
        assert f"conversation assistant_id missing in settings.assistants: {RIKKA_ASSISTANT_ID}" in issues

    async def test_managed_payload_missing(self):
        db = await make_rikka_db(managed_files=[{"relative_path": "upload/gone.pdf"}])
        issues = await validate_rikka(await _entries(db_bytes=db))
        assert issues == ["managed_files payload missing: upload/gone.pdf"]
