"""Tests for primary-source selection and multi-source merge."""

import pytest

from cherrikka.backup.detection import BackupFormatError
from cherrikka.ir import BackupIR, IRAssistant, IRConversation, IRFile, IRMessage, IRPart
from cherrikka.merge import ParsedSource, choose_primary_source_index, infer_latest_unix_millis, merge_sources


def _ir(fmt: str, assistant_name: str = "Helper", updated_at: str = "2024-05-01T10:00:00Z") -> BackupIR:
    ir = BackupIR(source_app=f"{fmt}-app", source_format=fmt)
    ir.assistants.append(IRAssistant(id="a1", name=assistant_name))
    ir.files.append(IRFile(id="f1", name="cat.png", ext=".png", hash_sha256="h", data=b"png"))
    ir.conversations.append(
        IRConversation(
            id="c1",
            assistant_id="a1",
            title="Chat",
            updated_at=updated_at,
            messages=[
                IRMessage(id="m1", role="user", parts=[IRPart(type="image", file_id="f1")]),
            ],
        )
    )
    ir.settings = {"core.providers": [{"id": fmt}], "core.assistants": [], "core.selection": {}}
    return ir


def _source(index: int, fmt: str, latest: int = 0, **kwargs) -> ParsedSource:
    ir = _ir(fmt, **kwargs)
    return ParsedSource(index=index, name=f"in{index}.zip", format=fmt, ir=ir, latest_unix=latest)


class TestChoosePrimary:
    def test_latest_picks_newest_first_on_tie(self):
        sources = [_source(1, "cherry", 5), _source(2, "rikka", 9), _source(3, "rikka", 9)]
        assert choose_primary_source_index(sources, "latest", "cherry") == 1

    def test_blank_mode_means_latest(self):
        sources = [_source(1, "cherry", 1), _source(2, "rikka", 2)]
        assert choose_primary_source_index(sources, "", "cherry") == 1

    def test_first(self):
        sources = [_source(1, "cherry", 1), _source(2, "rikka", 2)]
        assert choose_primary_source_index(sources, "first", "cherry") == 0

    def test_target_falls_back_to_latest(self):
        sources = [_source(1, "cherry", 1), _source(2, "rikka", 2)]
        assert choose_primary_source_index(sources, "target", "cherry") == 0
        only_rikka = [_source(1, "rikka", 3), _source(2, "rikka", 2)]
        assert choose_primary_source_index(only_rikka, "target", "cherry") == 0

    def test_source_index_is_one_based(self):
        sources = [_source(1, "cherry"), _source(2, "rikka")]
        assert choose_primary_source_index(sources, "source", "cherry", 2) == 1

    def test_source_index_out_of_range(self):
        with pytest.raises(BackupFormatError, match="within 1..2"):
            choose_primary_source_index([_source(1, "cherry"), _source(2, "rikka")], "source", "cherry", 3)

    def test_unknown_mode(self):
        with pytest.raises(BackupFormatError, match="latest|first|target|source"):
            choose_primary_source_index([_source(1, "cherry")], "newest", "cherry")


class TestInferLatest:
    def test_uses_latest_conversation_or_message_time(self):
        ir = _ir("cherry", updated_at="2024-05-01T10:00:00Z")
        ir.conversations[0].messages[0].created_at = "2024-06-01T00:00:00Z"
        assert infer_latest_unix_millis(ir) == 1717200000000

    def test_undated_is_zero(self):
        assert infer_latest_unix_millis(BackupIR(source_app="x", source_format="cherry")) == 0


class TestMergeSources:
    def test_single_source_passes_through(self):
        src = _source(1, "cherry", 7)
        ir, report = merge_sources([src], "rikka")
        assert ir is src.ir
        assert report.primary_source_index == 1
        assert report.sources[0].latest_unix == 7

    def test_empty_inputs(self):
        with pytest.raises(BackupFormatError, match="no input sources"):
            merge_sources([], "rikka")

    def test_two_sources_merged_with_fresh_ids(self):
        merged, report = merge_sources([_source(1, "cherry", 1), _source(2, "rikka", 2)], "rikka")
        assert report.primary_source_index == 2
        assert merged.source_format == "rikka"
        assert len(merged.conversations) == 2
        assert len({c.id for c in merged.conversations}) == 2
        assert "multi-source-merge:count=2" in merged.warnings
        assert set(merged.opaque["opaque.merge.sources"]) == {"S1", "S2"}

    def test_duplicate_assistant_names_tagged(self):
        merged, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "cherry", "first")
        assert [a.name for a in merged.assistants] == ["Helper", "Helper (S2)"]
        assert "merge-assistant-renamed:Helper:Helper (S2)" in merged.warnings

    def test_references_follow_remapped_ids(self):
        merged, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "rikka")
        assistant_ids = {a.id for a in merged.assistants}
        file_ids = {f.id for f in merged.files}
        for conv in merged.conversations:
            assert conv.assistant_id in assistant_ids
            assert conv.messages[0].parts[0].file_id in file_ids

    def test_rikka_upload_path_collisions_resolved(self):
        merged, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "rikka")
        paths = [f.metadata["rikka.relative_path"] for f in merged.files]
        assert paths[0] == "upload/cat.png"
        assert len(set(paths)) == 2
        assert any(w.startswith("merge-file-path-collision:upload/cat.png:") for w in merged.warnings)

    def test_merge_is_deterministic(self):
        first, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "cherry")
        second, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "cherry")
        assert [c.id for c in first.conversations] == [c.id for c in second.conversations]
        assert [f.metadata["cherry_id"] for f in first.files] == [f.metadata["cherry_id"] for f in second.files]

    def test_settings_union_by_signature(self):
        merged, _ = merge_sources([_source(1, "cherry"), _source(2, "rikka")], "cherry", "first")
        assert merged.settings["core.providers"] == [{"id": "cherry"}, {"id": "rikka"}]
