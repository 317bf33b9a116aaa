"""Tests for deterministic ids, redaction and common helpers."""

import uuid

from cherrikka.utils.common import dedupe_warnings, file_ext, logical_type, millis_to_rfc3339, to_millis
from cherrikka.utils.ids import (
    ID_NAMESPACE,
    cherry_file_id,
    derive_hex,
    derive_uuid,
    ensure_uuid,
    is_safe_file_stem,
    is_valid_uuid,
)
from cherrikka.utils.redact import REDACTED, redact


class TestDeriveUuid:
    def test_same_seed_same_id(self):
        assert derive_uuid("conversation:x") == derive_uuid("conversation:x")

    def test_is_uuid5_over_oid_namespace(self):
        assert ID_NAMESPACE == uuid.NAMESPACE_OID
        assert derive_uuid("seed") == str(uuid.uuid5(uuid.NAMESPACE_OID, "seed"))

    def test_derive_hex_has_no_dashes(self):
        assert derive_hex("seed") == derive_uuid("seed").replace("-", "")


class TestEnsureUuid:
    def test_valid_candidate_kept(self):
        existing = "0950e2dc-9bd5-4801-afa3-aa887aa36b4e"
        assert ensure_uuid(existing, "ignored") == existing

    def test_invalid_candidate_derived_from_seed(self):
        assert ensure_uuid("default", "assistant:default") == derive_uuid("assistant:default")

    def test_blank_seed_still_deterministic(self):
        assert ensure_uuid("", "") == ensure_uuid(None, "")
        assert is_valid_uuid(ensure_uuid("", ""))


class TestFileIds:
    def test_safe_stems(self):
        assert is_safe_file_stem("abc_123-x")
        assert not is_safe_file_stem("has space")
        assert not is_safe_file_stem("a/b")
        assert not is_safe_file_stem("")

    def test_cherry_file_id_uses_url_namespace(self):
        expected = str(uuid.uuid5(uuid.NAMESPACE_URL, "id|a.png|.png|upload/a.png|hash"))
        assert cherry_file_id("id", "a.png", ".png", "upload/a.png", "hash") == expected


class TestRedact:
    def test_secret_keys_masked_recursively(self):
        value = {"providers": [{"apiKey": "sk-1", "name": "p"}], "webdavPass": "pw", "accessToken": "t"}
        out = redact(value)
        assert out["providers"][0] == {"apiKey": REDACTED, "name": "p"}
        assert out["webdavPass"] == REDACTED
        assert out["accessToken"] == REDACTED

    def test_empty_secret_stays_empty(self):
        assert redact({"apiKey": ""}) == {"apiKey": ""}

    def test_input_untouched(self):
        value = {"apiKey": "sk-1"}
        redact(value)
        assert value == {"apiKey": "sk-1"}


class TestCommon:
    def test_dedupe_warnings_strips_and_sorts(self):
        assert dedupe_warnings(["b", " a ", "", "b", "  "]) == ["a", "b"]

    def test_file_ext(self):
        assert file_ext("dir/photo.PNG") == ".PNG"
        assert file_ext("noext") == ""

    def test_logical_type_prefers_mime(self):
        assert logical_type("image/png", ".txt") == "image"
        assert logical_type("", ".mp3") == "audio"
        assert logical_type("", ".bin") == "document"

    def test_millis_round_trip(self):
        assert to_millis("2024-05-01T10:00:00Z") == 1714557600000
        assert millis_to_rfc3339(1714557600000) == "2024-05-01T10:00:00Z"
        assert to_millis("garbage") is None
