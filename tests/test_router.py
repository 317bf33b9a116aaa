"""HTTP API tests: health, inspect, validate, convert."""

import json

from cherrikka.backup.archive import read_archive
from tests.fixtures import make_cherry_archive, make_rikka_archive


def _upload(content: bytes, name: str = "backup.zip"):
    return (name, content, "application/zip")


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": "0.1.0"}


class TestInspectEndpoint:
    async def test_inspect_uses_camel_case(self, client):
        resp = await client.post("/api/inspect", files={"file": _upload(make_cherry_archive())})
        assert resp.status_code == 200
        data = resp.json()
        assert data["format"] == "cherry"
        assert data["sourceApp"] == "cherry-studio"
        assert data["configSummary"]["providers"] == 1
        assert "fileSummary" in data

    async def test_not_a_zip_is_422(self, client):
        resp = await client.post("/api/inspect", files={"file": _upload(b"plain text")})
        assert resp.status_code == 422

    async def test_upload_limit(self, client):
        resp = await client.post("/api/inspect", files={"file": _upload(b"0" * (1024 * 1024 + 1))})
        assert resp.status_code == 413


class TestValidateEndpoint:
    async def test_validate(self, client):
        resp = await client.post("/api/validate", files={"file": _upload(await make_rikka_archive())})
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["format"] == "rikka"


class TestConvertEndpoint:
    async def test_convert_returns_zip_and_manifest_header(self, client):
        resp = await client.post(
            "/api/convert",
            files=[("files", _upload(make_cherry_archive(), "cherry.zip"))],
            data={"to": "rikka"},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/zip"
        assert 'filename="cherrikka-rikka.zip"' in resp.headers["content-disposition"]
        manifest = json.loads(resp.headers["x-cherrikka-manifest"])
        assert manifest["targetFormat"] == "rikka"
        assert manifest["sources"][0]["name"] == "cherry.zip"
        entries = read_archive(resp.content)
        assert "rikka_hub.db" in entries

    async def test_two_inputs(self, client):
        resp = await client.post(
            "/api/convert",
            files=[
                ("files", _upload(make_cherry_archive(), "a.zip")),
                ("files", _upload(await make_rikka_archive(), "b.zip")),
            ],
            data={"to": "cherry", "config_precedence": "source", "config_source_index": "1"},
        )
        assert resp.status_code == 200
        manifest = json.loads(resp.headers["x-cherrikka-manifest"])
        assert manifest["sourceFormat"] == "cherry"
        assert len(manifest["sources"]) == 2

    async def test_bad_target_is_422(self, client):
        resp = await client.post(
            "/api/convert",
            files=[("files", _upload(make_cherry_archive()))],
            data={"to": "zip"},
        )
        assert resp.status_code == 422
        assert resp.json()["detail"] == "--to must be cherry or rikka"

    async def test_format_mismatch_is_422(self, client):
        resp = await client.post(
            "/api/convert",
            files=[("files", _upload(make_cherry_archive()))],
            data={"to": "rikka", "from": "rikka"},
        )
        assert resp.status_code == 422
        assert "source format mismatch" in resp.json()["detail"]
