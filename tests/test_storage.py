"""Tests for the storage module - FileOutputStore and HttpAssetUploader."""

import asyncio
import base64
import json
from pathlib import Path

import httpx
import pytest

from studioflow.storage.asset_uploader import HttpAssetUploader, decode_data_uri
from studioflow.storage.output_store import FileOutputStore

PNG_DATA = base64.b64encode(b"\x89PNG fake").decode()
PNG_URI = f"data:image/png;base64,{PNG_DATA}"


# === FILE OUTPUT STORE ===


class TestFileOutputStore:
    """Test FileOutputStore cache operations."""

    @pytest.mark.asyncio
    async def test_miss_on_empty_store(self, tmp_path: Path):
        """A store with no index reports a miss."""
        store = FileOutputStore(tmp_path)
        assert await store.check_cache("n1", "image_generator") is None

    @pytest.mark.asyncio
    async def test_save_and_check(self, tmp_path: Path):
        """Saved outputs come back for the same node and kind only."""
        store = FileOutputStore(tmp_path)
        await store.save_output("n1", "image_generator", ["a.png", "b.png"])

        assert await store.check_cache("n1", "image_generator") == ["a.png", "b.png"]
        assert await store.check_cache("n1", "video_generator") is None
        assert await store.check_cache("n2", "image_generator") is None

    @pytest.mark.asyncio
    async def test_index_is_json(self, tmp_path: Path):
        """The index is a readable JSON file keyed by kind and node."""
        store = FileOutputStore(tmp_path)
        await store.save_output("n1", "audio_generator", ["a.wav"])

        data = json.loads((tmp_path / "index.json").read_text())
        assert data["entries"]["audio_generator/n1"]["outputs"] == ["a.wav"]

    @pytest.mark.asyncio
    async def test_empty_outputs_count_as_miss(self, tmp_path: Path):
        store = FileOutputStore(tmp_path)
        await store.save_output("n1", "image_generator", [])
        assert await store.check_cache("n1", "image_generator") is None

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_every_entry(self, tmp_path: Path):
        """Concurrent saves are serialized and none is lost."""
        store = FileOutputStore(tmp_path)
        await asyncio.gather(
            *(store.save_output(f"n{i}", "image_generator", [f"{i}.png"]) for i in range(10))
        )

        for i in range(10):
            assert await store.check_cache(f"n{i}", "image_generator") == [f"{i}.png"]

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path: Path):
        await FileOutputStore(tmp_path).save_output("n1", "image_generator", ["a.png"])
        assert await FileOutputStore(tmp_path).check_cache("n1", "image_generator") == ["a.png"]

    @pytest.mark.asyncio
    async def test_unreadable_index_starts_empty(self, tmp_path: Path):
        """A corrupt index is treated as empty and replaced on the next save."""
        (tmp_path / "index.json").write_text("{not json")
        store = FileOutputStore(tmp_path)

        assert await store.check_cache("n1", "image_generator") is None
        await store.save_output("n1", "image_generator", ["a.png"])
        assert await store.check_cache("n1", "image_generator") == ["a.png"]

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path: Path):
        store = FileOutputStore(tmp_path)
        await store.save_output("n1", "image_generator", ["a.png"])
        await store.save_output("n1", "video_generator", ["a.mp4"])
        await store.save_output("n2", "image_generator", ["b.png"])

        assert await store.clear("n1") == 2
        assert await store.check_cache("n2", "image_generator") == ["b.png"]
        assert await store.clear() == 1
        assert await store.check_cache("n2", "image_generator") is None


# === DATA URIS ===


class TestDecodeDataUri:
    def test_decodes_png(self):
        raw, mime = decode_data_uri(PNG_URI)
        assert raw == b"\x89PNG fake"
        assert mime == "image/png"

    def test_missing_mime(self):
        raw, mime = decode_data_uri(f"data:;base64,{PNG_DATA}")
        assert raw == b"\x89PNG fake"
        assert mime == "application/octet-stream"

    def test_rejects_non_data_uri(self):
        with pytest.raises(ValueError):
            decode_data_uri("not a uri")

    def test_rejects_bad_base64(self):
        with pytest.raises(ValueError):
            decode_data_uri("data:image/png;base64,***")


# === ASSET UPLOADER ===


def make_uploader(handler, **kwargs) -> HttpAssetUploader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAssetUploader("https://assets.test/upload", client=client, **kwargs)


class TestHttpAssetUploader:
    """Test uploads against a mocked HTTP transport."""

    @pytest.mark.asyncio
    async def test_upload_returns_url_from_response(self):
        """The multipart upload carries the file, bucket, key and token."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"url": "https://cdn.test/canvas/ref.png"})

        uploader = make_uploader(handler, bucket="canvas", token="secret")
        url = await uploader.upload(PNG_URI, "ref.png")

        assert url == "https://cdn.test/canvas/ref.png"
        (request,) = requests
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer secret"
        body = request.content
        assert b'name="bucket"' in body
        assert b"canvas" in body
        assert b'filename="ref.png"' in body
        assert b"\x89PNG fake" in body

    @pytest.mark.asyncio
    async def test_url_built_from_public_base(self):
        """Without a URL in the response the public base URL is used."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, text="ok")

        uploader = make_uploader(handler, bucket="canvas", public_base_url="https://cdn.test/")
        assert await uploader.upload(PNG_URI, "ref.png") == "https://cdn.test/canvas/ref.png"

    @pytest.mark.asyncio
    async def test_remote_url_is_not_uploaded(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        uploader = make_uploader(handler)
        assert await uploader.upload("https://cdn.test/a.png", "a.png") == "https://cdn.test/a.png"

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "down"})

        uploader = make_uploader(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await uploader.upload(PNG_URI, "ref.png")

    @pytest.mark.asyncio
    async def test_no_url_anywhere(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        uploader = make_uploader(handler)
        with pytest.raises(ValueError):
            await uploader.upload(PNG_URI, "ref.png")

    def test_from_config(self, tmp_path: Path, monkeypatch):
        """Settings come from the configuration file and the named token variable."""
        config = tmp_path / "configuration.json"
        config.write_text(
            json.dumps(
                {
                    "asset_store": {
                        "endpoint": "https://assets.test/upload",
                        "bucket": "canvas",
                        "token_env_var": "TEST_ASSET_TOKEN",
                    }
                }
            )
        )
        monkeypatch.setenv("STUDIOFLOW_CONFIG", str(config))
        monkeypatch.setenv("TEST_ASSET_TOKEN", "tok")

        uploader = HttpAssetUploader.from_config()
        assert uploader.endpoint == "https://assets.test/upload"
        assert uploader.bucket == "canvas"
        assert uploader.token == "tok"

    def test_from_config_without_store(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("STUDIOFLOW_CONFIG", str(tmp_path / "missing.json"))
        assert HttpAssetUploader.from_config() is None
