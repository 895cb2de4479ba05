import base64
import json
import re

import httpx
import pytest

from screenshot_api.config import Settings
from screenshot_api.errors import StorageError
from screenshot_api.models import CaptureResult
from screenshot_api.storage import (
    LocalBlobStore,
    VercelBlobStore,
    create_blob_store,
    persist,
)
from screenshot_api.utils import generate_storage_key, sanitize_hostname

from tests.fakes import FailingStore, FakeStore, make_png

RASTER = make_png(32, 32)


def captured(url="https://www.example.com/page", format="jpeg") -> CaptureResult:
    return CaptureResult(url=url, success=True, attempts=1, raster=RASTER, format=format, width=32, height=32)


def vercel_store(handler, token="vercel_blob_rw_test") -> VercelBlobStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return VercelBlobStore(token, "https://blob.example.test", client=client)


# ============================================================================
# PERSISTENCE PIPELINE
# ============================================================================

@pytest.mark.asyncio
async def test_successful_upload_is_primary():
    store = FakeStore()

    outcome = await persist(captured(), store)

    assert outcome.storage == "primary"
    assert outcome.url.startswith("https://blob.example.test/screenshot-www-example-com-")
    assert outcome.data_url is None
    assert outcome.error is None
    key, data, content_type = store.puts[0]
    assert data == RASTER
    assert content_type == "image/jpeg"
    assert key.endswith(".jpeg")


@pytest.mark.asyncio
async def test_failed_upload_falls_back_to_original_bytes():
    outcome = await persist(captured(format="png"), FailingStore())

    assert outcome.storage == "fallback"
    assert outcome.url is None
    assert outcome.error == "blob store unavailable"
    header, encoded = outcome.data_url.split(",", 1)
    assert header == "data:image/png;base64"
    assert base64.b64decode(encoded) == RASTER


@pytest.mark.asyncio
async def test_unexpected_store_error_still_falls_back():
    outcome = await persist(captured(), FakeStore(fail_with=ConnectionResetError("reset by peer")))

    assert outcome.storage == "fallback"
    assert "reset by peer" in outcome.error


@pytest.mark.asyncio
async def test_failed_capture_cannot_be_persisted():
    with pytest.raises(ValueError):
        await persist(CaptureResult(url="https://a.test", success=False), FakeStore())


def test_storage_key_shape():
    key = generate_storage_key("https://News.Example.co.uk:8443/a?b=c", "jpeg")

    assert re.fullmatch(
        r"screenshot-news-example-co-uk-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{6}Z-[0-9a-f]{8}\.jpeg", key
    ), key


def test_storage_keys_do_not_collide():
    keys = {generate_storage_key("https://a.test", "png") for _ in range(100)}

    assert len(keys) == 100


@pytest.mark.parametrize("hostname,expected", [
    ("www.baidu.com", "www-baidu-com"),
    ("xn--fiqs8s.cn", "xn-fiqs8s-cn"),
    (None, "unknown"),
    ("...", "unknown"),
])
def test_sanitize_hostname(hostname, expected):
    assert sanitize_hostname(hostname) == expected


# ============================================================================
# VERCEL BLOB BACKEND
# ============================================================================

@pytest.mark.asyncio
async def test_vercel_put_sends_bytes_and_parses_reference():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200, json={
            "url": "https://store.public.blob.vercel-storage.com/shot-abc.jpeg",
            "downloadUrl": "https://store.public.blob.vercel-storage.com/shot-abc.jpeg?download=1",
            "pathname": "shot-abc.jpeg",
            "contentType": "image/jpeg",
        })

    store = vercel_store(handler)
    blob = await store.put("shot.jpeg", RASTER, "image/jpeg")

    assert seen["method"] == "PUT"
    assert seen["url"] == "https://blob.example.test/shot.jpeg"
    assert seen["headers"]["authorization"] == "Bearer vercel_blob_rw_test"
    assert seen["headers"]["x-content-type"] == "image/jpeg"
    assert seen["body"] == RASTER
    assert blob.url == "https://store.public.blob.vercel-storage.com/shot-abc.jpeg"
    assert blob.pathname == "shot-abc.jpeg"
    assert blob.download_url.endswith("?download=1")


@pytest.mark.asyncio
async def test_vercel_put_without_token_is_storage_error():
    calls = []
    store = vercel_store(lambda request: calls.append(request) or httpx.Response(200), token="")

    with pytest.raises(StorageError):
        await store.put("shot.jpeg", RASTER, "image/jpeg")

    assert calls == []


@pytest.mark.asyncio
async def test_vercel_http_error_is_storage_error():
    store = vercel_store(lambda request: httpx.Response(403, text="Access denied"))

    with pytest.raises(StorageError) as excinfo:
        await store.put("shot.jpeg", RASTER, "image/jpeg")

    assert "403" in excinfo.value.details


@pytest.mark.asyncio
async def test_vercel_network_error_is_storage_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StorageError):
        await vercel_store(handler).put("shot.jpeg", RASTER, "image/jpeg")


@pytest.mark.asyncio
async def test_vercel_list_and_delete():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"blobs": [
                {"url": "https://s.test/screenshot-a.jpeg", "pathname": "screenshot-a.jpeg",
                 "downloadUrl": "https://s.test/screenshot-a.jpeg?download=1",
                 "uploadedAt": "2024-01-01T00:00:00.000Z", "size": 10},
            ], "hasMore": False})
        return httpx.Response(200, json={})

    store = vercel_store(handler)
    blobs = await store.list("screenshot", 5)
    await store.delete("https://s.test/screenshot-a.jpeg")

    assert requests[0].url.params["prefix"] == "screenshot"
    assert requests[0].url.params["limit"] == "5"
    assert blobs[0].pathname == "screenshot-a.jpeg"
    assert blobs[0].uploaded_at == "2024-01-01T00:00:00.000Z"
    assert requests[1].method == "POST"
    assert str(requests[1].url) == "https://blob.example.test/delete"
    assert json.loads(requests[1].content) == {"urls": ["https://s.test/screenshot-a.jpeg"]}


# ============================================================================
# LOCAL BACKEND
# ============================================================================

@pytest.mark.asyncio
async def test_local_store_round_trip(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"), "http://localhost:9000")

    blob = await store.put("screenshot-a-test.png", RASTER, "image/png")
    listed = await store.list("screenshot", 10)
    await store.delete(blob.url)

    assert blob.url == "http://localhost:9000/blobs/screenshot-a-test.png"
    assert (tmp_path / "blobs" / "screenshot-a-test.png").exists() is False
    assert [b.pathname for b in listed] == ["screenshot-a-test.png"]
    assert listed[0].size == len(RASTER)


@pytest.mark.asyncio
async def test_local_store_writes_bytes(tmp_path):
    store = LocalBlobStore(str(tmp_path))

    await store.put("screenshot-x.jpeg", RASTER, "image/jpeg")

    assert (tmp_path / "screenshot-x.jpeg").read_bytes() == RASTER


@pytest.mark.asyncio
async def test_local_store_rejects_path_traversal(tmp_path):
    store = LocalBlobStore(str(tmp_path))

    with pytest.raises(StorageError):
        await store.put("../escape.png", RASTER, "image/png")


@pytest.mark.asyncio
async def test_local_store_missing_blob(tmp_path):
    store = LocalBlobStore(str(tmp_path))

    with pytest.raises(StorageError):
        await store.delete("http://localhost:8000/blobs/nothing.png")


@pytest.mark.asyncio
async def test_local_store_lists_nothing_before_first_write(tmp_path):
    store = LocalBlobStore(str(tmp_path / "missing"))

    assert await store.list() == []


def test_create_blob_store_by_backend(tmp_path):
    settings = Settings()
    settings.STORAGE_BACKEND = "local"
    settings.STORAGE_DIR = str(tmp_path)
    assert isinstance(create_blob_store(settings), LocalBlobStore)

    settings.STORAGE_BACKEND = "vercel"
    assert isinstance(create_blob_store(settings), VercelBlobStore)

    settings.STORAGE_BACKEND = "ftp"
    with pytest.raises(ValueError):
        create_blob_store(settings)
