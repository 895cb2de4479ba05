"""
Screenshot persistence

Uploads go to an object store. When the store is unavailable the capture is
not lost: the raster is handed back inline as a data URL instead.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os
import httpx

from .config import Settings
from .errors import StorageError
from .models import CaptureResult, StorageOutcome
from .utils import generate_storage_key, to_data_url

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    url: str
    pathname: str
    download_url: Optional[str] = None
    uploaded_at: Optional[str] = None
    size: Optional[int] = None


class BlobStore:
    """put/list/delete capability of an object store"""

    name = "base"

    async def put(self, key: str, data: bytes, content_type: str) -> StoredBlob:
        raise NotImplementedError

    async def list(self, prefix: str = "", limit: int = 10) -> List[StoredBlob]:
        raise NotImplementedError

    async def delete(self, url: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class VercelBlobStore(BlobStore):
    """Vercel Blob over its REST API"""

    name = "vercel-blob"
    API_VERSION = "7"

    def __init__(self, token: str, api_url: str = "https://blob.vercel-storage.com",
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self, **extra: str) -> dict:
        if not self.token:
            raise StorageError("BLOB_READ_WRITE_TOKEN is not configured")
        headers = {
            "authorization": f"Bearer {self.token}",
            "x-api-version": self.API_VERSION,
        }
        headers.update(extra)
        return headers

    @staticmethod
    def _to_blob(item: dict) -> StoredBlob:
        return StoredBlob(
            url=item["url"],
            pathname=item.get("pathname", ""),
            download_url=item.get("downloadUrl"),
            uploaded_at=item.get("uploadedAt"),
            size=item.get("size"),
        )

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            raise StorageError(
                f"Blob API returned {e.response.status_code}: {e.response.text[:200]}", cause=e
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise StorageError(f"Blob API request failed: {e}", cause=e) from e

    async def put(self, key: str, data: bytes, content_type: str) -> StoredBlob:
        headers = self._headers(**{
            "x-content-type": content_type,
            "x-add-random-suffix": "1",
        })
        body = await self._request("PUT", f"{self.api_url}/{quote(key)}", content=data, headers=headers)
        try:
            return self._to_blob(body)
        except KeyError as e:
            raise StorageError(f"Blob API response missing {e}", cause=e) from e

    async def list(self, prefix: str = "", limit: int = 10) -> List[StoredBlob]:
        params = {"limit": str(limit)}
        if prefix:
            params["prefix"] = prefix
        body = await self._request("GET", self.api_url, params=params, headers=self._headers())
        try:
            return [self._to_blob(item) for item in body.get("blobs", [])]
        except KeyError as e:
            raise StorageError(f"Blob API response missing {e}", cause=e) from e

    async def delete(self, url: str) -> None:
        await self._request("POST", f"{self.api_url}/delete", json={"urls": [url]}, headers=self._headers())

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class LocalBlobStore(BlobStore):
    """A directory on disk, served by the app under mount_path"""

    name = "local"

    def __init__(self, directory: str, public_base_url: str = "http://localhost:8000", mount_path: str = "/blobs"):
        self.directory = directory
        self.public_base_url = public_base_url.rstrip("/")
        self.mount_path = "/" + mount_path.strip("/")

    def _path_for(self, key: str) -> str:
        if not key or os.path.basename(key) != key or key in (".", ".."):
            raise StorageError(f"Invalid storage key: {key!r}")
        return os.path.join(self.directory, key)

    def _url_for(self, key: str) -> str:
        return f"{self.public_base_url}{self.mount_path}/{quote(key)}"

    async def put(self, key: str, data: bytes, content_type: str) -> StoredBlob:
        path = self._path_for(key)
        try:
            await aiofiles.os.makedirs(self.directory, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise StorageError(f"Could not write {path}: {e}", cause=e) from e
        url = self._url_for(key)
        return StoredBlob(url=url, pathname=key, download_url=url, size=len(data))

    async def list(self, prefix: str = "", limit: int = 10) -> List[StoredBlob]:
        if not await aiofiles.os.path.isdir(self.directory):
            return []
        try:
            names = sorted(
                (name for name in await aiofiles.os.listdir(self.directory) if name.startswith(prefix)),
                reverse=True,
            )
        except OSError as e:
            raise StorageError(f"Could not list {self.directory}: {e}", cause=e) from e

        blobs = []
        for name in names[:limit]:
            stat = await aiofiles.os.stat(os.path.join(self.directory, name))
            url = self._url_for(name)
            blobs.append(StoredBlob(url=url, pathname=name, download_url=url, size=stat.st_size))
        return blobs

    async def delete(self, url: str) -> None:
        key = url.rsplit("/", 1)[-1]
        try:
            await aiofiles.os.remove(self._path_for(key))
        except FileNotFoundError as e:
            raise StorageError(f"No such blob: {key}", cause=e) from e
        except OSError as e:
            raise StorageError(f"Could not delete {key}: {e}", cause=e) from e


def create_blob_store(settings: Settings) -> BlobStore:
    """Pick the storage backend for this deployment; called once at startup"""
    backend = settings.STORAGE_BACKEND.lower()
    if backend == "local":
        return LocalBlobStore(settings.STORAGE_DIR, settings.PUBLIC_BASE_URL)
    if backend == "vercel":
        return VercelBlobStore(settings.BLOB_READ_WRITE_TOKEN, settings.BLOB_API_URL)
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND!r}")


async def persist(result: CaptureResult, store: BlobStore, prefix: str = "screenshot") -> StorageOutcome:
    """Upload a successful capture, falling back to inline data on any store failure"""
    if not result.success or result.raster is None:
        raise ValueError("only successful captures can be persisted")

    key = generate_storage_key(result.url, result.format, prefix)
    try:
        blob = await store.put(key, result.raster, result.content_type)
    except Exception as e:
        logger.error("Blob upload failed for %s, returning inline data: %s", result.url, e)
        return StorageOutcome(
            storage="fallback",
            data_url=to_data_url(result.raster, result.content_type),
            error=str(e) or e.__class__.__name__,
        )

    logger.info("Stored screenshot of %s at %s", result.url, blob.url)
    return StorageOutcome(
        storage="primary",
        url=blob.url,
        download_url=blob.download_url,
        pathname=blob.pathname,
    )
