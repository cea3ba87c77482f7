"""
Supabase storage: the storage contract on top of Supabase Storage (REST).

Object stores have no directories, so `mkdir_all` is a no-op and a
"directory" exists when at least one object lives under its prefix.
A single-object upload replaces the object atomically.
"""
from __future__ import annotations

import io
import logging
from email.utils import parsedate_to_datetime
from typing import BinaryIO

import httpx

from archivist.config import Settings
from archivist.errors import ArtifactNotFoundError, StorageError
from archivist.models import StatResult
from archivist.storage.base import StorageProvider, WritableHandle

logger = logging.getLogger(__name__)

# Supabase answers 400 {"error": "not_found"} for missing objects on some routes
_MISSING = {400, 404}


class _UploadHandle(WritableHandle):
    def __init__(self, provider: SupabaseStorageProvider, path: str):
        self._provider = provider
        self._path = path
        self._buffer = io.BytesIO()

    def write(self, data: bytes) -> int:
        return self._buffer.write(data)

    async def close(self) -> None:
        await self._provider.write_all(self._path, self._buffer.getvalue())


class SupabaseStorageProvider(StorageProvider):
    name = "supabase"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        if not settings.supabase_url or not settings.supabase_key:
            raise StorageError("Supabase is not configured")
        self.base = settings.supabase_url.rstrip("/")
        self.bucket = settings.supabase_bucket
        self.timeout = settings.request_timeout
        self._transport = transport
        self._headers = {
            "apikey": settings.supabase_key,
            "Authorization": f"Bearer {settings.supabase_key}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers, transport=self._transport)

    def _object_url(self, path: str) -> str:
        return f"{self.base}/storage/v1/object/{self.bucket}/{path.lstrip('/')}"

    def _list_url(self) -> str:
        return f"{self.base}/storage/v1/object/list/{self.bucket}"

    async def _request(self, method: str, url: str, path: str, **kw) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kw)
        except httpx.HTTPError as exc:
            raise StorageError(f"{method} {path}: {exc}") from exc

    async def _has_children(self, path: str) -> bool:
        res = await self._request(
            "POST", self._list_url(), path, json={"prefix": path.strip("/"), "limit": 1, "offset": 0}
        )
        if res.status_code != 200:
            raise StorageError(f"list {path}: HTTP {res.status_code}")
        return bool(res.json())

    async def stat(self, path: str) -> StatResult:
        res = await self._request("HEAD", self._object_url(path), path)
        if res.status_code in _MISSING:
            if await self._has_children(path):
                return StatResult(path=path, size=0, modified_at=None, is_dir=True)
            raise ArtifactNotFoundError(path)
        if res.status_code != 200:
            raise StorageError(f"stat {path}: HTTP {res.status_code}")

        modified = res.headers.get("last-modified")
        return StatResult(
            path=path,
            size=int(res.headers.get("content-length", 0)),
            modified_at=parsedate_to_datetime(modified) if modified else None,
        )

    async def create(self, path: str) -> WritableHandle:
        return _UploadHandle(self, path)

    async def open(self, path: str) -> BinaryIO:
        res = await self._request("GET", self._object_url(path), path)
        if res.status_code in _MISSING:
            raise ArtifactNotFoundError(path)
        if res.status_code != 200:
            raise StorageError(f"read {path}: HTTP {res.status_code}")
        return io.BytesIO(res.content)

    async def remove(self, path: str) -> None:
        res = await self._request("DELETE", self._object_url(path), path)
        if res.status_code in _MISSING:
            raise ArtifactNotFoundError(path)
        if res.status_code not in (200, 204):
            raise StorageError(f"remove {path}: HTTP {res.status_code}")

    async def mkdir_all(self, path: str) -> None:
        return None

    async def write_all(self, path: str, data: bytes) -> None:
        url = self._object_url(path)
        headers = {"Content-Type": "application/octet-stream", "x-upsert": "true"}
        res = await self._request("POST", url, path, headers=headers, content=data)
        if res.status_code not in (200, 201):
            # Older storage versions ignore x-upsert; replace explicitly
            res = await self._request("PUT", url, path, headers=headers, content=data)
            if res.status_code not in (200, 201):
                raise StorageError(f"upload {path}: HTTP {res.status_code}")
        logger.debug("Uploaded %d bytes to %s/%s", len(data), self.bucket, path)
