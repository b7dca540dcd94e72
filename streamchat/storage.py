"""File storage collaborator for session-scoped artifacts (uploads).

The chat core only needs delete(session_id) when a session is cleared.
Two implementations:
- LocalFileStorage: one directory per session under a root directory
- HttpFileStorage:  remote storage service over HTTP (httpx)
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Protocol

import httpx

from streamchat.config import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class FileStorage(Protocol):
    async def save(self, data: bytes, session_id: str, filename: str | None = None) -> str:
        ...

    async def delete(self, session_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


def _safe_name(value: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or "_"


class LocalFileStorage:
    """Stores files under <root>/<session_id>/."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def session_dir(self, session_id: str) -> Path:
        return self.root / _safe_name(session_id)

    async def save(self, data: bytes, session_id: str, filename: str | None = None) -> str:
        name = _safe_name(filename) if filename else uuid.uuid4().hex
        path = self.session_dir(session_id) / name

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("FILE_SAVED | session=%s | path=%s | bytes=%d", session_id, path, len(data))
        return str(path)

    async def delete(self, session_id: str) -> None:
        directory = self.session_dir(session_id)
        if not directory.exists():
            return
        await asyncio.to_thread(shutil.rmtree, directory)
        logger.info("FILES_DELETED | session=%s | dir=%s", session_id, directory)

    async def close(self) -> None:
        return None


class HttpFileStorage:
    """Remote file storage service client.

    POST   /files/{session_id}  multipart upload → {"path": ...}
    DELETE /files/{session_id}  drop all files of the session
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def save(self, data: bytes, session_id: str, filename: str | None = None) -> str:
        client = await self._get_client()
        resp = await client.post(
            f"/files/{session_id}",
            files={"file": (filename or uuid.uuid4().hex, data)},
        )
        resp.raise_for_status()
        return resp.json()["path"]

    async def delete(self, session_id: str) -> None:
        client = await self._get_client()
        resp = await client.delete(f"/files/{session_id}")
        if resp.status_code != 404:
            resp.raise_for_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_storage(cfg: Settings) -> FileStorage:
    if cfg.storage_url:
        return HttpFileStorage(cfg.storage_url)
    return LocalFileStorage(cfg.storage_dir)
