"""
Local Filesystem Provider

Objects live under a single root directory; the locator is the path relative
to that root. Writes go to a temporary sibling first and are renamed into
place, so readers never observe a half-written file. All blocking filesystem
calls run in the default thread executor.

presign() has no signing to do: it returns the direct-serving path under
`local_serve_base_url`, which the web tier maps onto the root directory.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import uuid
from pathlib import Path

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import NotFoundError, QuotaExceededError, TransientIOError
from doclib.models.records import StorageBackend
from doclib.storage.base import StorageProvider, sanitize_hint

logger = logging.getLogger(__name__)

_QUOTA_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT})


def _translate(exc: OSError, locator: str) -> Exception:
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(f"Local object not found: {locator}")
    if exc.errno in _QUOTA_ERRNOS:
        return QuotaExceededError(f"Local storage full writing {locator}")
    return TransientIOError(f"Local storage error on {locator}: {exc}")


class LocalFilesystemProvider(StorageProvider):

    def __init__(self, cfg: Settings | None = None, root: str | Path | None = None) -> None:
        cfg = cfg or default_settings
        self._root = Path(root or cfg.local_storage_root).resolve()
        self._serve_base = cfg.local_serve_base_url.rstrip("/")

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.LOCAL

    def _path(self, locator: str) -> Path:
        path = (self._root / sanitize_hint(locator)).resolve()
        if not path.is_relative_to(self._root):
            raise NotFoundError(f"Locator outside storage root: {locator}")
        return path

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ------------------------------------------------------------------
    # Blocking helpers (executor)
    # ------------------------------------------------------------------

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    @staticmethod
    def _delete_sync(path: Path) -> None:
        path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # StorageProvider
    # ------------------------------------------------------------------

    async def write(
        self,
        data: bytes,
        destination_hint: str,
        content_type: str | None = None,
    ) -> str:
        locator = sanitize_hint(destination_hint)
        path = self._path(locator)
        try:
            await self._run(self._write_sync, path, data)
        except OSError as exc:
            raise _translate(exc, locator) from exc
        logger.info("Local write ok | locator=%s size=%d", locator, len(data))
        return locator

    async def read(self, locator: str) -> bytes:
        path = self._path(locator)
        try:
            return await self._run(path.read_bytes)
        except OSError as exc:
            raise _translate(exc, locator) from exc

    async def delete(self, locator: str) -> bool:
        path = self._path(locator)
        try:
            await self._run(self._delete_sync, path)
        except OSError as exc:
            raise _translate(exc, locator) from exc
        logger.info("Local delete | locator=%s", locator)
        return True

    async def exists(self, locator: str) -> bool:
        return await self._run(self._path(locator).is_file)

    async def presign(self, locator: str, ttl_seconds: int = 900) -> str:
        return f"{self._serve_base}/{sanitize_hint(locator)}"

    async def health_check(self) -> dict:
        try:
            usage = await self._run(self._disk_usage)
        except OSError as exc:
            logger.error("Local storage health check failed: %s", exc)
            return {"status": "error", "root": str(self._root), "detail": str(exc)}
        return {"status": "ok", "root": str(self._root), "free_bytes": usage.free}

    def _disk_usage(self):
        self._root.mkdir(parents=True, exist_ok=True)
        return shutil.disk_usage(self._root)
