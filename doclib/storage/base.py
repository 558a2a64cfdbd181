"""
Storage Provider — Abstract Base

Every concrete backend (S3-compatible object store, local filesystem)
implements this interface. The Hybrid Storage Manager only speaks this
protocol, so backends are swappable without changing orchestration code.

Locator contract:
  - write() returns a locator string; callers store it and hand it back to
    read / delete / presign / exists unchanged.
  - Callers never parse or build locators themselves.

Failure contract (doclib.core.errors):
  TransientIOError    network / backend hiccup — safe to retry
  NotFoundError       locator no longer resolves — not retryable
  QuotaExceededError  backend out of capacity — surfaced, not retried
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

from doclib.models.records import StorageBackend

_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._\-]")


def sanitize_hint(destination_hint: str) -> str:
    """
    Normalize a destination hint into a relative key of safe path segments.
    Empty, '.' and '..' segments are dropped so a key can never climb out of
    its root / prefix.
    """
    segments = []
    for raw in destination_hint.replace("\\", "/").split("/"):
        if raw in ("", ".", ".."):
            continue
        segments.append(_UNSAFE_SEGMENT.sub("_", raw)[:200])
    if not segments:
        raise ValueError(f"Unusable destination hint: {destination_hint!r}")
    return "/".join(segments)


class StorageProvider(ABC):
    """Byte storage with opaque locators. No orchestration logic."""

    @property
    @abstractmethod
    def backend(self) -> StorageBackend:
        """Which backend kind this provider writes to."""

    @abstractmethod
    async def write(
        self,
        data: bytes,
        destination_hint: str,
        content_type: str | None = None,
    ) -> str:
        """Store bytes; returns the locator."""

    @abstractmethod
    async def read(self, locator: str) -> bytes:
        """Return the stored bytes. NotFoundError if gone."""

    @abstractmethod
    async def delete(self, locator: str) -> bool:
        """Remove the bytes. Deleting something already absent is success."""

    @abstractmethod
    async def exists(self, locator: str) -> bool: ...

    @abstractmethod
    async def presign(self, locator: str, ttl_seconds: int = 900) -> str:
        """
        Time-limited download URL. Backends without URL signing return a
        direct-serving path instead.
        """

    @abstractmethod
    async def health_check(self) -> dict:
        """{"status": "ok" | "error", ...} — never raises."""
