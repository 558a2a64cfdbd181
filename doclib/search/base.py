"""
Search Backend — Abstract Base

The Search Index Synchronizer only speaks this interface; the engine behind
it (Elasticsearch, OpenSearch, anything with the same document model) is
swappable.

Contract shared by all implementations:
  - Documents are keyed by file id; upsert replaces the whole document, so
    indexing the same file twice leaves exactly one document.
  - Deleting an absent document is success.
  - Engine unreachable / 5xx raises IndexUnavailableError. Per-document
    rejections inside a bulk call are reported, not raised.
  - Every document carries organization_id; search-time tenant filtering is
    the query layer's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class BulkResult:
    """Outcome of one bulk upsert: ids that made it, and per-id errors."""
    indexed: list[str] = field(default_factory=list)
    failed:  dict[str, str] = field(default_factory=dict)


class SearchBackend(ABC):

    @abstractmethod
    async def upsert(self, doc_id: str, document: dict) -> None: ...

    @abstractmethod
    async def delete(self, doc_id: str) -> None: ...

    @abstractmethod
    async def bulk_upsert(self, documents: dict[str, dict]) -> BulkResult: ...

    @abstractmethod
    async def health(self) -> dict:
        """
        {"reachable": bool, "cluster_status": str | None, "index_exists": bool}
        Never raises; an unreachable engine reports reachable=False.
        """

    async def close(self) -> None:
        return None
