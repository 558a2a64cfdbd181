"""
Repository interfaces — the relational store as seen by the pipeline.

Each core component depends only on these abstract classes. The production
implementation lives in doclib.repositories.sql (SQLAlchemy + asyncpg);
tests plug in in-memory implementations.

Ownership (who may write what):
  FileRepository           Hybrid Storage Manager (+ upload path on create)
  LocationRepository       Hybrid Storage Manager only
  SyncJobRepository        Hybrid Storage Manager only
  ExtractionJobRepository  upload path + Background Processor
  ContentRepository        extraction service
  IndexStatusRepository    Search Index Synchronizer only
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from doclib.models.records import (
    ContentRecord,
    ExtractionJobRecord,
    FileRecord,
    IndexStatusRecord,
    LocationRecord,
    PolicyRecord,
    SyncJobRecord,
    SyncType,
)


class FileRepository(ABC):

    @abstractmethod
    async def get(self, file_id: uuid.UUID) -> FileRecord | None:
        """Return the file (deleted ones included) or None."""

    @abstractmethod
    async def add(self, record: FileRecord) -> FileRecord:
        """Insert a new file; returns it with server timestamps filled in."""

    @abstractmethod
    async def list_active(
        self,
        organization_id: uuid.UUID,
        *,
        modified_since: datetime | None = None,
        after_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[FileRecord]:
        """
        Live files of one organization ordered by id, for keyset pagination
        (`after_id`) and incremental scans (`modified_since`).
        """

    @abstractmethod
    async def list_needing_backup(self, limit: int) -> list[FileRecord]:
        """Live files whose backup copy is still owed."""

    @abstractmethod
    async def set_needs_backup(self, file_id: uuid.UUID, flag: bool) -> None: ...

    @abstractmethod
    async def soft_delete(self, file_id: uuid.UUID) -> FileRecord | None:
        """Flag the file deleted / inactive. Returns the updated record."""

    @abstractmethod
    async def get_policy(self, organization_id: uuid.UUID) -> PolicyRecord | None: ...

    @abstractmethod
    async def adjust_usage(self, organization_id: uuid.UUID, delta_bytes: int) -> None:
        """Add (or subtract) bytes from the organization's usage counter."""

    @abstractmethod
    async def list_sync_enabled_organizations(self) -> list[uuid.UUID]:
        """Organizations with a hybrid policy and background sync enabled."""


class LocationRepository(ABC):

    @abstractmethod
    async def list_for_file(self, file_id: uuid.UUID) -> list[LocationRecord]:
        """All copies of a file, primary first."""

    @abstractmethod
    async def add(self, record: LocationRecord) -> None: ...

    @abstractmethod
    async def remove(self, location_id: uuid.UUID) -> None: ...

    @abstractmethod
    async def set_primary(self, file_id: uuid.UUID, location_id: uuid.UUID) -> None:
        """Make `location_id` the only primary copy of the file."""

    @abstractmethod
    async def try_lock(self, file_id: uuid.UUID, owner: str, ttl_seconds: int) -> bool:
        """
        Insert the advisory lock marker for a file. Returns False while
        another owner holds an unexpired marker.
        """

    @abstractmethod
    async def unlock(self, file_id: uuid.UUID, owner: str) -> None: ...


class SyncJobRepository(ABC):

    @abstractmethod
    async def add(self, record: SyncJobRecord) -> None: ...

    @abstractmethod
    async def get(self, sync_job_id: uuid.UUID) -> SyncJobRecord | None: ...

    @abstractmethod
    async def save(self, record: SyncJobRecord) -> None: ...

    @abstractmethod
    async def last_completed(
        self,
        organization_id: uuid.UUID,
        sync_types: Iterable[SyncType] = (SyncType.FULL, SyncType.INCREMENTAL),
    ) -> SyncJobRecord | None:
        """
        Most recent completed sync of the organization among `sync_types`.
        Single-file syncs are excluded by default: they cover one file and
        cannot serve as an organization-wide watermark.
        """

    @abstractmethod
    async def has_open_file_sync(self, file_id: uuid.UUID) -> bool:
        """True while a `file` sync for this file is pending or running."""


class ExtractionJobRepository(ABC):

    @abstractmethod
    async def add(self, record: ExtractionJobRecord) -> ExtractionJobRecord: ...

    @abstractmethod
    async def get(self, job_id: uuid.UUID) -> ExtractionJobRecord | None: ...

    @abstractmethod
    async def save(self, record: ExtractionJobRecord) -> None: ...

    @abstractmethod
    async def claim(
        self,
        job_id: uuid.UUID,
        started_at: datetime,
    ) -> ExtractionJobRecord | None:
        """
        Atomically move a pending job to processing. Returns None when the job
        is not pending or another job for the same (file, method) is already
        processing.
        """

    @abstractmethod
    async def list_pending(self, limit: int) -> list[ExtractionJobRecord]:
        """Oldest pending jobs first."""

    @abstractmethod
    async def list_stale_processing(
        self,
        started_before: datetime,
        limit: int,
    ) -> list[ExtractionJobRecord]:
        """Jobs stuck in processing since before `started_before`."""


class ContentRepository(ABC):

    @abstractmethod
    async def upsert(self, record: ContentRecord) -> None: ...

    @abstractmethod
    async def get(
        self,
        file_id: uuid.UUID,
        content_type: str = "full_text",
    ) -> ContentRecord | None: ...


class IndexStatusRepository(ABC):

    @abstractmethod
    async def get(self, file_id: uuid.UUID) -> IndexStatusRecord | None: ...

    @abstractmethod
    async def save(self, record: IndexStatusRecord) -> None:
        """Insert or replace the status row of `record.file_id`."""

    @abstractmethod
    async def list_failed(self, max_retries: int, limit: int) -> list[IndexStatusRecord]:
        """index_failed rows whose retry_count is still below `max_retries`."""
