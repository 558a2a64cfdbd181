"""
SQLAlchemy implementations of the repository interfaces.

Every method runs in its own short transaction (session_scope). Guards that
must hold under concurrency are pushed into the database:
  - claim() is a conditional UPDATE ... WHERE status = 'pending'; the partial
    unique index on (file_id, method) WHERE status = 'processing' rejects a
    second concurrent claim with IntegrityError.
  - try_lock() is INSERT ... ON CONFLICT DO NOTHING on the file_locks PK.
  - content and index-status writes are upserts (ON CONFLICT DO UPDATE).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doclib.db.session import AsyncSessionLocal, session_scope
from doclib.models.files import (
    File,
    FileLock,
    StorageConfiguration,
    StorageLocation,
    StorageSyncJob,
)
from doclib.models.processing import (
    ExtractedTextContent,
    SearchIndexStatus,
    TextExtractionJob,
)
from doclib.models.records import (
    ContentRecord,
    ExtractionJobRecord,
    FileRecord,
    IndexStatusRecord,
    JobStatus,
    LocationRecord,
    PolicyRecord,
    StorageClass,
    SyncJobRecord,
    SyncStatus,
    SyncType,
)
from doclib.repositories.base import (
    ContentRepository,
    ExtractionJobRepository,
    FileRepository,
    IndexStatusRepository,
    LocationRepository,
    SyncJobRepository,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Columns owned by the database on UPDATE
_IMMUTABLE = frozenset({"id", "created_at", "updated_at"})


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------

def _to_record(row: Any, cls: type[R]) -> R:
    values = {f.name: getattr(row, f.name) for f in fields(cls)}
    for name, enum_cls in cls.ENUM_FIELDS.items():
        if values.get(name) is not None:
            values[name] = enum_cls(values[name])
    return cls(**values)


def _to_values(record: Any, *, skip_none: bool = False) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, Enum):
            value = value.value
        if skip_none and value is None:
            continue
        values[f.name] = value
    return values


class _SqlRepository:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ) -> None:
        self._sessions = sessions

    def _scope(self):
        return session_scope(self._sessions)


# ---------------------------------------------------------------------------
# Files + storage policy
# ---------------------------------------------------------------------------

class SqlFileRepository(_SqlRepository, FileRepository):

    async def get(self, file_id: uuid.UUID) -> FileRecord | None:
        async with self._scope() as session:
            row = await session.get(File, file_id)
            return _to_record(row, FileRecord) if row else None

    async def add(self, record: FileRecord) -> FileRecord:
        async with self._scope() as session:
            row = File(**_to_values(record, skip_none=True))
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _to_record(row, FileRecord)

    async def list_active(
        self,
        organization_id: uuid.UUID,
        *,
        modified_since: datetime | None = None,
        after_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[FileRecord]:
        stmt = select(File).where(
            File.organization_id == organization_id,
            File.is_active.is_(True),
            File.is_deleted.is_(False),
        )
        if modified_since is not None:
            stmt = stmt.where(File.updated_at >= modified_since)
        if after_id is not None:
            stmt = stmt.where(File.id > after_id)
        stmt = stmt.order_by(File.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, FileRecord) for r in rows]

    async def list_needing_backup(self, limit: int) -> list[FileRecord]:
        stmt = (
            select(File)
            .where(File.needs_backup.is_(True), File.is_deleted.is_(False))
            .order_by(File.updated_at)
            .limit(limit)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, FileRecord) for r in rows]

    async def set_needs_backup(self, file_id: uuid.UUID, flag: bool) -> None:
        async with self._scope() as session:
            await session.execute(
                update(File).where(File.id == file_id).values(needs_backup=flag)
            )

    async def soft_delete(self, file_id: uuid.UUID) -> FileRecord | None:
        async with self._scope() as session:
            row = await session.get(File, file_id)
            if row is None:
                return None
            row.is_deleted = True
            row.is_active = False
            await session.flush()
            await session.refresh(row)
            return _to_record(row, FileRecord)

    async def get_policy(self, organization_id: uuid.UUID) -> PolicyRecord | None:
        async with self._scope() as session:
            row = await session.get(StorageConfiguration, organization_id)
            return _to_record(row, PolicyRecord) if row else None

    async def adjust_usage(self, organization_id: uuid.UUID, delta_bytes: int) -> None:
        async with self._scope() as session:
            await session.execute(
                update(StorageConfiguration)
                .where(StorageConfiguration.organization_id == organization_id)
                .values(
                    storage_used_bytes=func.greatest(
                        StorageConfiguration.storage_used_bytes + delta_bytes, 0
                    )
                )
            )

    async def list_sync_enabled_organizations(self) -> list[uuid.UUID]:
        stmt = select(StorageConfiguration.organization_id).where(
            StorageConfiguration.storage_type == "hybrid",
            StorageConfiguration.hybrid_sync_enabled.is_(True),
        )
        async with self._scope() as session:
            return list((await session.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Storage locations + advisory locks
# ---------------------------------------------------------------------------

class SqlLocationRepository(_SqlRepository, LocationRepository):

    async def list_for_file(self, file_id: uuid.UUID) -> list[LocationRecord]:
        stmt = (
            select(StorageLocation)
            .where(StorageLocation.file_id == file_id)
            .order_by(StorageLocation.is_primary.desc(), StorageLocation.created_at)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, LocationRecord) for r in rows]

    async def add(self, record: LocationRecord) -> None:
        async with self._scope() as session:
            session.add(StorageLocation(**_to_values(record, skip_none=True)))

    async def remove(self, location_id: uuid.UUID) -> None:
        async with self._scope() as session:
            await session.execute(
                delete(StorageLocation).where(StorageLocation.id == location_id)
            )

    async def set_primary(self, file_id: uuid.UUID, location_id: uuid.UUID) -> None:
        async with self._scope() as session:
            # Demote first: the partial unique index allows one primary per file
            await session.execute(
                update(StorageLocation)
                .where(
                    StorageLocation.file_id == file_id,
                    StorageLocation.id != location_id,
                )
                .values(is_primary=False, storage_class=StorageClass.BACKUP.value)
            )
            await session.execute(
                update(StorageLocation)
                .where(StorageLocation.id == location_id)
                .values(is_primary=True, storage_class=StorageClass.STANDARD.value)
            )

    async def try_lock(self, file_id: uuid.UUID, owner: str, ttl_seconds: int) -> bool:
        now = datetime.now(timezone.utc)
        async with self._scope() as session:
            await session.execute(
                delete(FileLock).where(
                    FileLock.file_id == file_id,
                    FileLock.expires_at < now,
                )
            )
            result = await session.execute(
                pg_insert(FileLock)
                .values(
                    file_id=file_id,
                    owner=owner,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
                .on_conflict_do_nothing(index_elements=[FileLock.file_id])
                .returning(FileLock.file_id)
            )
            return result.scalar_one_or_none() is not None

    async def unlock(self, file_id: uuid.UUID, owner: str) -> None:
        async with self._scope() as session:
            await session.execute(
                delete(FileLock).where(FileLock.file_id == file_id, FileLock.owner == owner)
            )


# ---------------------------------------------------------------------------
# Storage sync jobs
# ---------------------------------------------------------------------------

class SqlSyncJobRepository(_SqlRepository, SyncJobRepository):

    async def add(self, record: SyncJobRecord) -> None:
        async with self._scope() as session:
            session.add(StorageSyncJob(**_to_values(record, skip_none=True)))

    async def get(self, sync_job_id: uuid.UUID) -> SyncJobRecord | None:
        async with self._scope() as session:
            row = await session.get(StorageSyncJob, sync_job_id)
            return _to_record(row, SyncJobRecord) if row else None

    async def save(self, record: SyncJobRecord) -> None:
        values = {k: v for k, v in _to_values(record).items() if k not in _IMMUTABLE}
        async with self._scope() as session:
            await session.execute(
                update(StorageSyncJob).where(StorageSyncJob.id == record.id).values(**values)
            )

    async def last_completed(
        self,
        organization_id: uuid.UUID,
        sync_types: Iterable[SyncType] = (SyncType.FULL, SyncType.INCREMENTAL),
    ) -> SyncJobRecord | None:
        stmt = (
            select(StorageSyncJob)
            .where(
                StorageSyncJob.organization_id == organization_id,
                StorageSyncJob.status == SyncStatus.COMPLETED.value,
                StorageSyncJob.sync_type.in_([SyncType(t).value for t in sync_types]),
            )
            .order_by(StorageSyncJob.completed_at.desc())
            .limit(1)
        )
        async with self._scope() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_record(row, SyncJobRecord) if row else None

    async def has_open_file_sync(self, file_id: uuid.UUID) -> bool:
        stmt = (
            select(func.count())
            .select_from(StorageSyncJob)
            .where(
                StorageSyncJob.file_id == file_id,
                StorageSyncJob.sync_type == SyncType.FILE.value,
                StorageSyncJob.status.in_([SyncStatus.PENDING.value, SyncStatus.RUNNING.value]),
            )
        )
        async with self._scope() as session:
            return (await session.scalar(stmt)) > 0


# ---------------------------------------------------------------------------
# Extraction jobs
# ---------------------------------------------------------------------------

class SqlExtractionJobRepository(_SqlRepository, ExtractionJobRepository):

    async def add(self, record: ExtractionJobRecord) -> ExtractionJobRecord:
        async with self._scope() as session:
            row = TextExtractionJob(**_to_values(record, skip_none=True))
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _to_record(row, ExtractionJobRecord)

    async def get(self, job_id: uuid.UUID) -> ExtractionJobRecord | None:
        async with self._scope() as session:
            row = await session.get(TextExtractionJob, job_id)
            return _to_record(row, ExtractionJobRecord) if row else None

    async def save(self, record: ExtractionJobRecord) -> None:
        values = {k: v for k, v in _to_values(record).items() if k not in _IMMUTABLE}
        async with self._scope() as session:
            await session.execute(
                update(TextExtractionJob)
                .where(TextExtractionJob.id == record.id)
                .values(**values)
            )

    async def claim(
        self,
        job_id: uuid.UUID,
        started_at: datetime,
    ) -> ExtractionJobRecord | None:
        stmt = (
            update(TextExtractionJob)
            .where(
                TextExtractionJob.id == job_id,
                TextExtractionJob.status == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=started_at,
                completed_at=None,
            )
            .returning(TextExtractionJob)
        )
        try:
            async with self._scope() as session:
                row = (await session.execute(stmt)).scalars().first()
                return _to_record(row, ExtractionJobRecord) if row else None
        except IntegrityError:
            logger.info("Claim rejected, (file, method) already processing | job=%s", job_id)
            return None

    async def list_pending(self, limit: int) -> list[ExtractionJobRecord]:
        stmt = (
            select(TextExtractionJob)
            .where(TextExtractionJob.status == JobStatus.PENDING.value)
            .order_by(TextExtractionJob.created_at)
            .limit(limit)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, ExtractionJobRecord) for r in rows]

    async def list_stale_processing(
        self,
        started_before: datetime,
        limit: int,
    ) -> list[ExtractionJobRecord]:
        stmt = (
            select(TextExtractionJob)
            .where(
                TextExtractionJob.status == JobStatus.PROCESSING.value,
                TextExtractionJob.started_at < started_before,
            )
            .limit(limit)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, ExtractionJobRecord) for r in rows]


# ---------------------------------------------------------------------------
# Extracted content
# ---------------------------------------------------------------------------

class SqlContentRepository(_SqlRepository, ContentRepository):

    async def upsert(self, record: ContentRecord) -> None:
        values = {k: v for k, v in _to_values(record).items() if k != "updated_at"}
        stmt = pg_insert(ExtractedTextContent).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_extracted_text_file_type",
            set_={
                **{
                    key: getattr(stmt.excluded, key)
                    for key in values
                    if key not in ("file_id", "content_type")
                },
                "updated_at": func.now(),
            },
        )
        async with self._scope() as session:
            await session.execute(stmt)

    async def get(
        self,
        file_id: uuid.UUID,
        content_type: str = "full_text",
    ) -> ContentRecord | None:
        stmt = select(ExtractedTextContent).where(
            ExtractedTextContent.file_id == file_id,
            ExtractedTextContent.content_type == content_type,
        )
        async with self._scope() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_record(row, ContentRecord) if row else None


# ---------------------------------------------------------------------------
# Search index status
# ---------------------------------------------------------------------------

class SqlIndexStatusRepository(_SqlRepository, IndexStatusRepository):

    async def get(self, file_id: uuid.UUID) -> IndexStatusRecord | None:
        async with self._scope() as session:
            row = await session.get(SearchIndexStatus, file_id)
            return _to_record(row, IndexStatusRecord) if row else None

    async def save(self, record: IndexStatusRecord) -> None:
        values = {k: v for k, v in _to_values(record).items() if k != "updated_at"}
        stmt = pg_insert(SearchIndexStatus).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SearchIndexStatus.file_id],
            set_={
                **{key: getattr(stmt.excluded, key) for key in values if key != "file_id"},
                "updated_at": func.now(),
            },
        )
        async with self._scope() as session:
            await session.execute(stmt)

    async def list_failed(self, max_retries: int, limit: int) -> list[IndexStatusRecord]:
        stmt = (
            select(SearchIndexStatus)
            .where(
                SearchIndexStatus.status == "index_failed",
                SearchIndexStatus.retry_count < max_retries,
            )
            .order_by(SearchIndexStatus.updated_at)
            .limit(limit)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(r, IndexStatusRecord) for r in rows]
