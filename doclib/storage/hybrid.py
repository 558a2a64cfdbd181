"""
Hybrid Storage Manager

Turns an organization's storage policy into durable copies of a file and keeps
those copies reconciled.

Policies (library.storage_configurations.storage_type):
  local          one copy on the local filesystem
  object_store   one copy in the S3-compatible object store
  hybrid         primary on `hybrid_primary`, backup on the other backend

Write path (store_file):
  1. Policy checks — size, mime type, quota — before any byte is written.
  2. SHA-256 of the content; becomes the reference for drift detection.
  3. Primary write. Failure is fatal and surfaces to the caller.
  4. Backup write (hybrid only), best-effort. A failure does not fail the
     upload: the result carries BackupDeferred, the file is flagged
     needs_backup, and the caller owes a `file` sync (schedule_deferred_backup).

Reconciliation (sync_storage -> SyncJob -> process_sync_job):
  full         every live file of the organization
  incremental  files modified since the last completed sync (full if none)
  file         one file
  Per file: verify recorded checksums, drop rows whose bytes are confirmed
  gone, promote an intact copy if the primary is gone, create the copies the
  policy expects, move the primary to the preferred backend, prune copies on
  backends the policy no longer uses. Every copy written is read back and
  hashed; a mismatch is DriftError and the job ends failed. Nothing is ever
  silently overwritten.

Concurrency:
  All location-mutating work for one file runs under file_lock(), a logical
  advisory lock backed by a unique marker row (library.file_locks).
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import (
    DriftError,
    LockUnavailableError,
    NotFoundError,
    PipelineError,
    PolicyViolationError,
    QuotaExceededError,
    TransientIOError,
)
from doclib.models.records import (
    FileRecord,
    LocationRecord,
    PolicyRecord,
    StorageBackend,
    StorageClass,
    StorageType,
    SyncJobRecord,
    SyncStatus,
    SyncType,
    Visibility,
)
from doclib.processing.strategy import file_type_for
from doclib.repositories.base import FileRepository, LocationRepository, SyncJobRepository
from doclib.storage.base import StorageProvider
from doclib.storage.s3 import ObjectRef, ObjectStoreProvider
from doclib.workers.jobs import SyncJob
from doclib.workers.queue import JobQueue

logger = logging.getLogger(__name__)
oplog = logging.getLogger("doclib.storage.operations")

_SYNC_PAGE_SIZE = 500


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackupStored:
    location: LocationRecord


@dataclass(frozen=True)
class BackupDeferred:
    """The backup write failed; a `file` sync must be scheduled for it."""
    file_id: uuid.UUID
    backend: StorageBackend
    reason:  str


@dataclass(frozen=True)
class StoreResult:
    file:             FileRecord
    primary_location: LocationRecord
    backup:           BackupStored | BackupDeferred | None
    checksum:         str

    @property
    def file_id(self) -> uuid.UUID:
        return self.file.id

    @property
    def backup_location(self) -> LocationRecord | None:
        return self.backup.location if isinstance(self.backup, BackupStored) else None

    @property
    def backup_deferred(self) -> bool:
        return isinstance(self.backup, BackupDeferred)


@dataclass
class FileSyncOutcome:
    created:  int = 0
    removed:  int = 0
    promoted: int = 0


@dataclass
class SyncReport:
    sync_job_id:     uuid.UUID
    status:          SyncStatus
    files_total:     int = 0
    files_processed: int = 0
    created:         int = 0
    removed:         int = 0
    promoted:        int = 0
    drifted:         list[str] = field(default_factory=list)
    errors:          list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class HybridStorageManager:

    def __init__(
        self,
        providers: dict[StorageBackend, StorageProvider],
        files: FileRepository,
        locations: LocationRepository,
        sync_jobs: SyncJobRepository,
        queue: JobQueue,
        cfg: Settings | None = None,
    ) -> None:
        self._providers = providers
        self._files = files
        self._locations = locations
        self._sync_jobs = sync_jobs
        self._queue = queue
        self._cfg = cfg or default_settings
        self._owner = f"storage-{uuid.uuid4().hex[:12]}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _provider(self, backend: StorageBackend) -> StorageProvider:
        try:
            return self._providers[StorageBackend(backend)]
        except KeyError as exc:
            raise PolicyViolationError(
                f"No provider configured for backend {backend!r}",
                code="BACKEND_UNAVAILABLE",
            ) from exc

    async def policy_for(self, organization_id: uuid.UUID) -> PolicyRecord:
        policy = await self._files.get_policy(organization_id)
        if policy is not None:
            return policy
        return PolicyRecord(
            organization_id=organization_id,
            storage_type=StorageType(self._cfg.default_storage_type),
            hybrid_primary=StorageBackend(self._cfg.default_hybrid_primary),
            max_file_size_bytes=self._cfg.default_max_file_size_bytes,
        )

    @staticmethod
    def _enforce_policy(policy: PolicyRecord, size: int, mime_type: str) -> None:
        if policy.max_file_size_bytes is not None and size > policy.max_file_size_bytes:
            raise PolicyViolationError(
                f"File of {size} bytes exceeds the {policy.max_file_size_bytes} byte limit",
                code="FILE_TOO_LARGE",
            )
        if not policy.allows_mime_type(mime_type):
            raise PolicyViolationError(
                f"Mime type {mime_type!r} is not allowed for this organization",
                code="MIME_NOT_ALLOWED",
            )
        if (
            policy.storage_quota_bytes is not None
            and policy.storage_used_bytes + size > policy.storage_quota_bytes
        ):
            raise QuotaExceededError(
                f"Storage quota of {policy.storage_quota_bytes} bytes exceeded "
                f"(used {policy.storage_used_bytes}, file {size})"
            )

    @staticmethod
    def _hint(file: FileRecord) -> str:
        return f"{file.organization_id}/{file.id}/{file.original_name}"

    def _log_op(self, operation: str, file: FileRecord, success: bool, **details) -> None:
        oplog.info(
            "Storage op | op=%s org=%s file=%s success=%s %s",
            operation, file.organization_id, file.id, success,
            " ".join(f"{k}={v}" for k, v in details.items()),
        )

    async def _discard(self, backend: StorageBackend, locator: str) -> None:
        """Best-effort removal of bytes no location row will ever point at."""
        try:
            await self._provider(backend).delete(locator)
        except PipelineError as exc:
            logger.error(
                "Orphaned object left behind | backend=%s locator=%s error=%s",
                backend.value, locator, exc,
            )

    @asynccontextmanager
    async def file_lock(self, file_id: uuid.UUID) -> AsyncIterator[None]:
        """
        Per-file advisory lock. Waits (with backoff) up to
        file_lock_wait_seconds, then raises LockUnavailableError.
        """
        owner = f"{self._owner}:{uuid.uuid4().hex[:8]}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._cfg.file_lock_wait_seconds
        delay = 0.05
        while not await self._locations.try_lock(file_id, owner, self._cfg.file_lock_ttl_seconds):
            if loop.time() >= deadline:
                raise LockUnavailableError(f"File {file_id} is locked by another operation")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 1.0)
        try:
            yield
        finally:
            await self._locations.unlock(file_id, owner)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def store_file(
        self,
        organization_id: uuid.UUID,
        data: bytes,
        name: str,
        mime_type: str,
        folder_id: uuid.UUID | None = None,
        metadata: dict | None = None,
        *,
        title: str | None = None,
        author: str | None = None,
        department: str | None = None,
        tags: list[str] | None = None,
        visibility: Visibility = Visibility.PRIVATE,
    ) -> StoreResult:
        policy = await self.policy_for(organization_id)
        self._enforce_policy(policy, len(data), mime_type)

        checksum = sha256_hex(data)
        primary_backend, backup_backend = policy.backends()
        file = FileRecord(
            id=uuid.uuid4(),
            organization_id=organization_id,
            original_name=name,
            mime_type=mime_type,
            size_bytes=len(data),
            file_type=file_type_for(mime_type),
            checksum_sha256=checksum,
            folder_id=folder_id,
            visibility=visibility,
            title=title,
            author=author,
            department=department,
            tags=list(tags or []),
            file_metadata=dict(metadata or {}),
        )
        hint = self._hint(file)

        async with self.file_lock(file.id):
            # Primary write: failure propagates and fails the upload
            locator = await self._provider(primary_backend).write(data, hint, mime_type)
            primary = LocationRecord(
                id=uuid.uuid4(),
                file_id=file.id,
                organization_id=organization_id,
                backend=primary_backend,
                locator=locator,
                is_primary=True,
                storage_class=StorageClass.STANDARD,
                checksum_sha256=checksum,
                size_bytes=len(data),
            )
            try:
                file = await self._files.add(file)
                await self._locations.add(primary)
            except Exception:
                await self._discard(primary_backend, locator)
                raise
            self._log_op("store.primary", file, True, backend=primary_backend.value)

            backup: BackupStored | BackupDeferred | None = None
            if backup_backend is not None:
                backup = await self._write_backup(file, data, backup_backend)

        await self._files.adjust_usage(organization_id, len(data))
        logger.info(
            "File stored | org=%s file=%s size=%d primary=%s backup=%s",
            organization_id, file.id, len(data), primary_backend.value,
            type(backup).__name__ if backup else "none",
        )
        return StoreResult(file=file, primary_location=primary, backup=backup, checksum=checksum)

    async def _write_backup(
        self,
        file: FileRecord,
        data: bytes,
        backend: StorageBackend,
    ) -> BackupStored | BackupDeferred:
        locator: str | None = None
        try:
            locator = await self._provider(backend).write(data, self._hint(file), file.mime_type)
            location = LocationRecord(
                id=uuid.uuid4(),
                file_id=file.id,
                organization_id=file.organization_id,
                backend=backend,
                locator=locator,
                is_primary=False,
                storage_class=StorageClass.BACKUP,
                checksum_sha256=file.checksum_sha256,
                size_bytes=len(data),
            )
            await self._locations.add(location)
        except PipelineError as exc:
            return await self._defer_backup(file, backend, exc)
        except Exception as exc:
            # Location row not written: the copy is unreachable, drop it
            if locator is not None:
                await self._discard(backend, locator)
            return await self._defer_backup(file, backend, exc)

        self._log_op("store.backup", file, True, backend=backend.value)
        return BackupStored(location=location)

    async def _defer_backup(
        self,
        file: FileRecord,
        backend: StorageBackend,
        exc: Exception,
    ) -> BackupDeferred:
        logger.warning(
            "Backup write deferred | file=%s backend=%s error=%s",
            file.id, backend.value, exc,
        )
        self._log_op("store.backup", file, False, backend=backend.value, error=type(exc).__name__)
        await self._files.set_needs_backup(file.id, True)
        return BackupDeferred(file_id=file.id, backend=backend, reason=str(exc))

    async def schedule_deferred_backup(self, result: StoreResult) -> uuid.UUID | None:
        """Create the `file` sync owed by a deferred backup. None if nothing is owed."""
        if not isinstance(result.backup, BackupDeferred):
            return None
        return await self.sync_storage(
            result.file.organization_id,
            SyncType.FILE,
            file_id=result.file_id,
            triggered_by="backup_deferred",
        )

    # ------------------------------------------------------------------
    # Read / delete
    # ------------------------------------------------------------------

    async def get_file(self, file_id: uuid.UUID) -> FileRecord | None:
        return await self._files.get(file_id)

    async def retrieve_file(self, file_id: uuid.UUID) -> bytes:
        """Bytes of a file: primary first, then any backup."""
        locations = await self._locations.list_for_file(file_id)
        if not locations:
            raise NotFoundError(f"File {file_id} has no storage locations")

        last_exc: PipelineError | None = None
        for location in locations:
            try:
                return await self._provider(location.backend).read(location.locator)
            except (TransientIOError, NotFoundError) as exc:
                logger.warning(
                    "Read failed, trying next copy | file=%s backend=%s error=%s",
                    file_id, location.backend.value, exc,
                )
                last_exc = exc
        raise last_exc

    async def presign(self, file_id: uuid.UUID, ttl_seconds: int = 900) -> str:
        locations = await self._locations.list_for_file(file_id)
        primary = next((loc for loc in locations if loc.is_primary), None)
        if primary is None:
            raise NotFoundError(f"File {file_id} has no primary location")
        return await self._provider(primary.backend).presign(primary.locator, ttl_seconds)

    async def object_reference(self, file_id: uuid.UUID) -> ObjectRef | None:
        """Bucket/key of an object-store copy, if the file has one."""
        for location in await self._locations.list_for_file(file_id):
            provider = self._providers.get(location.backend)
            if isinstance(provider, ObjectStoreProvider):
                return provider.object_ref(location.locator)
        return None

    async def delete_file(self, file_id: uuid.UUID) -> FileRecord | None:
        """
        Soft-delete the record, then delete each copy. A location row is only
        removed once its bytes are confirmed deleted; failures leave the row,
        and deleting the file again retries them.
        """
        existing = await self._files.get(file_id)
        if existing is None:
            return None

        async with self.file_lock(file_id):
            file = existing if existing.is_deleted else await self._files.soft_delete(file_id)
            for location in await self._locations.list_for_file(file_id):
                try:
                    await self._provider(location.backend).delete(location.locator)
                except PipelineError as exc:
                    logger.error(
                        "Copy not deleted, location kept | file=%s backend=%s error=%s",
                        file_id, location.backend.value, exc,
                    )
                    self._log_op("delete", file, False, backend=location.backend.value)
                    continue
                await self._locations.remove(location.id)
                self._log_op("delete", file, True, backend=location.backend.value)

        if not existing.is_deleted:
            await self._files.adjust_usage(file.organization_id, -file.size_bytes)
        return file

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_storage(
        self,
        organization_id: uuid.UUID,
        sync_type: SyncType | str,
        file_id: uuid.UUID | None = None,
        triggered_by: str = "manual",
    ) -> uuid.UUID:
        sync_type = SyncType(sync_type)
        if sync_type == SyncType.FILE and file_id is None:
            raise ValueError("A file sync needs a file_id")

        policy = await self.policy_for(organization_id)
        primary_backend, backup_backend = policy.backends()
        job = SyncJobRecord(
            id=uuid.uuid4(),
            organization_id=organization_id,
            sync_type=sync_type,
            triggered_by=triggered_by,
            file_id=file_id,
            status=SyncStatus.PENDING,
            created_at=_utcnow(),
        )
        await self._sync_jobs.add(job)

        try:
            await self._queue.submit(
                SyncJob(sync_job_id=job.id, organization_id=organization_id),
                self._cfg.sync_priority,
            )
        except TransientIOError as exc:
            await self._sync_jobs.save(replace(
                job,
                status=SyncStatus.FAILED,
                error_message=f"enqueue failed: {exc}",
                error_code=exc.code,
                completed_at=_utcnow(),
            ))
            raise

        logger.info(
            "Storage sync scheduled | org=%s sync=%s type=%s file=%s source=%s target=%s",
            organization_id, job.id, sync_type.value, file_id,
            primary_backend.value, backup_backend.value if backup_backend else "-",
        )
        return job.id

    async def get_sync_job(self, sync_job_id: uuid.UUID) -> SyncJobRecord | None:
        return await self._sync_jobs.get(sync_job_id)

    async def mark_sync_failed(self, sync_job_id: uuid.UUID, message: str, code: str) -> None:
        """Close out a sync job whose run was interrupted (timeout, crash)."""
        job = await self._sync_jobs.get(sync_job_id)
        if job is None or job.status not in (SyncStatus.PENDING, SyncStatus.RUNNING):
            return
        await self._sync_jobs.save(replace(
            job,
            status=SyncStatus.FAILED,
            error_message=message[:2000],
            error_code=code,
            completed_at=_utcnow(),
        ))
        logger.error("Storage sync aborted | sync=%s code=%s error=%s", sync_job_id, code, message)

    async def process_sync_job(self, sync_job_id: uuid.UUID) -> SyncReport:
        job = await self._sync_jobs.get(sync_job_id)
        if job is None:
            raise NotFoundError(f"Sync job {sync_job_id} not found")
        if job.status not in (SyncStatus.PENDING, SyncStatus.RUNNING):
            logger.info("Sync job already finished | sync=%s status=%s", job.id, job.status.value)
            return SyncReport(sync_job_id=job.id, status=job.status)

        job = replace(job, status=SyncStatus.RUNNING, started_at=_utcnow(), files_processed=0)
        await self._sync_jobs.save(job)

        policy = await self.policy_for(job.organization_id)
        files = await self._files_for_sync(job)
        job = replace(job, files_total=len(files))
        await self._sync_jobs.save(job)

        report = SyncReport(sync_job_id=job.id, status=SyncStatus.RUNNING, files_total=len(files))
        for file in files:
            try:
                async with self.file_lock(file.id):
                    outcome = await self._reconcile_file(file, policy)
                report.created += outcome.created
                report.removed += outcome.removed
                report.promoted += outcome.promoted
            except DriftError as exc:
                logger.error("Storage drift | sync=%s file=%s error=%s", job.id, file.id, exc)
                report.drifted.append(f"{file.id}: {exc}")
            except (TransientIOError, NotFoundError, QuotaExceededError, PolicyViolationError) as exc:
                logger.warning("File sync failed | sync=%s file=%s error=%s", job.id, file.id, exc)
                report.errors.append(f"{file.id}: {exc}")

            report.files_processed += 1
            job = replace(job, files_processed=report.files_processed)
            await self._sync_jobs.save(job)

        if report.drifted:
            status, code = SyncStatus.FAILED, DriftError.code
            message = "; ".join(report.drifted + report.errors)
        elif report.errors:
            status, code = SyncStatus.FAILED, "SYNC_ERRORS"
            message = "; ".join(report.errors)
        else:
            status, code, message = SyncStatus.COMPLETED, None, None

        report.status = status
        await self._sync_jobs.save(replace(
            job,
            status=status,
            error_code=code,
            error_message=message[:2000] if message else None,
            completed_at=_utcnow(),
        ))
        logger.info(
            "Storage sync finished | sync=%s status=%s files=%d created=%d removed=%d "
            "promoted=%d drifted=%d errors=%d",
            job.id, status.value, report.files_processed, report.created,
            report.removed, report.promoted, len(report.drifted), len(report.errors),
        )
        return report

    async def _files_for_sync(self, job: SyncJobRecord) -> list[FileRecord]:
        if job.sync_type == SyncType.FILE:
            file = await self._files.get(job.file_id)
            return [file] if file is not None and file.is_live else []

        since: datetime | None = None
        if job.sync_type == SyncType.INCREMENTAL:
            # Only organization-wide syncs move the watermark
            last = await self._sync_jobs.last_completed(
                job.organization_id, (SyncType.FULL, SyncType.INCREMENTAL),
            )
            since = last.started_at if last is not None else None

        files: list[FileRecord] = []
        after_id: uuid.UUID | None = None
        while True:
            page = await self._files.list_active(
                job.organization_id,
                modified_since=since,
                after_id=after_id,
                limit=_SYNC_PAGE_SIZE,
            )
            files.extend(page)
            if len(page) < _SYNC_PAGE_SIZE:
                return files
            after_id = page[-1].id

    async def _reconcile_file(self, file: FileRecord, policy: PolicyRecord) -> FileSyncOutcome:
        outcome = FileSyncOutcome()
        primary_backend, backup_backend = policy.backends()
        expected = {primary_backend} | ({backup_backend} if backup_backend else set())

        locations = await self._locations.list_for_file(file.id)
        for location in locations:
            if location.checksum_sha256 != file.checksum_sha256:
                raise DriftError(
                    f"{location.backend.value} copy records checksum "
                    f"{location.checksum_sha256[:12]}, file has {file.checksum_sha256[:12]}"
                )

        present: list[LocationRecord] = []
        for location in locations:
            if await self._provider(location.backend).exists(location.locator):
                present.append(location)
            else:
                # Bytes confirmed gone: the row may go too
                await self._locations.remove(location.id)
                outcome.removed += 1
                self._log_op("sync.missing", file, True, backend=location.backend.value)

        source = next((loc for loc in present if loc.is_primary), None) or next(iter(present), None)
        if source is None:
            raise DriftError("no intact copy left on any backend")

        data = await self._provider(source.backend).read(source.locator)
        if sha256_hex(data) != file.checksum_sha256:
            raise DriftError(f"{source.backend.value} copy content does not match recorded checksum")

        if not source.is_primary:
            await self._locations.set_primary(file.id, source.id)
            source = replace(source, is_primary=True, storage_class=StorageClass.STANDARD)
            outcome.promoted += 1

        by_backend: dict[StorageBackend, LocationRecord] = {loc.backend: loc for loc in present}
        by_backend[source.backend] = source
        for backend in expected - set(by_backend):
            by_backend[backend] = await self._copy_to(file, data, backend)
            outcome.created += 1

        primary = source
        preferred = by_backend.get(primary_backend)
        if preferred is not None and preferred.id != primary.id:
            await self._locations.set_primary(file.id, preferred.id)
            primary = preferred
            outcome.promoted += 1

        for location in present:
            if location.backend in expected or location.id == primary.id:
                continue
            await self._provider(location.backend).delete(location.locator)
            await self._locations.remove(location.id)
            outcome.removed += 1
            self._log_op("sync.prune", file, True, backend=location.backend.value)

        if file.needs_backup:
            await self._files.set_needs_backup(file.id, False)
        return outcome

    async def _copy_to(
        self,
        file: FileRecord,
        data: bytes,
        backend: StorageBackend,
    ) -> LocationRecord:
        """Write a backup copy, read it back, and refuse it on checksum mismatch."""
        provider = self._provider(backend)
        locator = await provider.write(data, self._hint(file), file.mime_type)
        written = await provider.read(locator)
        checksum = sha256_hex(written)
        if checksum != file.checksum_sha256:
            await self._discard(backend, locator)
            self._log_op("sync.copy", file, False, backend=backend.value, error="checksum")
            raise DriftError(
                f"{backend.value} copy checksum {checksum[:12]} != recorded "
                f"{file.checksum_sha256[:12]}"
            )

        location = LocationRecord(
            id=uuid.uuid4(),
            file_id=file.id,
            organization_id=file.organization_id,
            backend=backend,
            locator=locator,
            is_primary=False,
            storage_class=StorageClass.BACKUP,
            checksum_sha256=checksum,
            size_bytes=len(written),
        )
        await self._locations.add(location)
        self._log_op("sync.copy", file, True, backend=backend.value)
        return location

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def schedule_backup_retries(self, limit: int = 100) -> int:
        """Create `file` syncs for files still flagged needs_backup and not already owed one."""
        scheduled = 0
        for file in await self._files.list_needing_backup(limit):
            if await self._sync_jobs.has_open_file_sync(file.id):
                continue
            await self.sync_storage(
                file.organization_id, SyncType.FILE,
                file_id=file.id, triggered_by="backup_retry",
            )
            scheduled += 1
        return scheduled

    async def schedule_incremental_syncs(self) -> list[uuid.UUID]:
        """One incremental sync per hybrid organization with sync enabled."""
        return [
            await self.sync_storage(org, SyncType.INCREMENTAL, triggered_by="schedule")
            for org in await self._files.list_sync_enabled_organizations()
        ]

    async def usage(self, organization_id: uuid.UUID) -> dict:
        policy = await self.policy_for(organization_id)
        quota = policy.storage_quota_bytes
        used = policy.storage_used_bytes
        return {
            "organization_id": str(organization_id),
            "storage_type": policy.storage_type.value,
            "used_bytes": used,
            "quota_bytes": quota,
            "available_bytes": max(quota - used, 0) if quota is not None else None,
            "utilization_percent": round(used * 100 / quota, 2) if quota else None,
        }

    async def health_check(self) -> dict:
        results = await asyncio.gather(*(p.health_check() for p in self._providers.values()))
        return {
            backend.value: result
            for backend, result in zip(self._providers.keys(), results)
        }
