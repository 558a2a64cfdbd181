"""
Domain records — immutable views of the persisted rows.

Core components never hold ORM instances: repositories map rows to these
frozen dataclasses, and every state change is expressed as a new record
(dataclasses.replace) handed back to the owning repository.

Field names mirror the ORM attribute names in doclib.models.files and
doclib.models.processing so the mapping stays mechanical.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar

from doclib.processing.strategy import ExtractionMethod


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StorageBackend(str, Enum):
    OBJECT_STORE = "object_store"
    LOCAL        = "local"


class StorageType(str, Enum):
    LOCAL        = "local"
    OBJECT_STORE = "object_store"
    HYBRID       = "hybrid"


class StorageClass(str, Enum):
    STANDARD = "standard"
    BACKUP   = "backup"


class Visibility(str, Enum):
    PRIVATE      = "private"
    ORGANIZATION = "organization"
    PUBLIC       = "public"


class JobStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class IndexState(str, Enum):
    NOT_INDEXED  = "not_indexed"
    INDEXING     = "indexing"
    INDEXED      = "indexed"
    INDEX_FAILED = "index_failed"


class SyncType(str, Enum):
    FULL        = "full"
    INCREMENTAL = "incremental"
    FILE        = "file"


class SyncStatus(str, Enum):
    PENDING   = "pending"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Files and storage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileRecord:
    id:              uuid.UUID
    organization_id: uuid.UUID
    original_name:   str
    mime_type:       str
    size_bytes:      int
    file_type:       str
    checksum_sha256: str
    folder_id:       uuid.UUID | None = None
    visibility:      Visibility = Visibility.PRIVATE
    title:           str | None = None
    author:          str | None = None
    department:      str | None = None
    tags:            list[str] = field(default_factory=list)
    file_metadata:   dict = field(default_factory=dict)
    is_active:       bool = True
    is_deleted:      bool = False
    needs_backup:    bool = False
    created_at:      datetime | None = None
    updated_at:      datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {"visibility": Visibility}

    @property
    def is_live(self) -> bool:
        return self.is_active and not self.is_deleted


@dataclass(frozen=True)
class LocationRecord:
    """One physical copy of a file's bytes. `locator` is backend-opaque."""
    id:              uuid.UUID
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    backend:         StorageBackend
    locator:         str
    is_primary:      bool
    storage_class:   StorageClass
    checksum_sha256: str
    size_bytes:      int
    created_at:      datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {
        "backend": StorageBackend,
        "storage_class": StorageClass,
    }


@dataclass(frozen=True)
class PolicyRecord:
    organization_id:     uuid.UUID
    storage_type:        StorageType
    hybrid_primary:      StorageBackend = StorageBackend.OBJECT_STORE
    hybrid_sync_enabled: bool = True
    max_file_size_bytes: int | None = None
    allowed_mime_types:  list[str] = field(default_factory=list)
    storage_quota_bytes: int | None = None
    storage_used_bytes:  int = 0

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {
        "storage_type": StorageType,
        "hybrid_primary": StorageBackend,
    }

    def backends(self) -> tuple[StorageBackend, StorageBackend | None]:
        """(primary, backup) destinations for this policy."""
        if self.storage_type == StorageType.LOCAL:
            return StorageBackend.LOCAL, None
        if self.storage_type == StorageType.OBJECT_STORE:
            return StorageBackend.OBJECT_STORE, None
        primary = StorageBackend(self.hybrid_primary)
        backup = (
            StorageBackend.LOCAL
            if primary == StorageBackend.OBJECT_STORE
            else StorageBackend.OBJECT_STORE
        )
        return primary, backup

    def allows_mime_type(self, mime_type: str) -> bool:
        return not self.allowed_mime_types or mime_type in self.allowed_mime_types


@dataclass(frozen=True)
class SyncJobRecord:
    id:              uuid.UUID
    organization_id: uuid.UUID
    sync_type:       SyncType
    triggered_by:    str
    file_id:         uuid.UUID | None = None
    status:          SyncStatus = SyncStatus.PENDING
    files_total:     int = 0
    files_processed: int = 0
    error_message:   str | None = None
    error_code:      str | None = None
    created_at:      datetime | None = None
    started_at:      datetime | None = None
    completed_at:    datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {
        "sync_type": SyncType,
        "status": SyncStatus,
    }


# ---------------------------------------------------------------------------
# Extraction and search
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionJobRecord:
    id:              uuid.UUID
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    method:          ExtractionMethod
    priority:        int
    status:          JobStatus = JobStatus.PENDING
    retry_count:     int = 0
    max_retries:     int = 3
    error_message:   str | None = None
    error_code:      str | None = None
    job_metadata:    dict = field(default_factory=dict)
    created_at:      datetime | None = None
    started_at:      datetime | None = None
    completed_at:    datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {
        "method": ExtractionMethod,
        "status": JobStatus,
    }


@dataclass(frozen=True)
class ContentRecord:
    file_id:             uuid.UUID
    organization_id:     uuid.UUID
    full_text:           str
    word_count:          int
    character_count:     int
    text_hash:           str
    extraction_method:   ExtractionMethod
    content_type:        str = "full_text"
    confidence_score:    float | None = None
    page_count:          int | None = None
    extraction_metadata: dict = field(default_factory=dict)
    updated_at:          datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {
        "extraction_method": ExtractionMethod,
    }


@dataclass(frozen=True)
class IndexStatusRecord:
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    status:          IndexState = IndexState.NOT_INDEXED
    retry_count:     int = 0
    last_error:      str | None = None
    last_indexed_at: datetime | None = None
    updated_at:      datetime | None = None

    ENUM_FIELDS: ClassVar[dict[str, type[Enum]]] = {"status": IndexState}
