"""
SQLAlchemy ORM Models — Files & Storage

Tables (schema: library):
  files                   one row per uploaded document (soft-deleted via flags)
  storage_locations       physical copies of a file's bytes
  storage_configurations  per-organization storage policy + usage counters
  storage_sync_jobs       reconciliation runs between backends
  file_locks              per-file advisory lock markers

Using SQLAlchemy 2.x mapped classes for full async support. Core code never
touches these classes directly; doclib.repositories.sql maps them to the
frozen records in doclib.models.records.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# File — library.files
# ---------------------------------------------------------------------------

class File(Base):
    """
    A single uploaded document, owned by an organization.

    Storage locations and extraction state are deliberately NOT columns here:
    one file may have several physical copies and several extraction attempts.

    needs_backup is raised when a hybrid backup write was deferred and cleared
    by the storage sync that finally creates the copy.
    """

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "visibility IN ('private', 'organization', 'public')",
            name="files_visibility_check",
        ),
        Index("idx_files_org_updated", "organization_id", "updated_at"),
        Index(
            "idx_files_needs_backup", "needs_backup",
            postgresql_where=text("needs_backup AND NOT is_deleted"),
        ),
        {"schema": "library"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type:     Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes:    Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_type:     Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="pdf | image | document | spreadsheet | text | other",
    )
    checksum_sha256: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="SHA-256 of the uploaded bytes; reference for drift detection",
    )

    folder_id:  Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    visibility: Mapped[str] = mapped_column(Text, nullable=False, server_default="private")
    title:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    department: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags:       Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    file_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    is_active:    Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
    is_deleted:   Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    needs_backup: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<File id={self.id} org={self.organization_id} name={self.original_name!r}>"


# ---------------------------------------------------------------------------
# StorageLocation — library.storage_locations
# ---------------------------------------------------------------------------

class StorageLocation(Base):
    """
    One physical copy of a file.

    Exactly one row per file has is_primary = true; the partial unique index
    makes a second primary impossible.
    """

    __tablename__ = "storage_locations"
    __table_args__ = (
        CheckConstraint(
            "backend IN ('object_store', 'local')",
            name="storage_locations_backend_check",
        ),
        CheckConstraint(
            "storage_class IN ('standard', 'backup')",
            name="storage_locations_class_check",
        ),
        Index("idx_storage_locations_file", "file_id"),
        Index(
            "uq_storage_locations_primary", "file_id",
            unique=True,
            postgresql_where=text("is_primary"),
        ),
        {"schema": "library"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("library.files.id", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    backend:         Mapped[str]  = mapped_column(Text, nullable=False)
    locator:         Mapped[str]  = mapped_column(Text, nullable=False, comment="Backend-opaque")
    is_primary:      Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    storage_class:   Mapped[str]  = mapped_column(Text, nullable=False, server_default="standard")
    checksum_sha256: Mapped[str]  = mapped_column(Text, nullable=False)
    size_bytes:      Mapped[int]  = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# StorageConfiguration — library.storage_configurations
# ---------------------------------------------------------------------------

class StorageConfiguration(Base):
    """Per-organization storage policy. Missing row = configured defaults."""

    __tablename__ = "storage_configurations"
    __table_args__ = (
        CheckConstraint(
            "storage_type IN ('local', 'object_store', 'hybrid')",
            name="storage_configurations_type_check",
        ),
        {"schema": "library"},
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)

    storage_type:        Mapped[str]  = mapped_column(Text, nullable=False)
    hybrid_primary:      Mapped[str]  = mapped_column(Text, nullable=False, server_default="object_store")
    hybrid_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")

    max_file_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    allowed_mime_types:  Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    storage_quota_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    storage_used_bytes:  Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


# ---------------------------------------------------------------------------
# StorageSyncJob — library.storage_sync_jobs
# ---------------------------------------------------------------------------

class StorageSyncJob(Base):
    """
    A reconciliation run between storage backends.

    State machine (status column):
        pending   — row created, SyncJob enqueued
        running   — processor is reconciling files
        completed — every file matched its policy
        failed    — at least one file errored or drifted (see error_code)
        cancelled — operator stopped the run
    """

    __tablename__ = "storage_sync_jobs"
    __table_args__ = (
        CheckConstraint(
            "sync_type IN ('full', 'incremental', 'file')",
            name="storage_sync_jobs_type_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="storage_sync_jobs_status_check",
        ),
        Index("idx_storage_sync_jobs_org_status", "organization_id", "status"),
        {"schema": "library"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sync_type:       Mapped[str] = mapped_column(Text, nullable=False)
    triggered_by:    Mapped[str] = mapped_column(Text, nullable=False)
    file_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("library.files.id", ondelete="SET NULL"),
        nullable=True,
    )

    status:          Mapped[str] = mapped_column(Text, nullable=False, server_default="pending")
    files_total:     Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    files_processed: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    error_message:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# FileLock — library.file_locks
# ---------------------------------------------------------------------------

class FileLock(Base):
    """
    Advisory lock marker. The primary key on file_id is the mutual exclusion:
    a second INSERT for the same file fails until the holder deletes its row
    or the row expires.
    """

    __tablename__ = "file_locks"
    __table_args__ = ({"schema": "library"},)

    file_id:    Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    owner:      Mapped[str]       = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime]  = mapped_column(DateTime(timezone=True), nullable=False)
