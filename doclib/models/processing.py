"""
SQLAlchemy ORM Models — Extraction & Search Index Tracking

Tables (schema: library):
  text_extraction_jobs    one row per extraction attempt
  extracted_text_content  extraction output, upserted per (file, content_type)
  search_index_status     per-file searchability
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from doclib.models.files import Base


# ---------------------------------------------------------------------------
# TextExtractionJob — library.text_extraction_jobs
# ---------------------------------------------------------------------------

class TextExtractionJob(Base):
    """
    One attempt to extract text from one file.

    State machine (status column):
        pending    — recorded; waiting for a worker (or the recovery sweep)
        processing — claimed by exactly one worker
        completed  — content upserted, indexing enqueued
        failed     — retry budget spent or permanent error

    uq_extraction_jobs_processing is the at-most-one-processing guard: two
    rows for the same (file_id, method) can never both be 'processing'.
    """

    __tablename__ = "text_extraction_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="text_extraction_jobs_status_check",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 10",
            name="text_extraction_jobs_priority_check",
        ),
        CheckConstraint(
            "method IN ('direct_text', 'office_document', 'spreadsheet', "
            "'fast_pdf', 'sync_ocr', 'async_ocr')",
            name="text_extraction_jobs_method_check",
        ),
        Index(
            "uq_extraction_jobs_processing", "file_id", "method",
            unique=True,
            postgresql_where=text("status = 'processing'"),
        ),
        Index("idx_extraction_jobs_status_created", "status", "created_at"),
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

    method:   Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="5")
    status:   Mapped[str] = mapped_column(Text, nullable=False, server_default="pending")

    retry_count:   Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    max_retries:   Mapped[int] = mapped_column(Integer, nullable=False, server_default="3")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<TextExtractionJob id={self.id} file={self.file_id} "
            f"method={self.method} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ExtractedTextContent — library.extracted_text_content
# ---------------------------------------------------------------------------

class ExtractedTextContent(Base):
    """Extraction output. Re-extraction overwrites the row (upsert)."""

    __tablename__ = "extracted_text_content"
    __table_args__ = (
        UniqueConstraint("file_id", "content_type", name="uq_extracted_text_file_type"),
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
    content_type:    Mapped[str] = mapped_column(Text, nullable=False, server_default="full_text")

    full_text:         Mapped[str] = mapped_column(Text, nullable=False)
    word_count:        Mapped[int] = mapped_column(Integer, nullable=False)
    character_count:   Mapped[int] = mapped_column(Integer, nullable=False)
    text_hash:         Mapped[str] = mapped_column(Text, nullable=False)
    extraction_method: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_score:  Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    page_count:        Mapped[Optional[int]]   = mapped_column(Integer, nullable=True)
    extraction_metadata: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


# ---------------------------------------------------------------------------
# SearchIndexStatus — library.search_index_status
# ---------------------------------------------------------------------------

class SearchIndexStatus(Base):
    """Is this file's current content reflected in the search engine?"""

    __tablename__ = "search_index_status"
    __table_args__ = (
        CheckConstraint(
            "status IN ('not_indexed', 'indexing', 'indexed', 'index_failed')",
            name="search_index_status_check",
        ),
        Index("idx_search_index_status_state", "status", "retry_count"),
        {"schema": "library"},
    )

    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("library.files.id", ondelete="CASCADE"),
        primary_key=True,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status:      Mapped[str] = mapped_column(Text, nullable=False, server_default="not_indexed")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    last_error:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_indexed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
