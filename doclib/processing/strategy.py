"""
Extraction Strategy Engine

Pure decision function: file characteristics (mime type, size, name) in,
extraction plan out. No I/O, no clock, no randomness, so the same file
always gets the same plan and the whole rule table is unit-testable.

Rule precedence
───────────────
  1. Base plan: priority 5, direct text, synchronous, ~5s.
  2. Mime type + size select the method and its priority / estimate:

       PDF    > 10 MB   async OCR        7   async   ~30s
       PDF    >  1 MB   sync OCR         6   sync    ~10s
       PDF   <=  1 MB   fast PDF parser  5   sync     ~3s
       image  >  5 MB   async OCR        8   async   ~25s
       image <=  5 MB   sync OCR         7   sync    ~15s
       spreadsheet      spreadsheet      4   sync     ~3s
       word processor   office document  4   sync     ~2s
       text/*           direct text      3   sync     ~1s

     Spreadsheet types are matched before word-processor types: the OOXML
     spreadsheet mime type also contains "officedocument".

  3. Name contains an urgent-class keyword   -> priority + 2 (max 10)
  4. Name contains an archive-class keyword  -> priority - 1 (min 1)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

MB = 1024 * 1024

PRIORITY_MIN = 1
PRIORITY_MAX = 10
BASE_PRIORITY = 5

URGENT_KEYWORDS:  tuple[str, ...] = ("urgent", "priority", "asap")
ARCHIVE_KEYWORDS: tuple[str, ...] = ("backup", "archive", "old")


class ExtractionMethod(str, Enum):
    DIRECT_TEXT     = "direct_text"
    OFFICE_DOCUMENT = "office_document"
    SPREADSHEET     = "spreadsheet"
    FAST_PDF        = "fast_pdf"
    SYNC_OCR        = "sync_ocr"
    ASYNC_OCR       = "async_ocr"


# Typical wall-clock cost per method; the processor derives hard timeouts
# from these.
ESTIMATED_DURATION_MS: dict[ExtractionMethod, int] = {
    ExtractionMethod.DIRECT_TEXT:     1_000,
    ExtractionMethod.OFFICE_DOCUMENT: 2_000,
    ExtractionMethod.SPREADSHEET:     3_000,
    ExtractionMethod.FAST_PDF:        3_000,
    ExtractionMethod.SYNC_OCR:       15_000,
    ExtractionMethod.ASYNC_OCR:      30_000,
}

_SPREADSHEET_MARKERS = ("spreadsheet", "excel", "text/csv")
_WORD_MARKERS = (
    "application/msword",
    "wordprocessingml",
    "opendocument.text",
    "application/rtf",
)


@dataclass(frozen=True)
class FileCharacteristics:
    mime_type:  str
    size_bytes: int
    name:       str


@dataclass(frozen=True)
class ExtractionPlan:
    method:                ExtractionMethod
    priority:              int
    use_async:             bool
    estimated_duration_ms: int


def classify(file: FileCharacteristics) -> ExtractionPlan:
    """Map a file to its extraction plan. Pure and deterministic."""
    mime = (file.mime_type or "").lower()
    size = file.size_bytes

    method, priority, use_async, estimate = _base_plan(mime, size)

    name = (file.name or "").lower()
    if any(word in name for word in URGENT_KEYWORDS):
        priority = min(priority + 2, PRIORITY_MAX)
    if any(word in name for word in ARCHIVE_KEYWORDS):
        priority = max(priority - 1, PRIORITY_MIN)

    return ExtractionPlan(
        method=method,
        priority=priority,
        use_async=use_async,
        estimated_duration_ms=estimate,
    )


def _base_plan(mime: str, size: int) -> tuple[ExtractionMethod, int, bool, int]:
    if mime == "application/pdf":
        if size > 10 * MB:
            return ExtractionMethod.ASYNC_OCR, 7, True, 30_000
        if size > 1 * MB:
            return ExtractionMethod.SYNC_OCR, 6, False, 10_000
        return ExtractionMethod.FAST_PDF, 5, False, 3_000

    if mime.startswith("image/"):
        if size > 5 * MB:
            return ExtractionMethod.ASYNC_OCR, 8, True, 25_000
        return ExtractionMethod.SYNC_OCR, 7, False, 15_000

    if any(marker in mime for marker in _SPREADSHEET_MARKERS):
        return ExtractionMethod.SPREADSHEET, 4, False, 3_000

    if any(marker in mime for marker in _WORD_MARKERS):
        return ExtractionMethod.OFFICE_DOCUMENT, 4, False, 2_000

    if mime.startswith("text/"):
        return ExtractionMethod.DIRECT_TEXT, 3, False, 1_000

    return ExtractionMethod.DIRECT_TEXT, BASE_PRIORITY, False, 5_000


def file_type_for(mime_type: str) -> str:
    """Logical file type stored on the file record."""
    mime = (mime_type or "").lower()
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    if any(marker in mime for marker in _SPREADSHEET_MARKERS):
        return "spreadsheet"
    if any(marker in mime for marker in _WORD_MARKERS):
        return "document"
    if mime.startswith("text/"):
        return "text"
    return "other"
