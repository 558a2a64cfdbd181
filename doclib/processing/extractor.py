"""
Text Extraction
═══════════════

Runs one extraction method (chosen by doclib.processing.strategy.classify)
against a file's content and returns ExtractionOutput{text, metadata, success}.

Method → backend
────────────────
  direct_text      UTF-8 decode (latin-1 fallback); binary content refused
  office_document  python-docx: paragraphs + table cells
  spreadsheet      pandas: every sheet rendered as CSV (openpyxl / odf engines)
  fast_pdf         PyMuPDF native text layer, pypdf as second opinion
  sync_ocr         PDFs: text layer first, Textract DetectDocumentText when the
                   document looks scanned. Images: Textract directly.
  async_ocr        Textract StartDocumentTextDetection on an object-store copy,
                   polled with exponential back-off. Given raw bytes instead
                   (no object-store copy), falls back to the sync_ocr path.

Failure contract
────────────────
  Unparseable content  → success=False, metadata["error"]; never retried.
  Textract throttling / transport errors → TransientIOError (retried).
  Textract rejecting the document → success=False.

All blocking parsers run in the default thread executor. There is no internal
deadline: the caller wraps extract_text() in the job's hard timeout.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import TransientIOError
from doclib.processing.strategy import ExtractionMethod
from doclib.storage.s3 import ObjectRef

logger = logging.getLogger(__name__)

# Below this many characters per page a PDF is treated as scanned
MIN_CHARS_PER_PAGE = 50

_TEXTRACT_RETRYABLE = frozenset({
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "InternalServerError",
    "ServiceUnavailableException",
})

_ODS_MIME = "application/vnd.oasis.opendocument.spreadsheet"
_CSV_MIMES = frozenset({"text/csv", "application/csv"})


@dataclass
class ExtractionOutput:
    text:     str
    metadata: dict = field(default_factory=dict)
    success:  bool = True

    @property
    def page_count(self) -> int | None:
        return self.metadata.get("page_count")

    @property
    def confidence(self) -> float | None:
        return self.metadata.get("confidence")


def _failed(extractor: str, error: str) -> ExtractionOutput:
    return ExtractionOutput(
        text="",
        metadata={"extractor": extractor, "error": error},
        success=False,
    )


def _parse_textract_blocks(blocks: list[dict]) -> tuple[str, int, float | None]:
    """LINE blocks grouped by page → (text, page_count, mean confidence 0–1)."""
    lines: dict[int, list[str]] = {}
    confidences: list[float] = []
    for block in blocks:
        if block.get("BlockType") != "LINE":
            continue
        lines.setdefault(block.get("Page", 1), []).append(block.get("Text", ""))
        if "Confidence" in block:
            confidences.append(block["Confidence"] / 100.0)

    text = "\n\n".join("\n".join(lines[page]) for page in sorted(lines))
    confidence = round(sum(confidences) / len(confidences), 3) if confidences else None
    return text, len(lines), confidence


# ---------------------------------------------------------------------------
# Blocking parsers (executor)
# ---------------------------------------------------------------------------

def _decode_text(data: bytes) -> str:
    if b"\x00" in data[:4096]:
        raise ValueError("binary content is not text")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def _docx_text(data: bytes) -> tuple[str, dict]:
    import docx

    document = docx.Document(io.BytesIO(data))
    parts = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts), {"paragraphs": len(document.paragraphs), "tables": len(document.tables)}


def _spreadsheet_text(data: bytes, mime_type: str) -> tuple[str, dict]:
    import pandas as pd

    if mime_type in _CSV_MIMES:
        sheets = {"csv": pd.read_csv(io.BytesIO(data))}
    else:
        engine = "odf" if mime_type == _ODS_MIME else None
        sheets = pd.read_excel(io.BytesIO(data), sheet_name=None, engine=engine)

    parts = []
    rows = 0
    for name, frame in sheets.items():
        frame = frame.dropna(how="all")
        rows += len(frame)
        parts.append(f"## {name}\n{frame.to_csv(index=False)}")
    return "\n\n".join(parts), {"sheet_count": len(sheets), "row_count": rows}


def _pymupdf_text(data: bytes) -> tuple[str, int]:
    import fitz

    with fitz.open(stream=data, filetype="pdf") as doc:
        pages = [(page.get_text("text") or "").strip() for page in doc]
    return "\n\n".join(p for p in pages if p), len(pages)


def _pypdf_text(data: bytes) -> tuple[str, int]:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return "\n\n".join(p for p in pages if p), len(pages)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless apart from configuration; one instance serves every worker.
    """

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or default_settings
        self._session = aioboto3.Session()

    def _textract(self):
        kwargs: dict = {"region_name": self._cfg.aws_region}
        if self._cfg.aws_access_key_id:
            kwargs["aws_access_key_id"] = self._cfg.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._cfg.aws_secret_access_key
        return self._session.client("textract", **kwargs)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def extract_text(
        self,
        source: bytes | ObjectRef,
        mime_type: str,
        method: ExtractionMethod,
        size_hint: int | None = None,
    ) -> ExtractionOutput:
        t0 = time.monotonic()
        method = ExtractionMethod(method)

        if isinstance(source, ObjectRef) and method != ExtractionMethod.ASYNC_OCR:
            raise ValueError(f"{method.value} needs the file content, not an object reference")

        match method:
            case ExtractionMethod.DIRECT_TEXT:
                output = await self._direct_text(source)
            case ExtractionMethod.OFFICE_DOCUMENT:
                output = await self._office_document(source)
            case ExtractionMethod.SPREADSHEET:
                output = await self._spreadsheet(source, mime_type)
            case ExtractionMethod.FAST_PDF:
                output = await self._fast_pdf(source)
            case ExtractionMethod.SYNC_OCR:
                output = await self._sync_ocr(source, mime_type)
            case ExtractionMethod.ASYNC_OCR:
                if isinstance(source, ObjectRef):
                    output = await self._async_ocr(source)
                else:
                    output = await self._sync_ocr(source, mime_type)

        output.metadata.setdefault("method", method.value)
        output.metadata["elapsed_ms"] = round((time.monotonic() - t0) * 1000, 1)
        if size_hint is not None:
            output.metadata["size_bytes"] = size_hint
        logger.info(
            "Extraction | method=%s extractor=%s success=%s chars=%d elapsed_ms=%.0f",
            method.value, output.metadata.get("extractor"), output.success,
            len(output.text), output.metadata["elapsed_ms"],
        )
        return output

    # ------------------------------------------------------------------
    # In-process methods
    # ------------------------------------------------------------------

    async def _direct_text(self, data: bytes) -> ExtractionOutput:
        try:
            text = await self._run(_decode_text, data)
        except ValueError as exc:
            return _failed("text", str(exc))
        return ExtractionOutput(text=text, metadata={"extractor": "text"})

    async def _office_document(self, data: bytes) -> ExtractionOutput:
        try:
            text, meta = await self._run(_docx_text, data)
        except Exception as exc:
            logger.warning("DOCX extraction failed: %s", exc)
            return _failed("python-docx", f"unreadable word-processor document: {exc}")
        return ExtractionOutput(text=text, metadata={"extractor": "python-docx", **meta})

    async def _spreadsheet(self, data: bytes, mime_type: str) -> ExtractionOutput:
        try:
            text, meta = await self._run(_spreadsheet_text, data, mime_type)
        except Exception as exc:
            logger.warning("Spreadsheet extraction failed | mime=%s error=%s", mime_type, exc)
            return _failed("pandas", f"unreadable spreadsheet: {exc}")
        return ExtractionOutput(text=text, metadata={"extractor": "pandas", **meta})

    async def _fast_pdf(self, data: bytes) -> ExtractionOutput:
        try:
            text, pages = await self._run(_pymupdf_text, data)
            extractor = "pymupdf"
        except Exception as exc:
            logger.warning("PyMuPDF failed, trying pypdf: %s", exc)
            try:
                text, pages = await self._run(_pypdf_text, data)
            except Exception as exc2:
                return _failed("pypdf", f"unreadable PDF: {exc2}")
            extractor = "pypdf"
        return ExtractionOutput(
            text=text,
            metadata={"extractor": extractor, "page_count": pages},
        )

    # ------------------------------------------------------------------
    # OCR
    # ------------------------------------------------------------------

    async def _sync_ocr(self, data: bytes, mime_type: str) -> ExtractionOutput:
        if mime_type == "application/pdf":
            layer = await self._fast_pdf(data)
            pages = layer.page_count or 0
            if layer.success and pages and len(layer.text) >= MIN_CHARS_PER_PAGE * pages:
                layer.metadata["used_ocr"] = False
                return layer
            logger.info("PDF text layer too thin, running OCR | pages=%d chars=%d", pages, len(layer.text))

        try:
            async with self._textract() as client:
                response = await client.detect_document_text(Document={"Bytes": data})
        except (ClientError, BotoCoreError) as exc:
            return self._textract_failure(exc)

        text, pages, confidence = _parse_textract_blocks(response.get("Blocks", []))
        return ExtractionOutput(
            text=text,
            metadata={
                "extractor": "textract",
                "used_ocr": True,
                "page_count": pages,
                "confidence": confidence,
            },
        )

    async def _async_ocr(self, ref: ObjectRef) -> ExtractionOutput:
        try:
            async with self._textract() as client:
                started = await client.start_document_text_detection(
                    DocumentLocation={"S3Object": {"Bucket": ref.bucket, "Name": ref.key}}
                )
                textract_job = started["JobId"]
                logger.info("Textract job started | job=%s key=%s", textract_job, ref.key)

                blocks: list[dict] = []
                next_token: str | None = None
                delay = 2.0
                while True:
                    kwargs = {"JobId": textract_job}
                    if next_token:
                        kwargs["NextToken"] = next_token
                    result = await client.get_document_text_detection(**kwargs)
                    status = result["JobStatus"]

                    if status == "SUCCEEDED":
                        blocks.extend(result.get("Blocks", []))
                        next_token = result.get("NextToken")
                        if not next_token:
                            break
                    elif status == "FAILED":
                        return _failed(
                            "textract",
                            f"Textract job {textract_job} failed: {result.get('StatusMessage')}",
                        )
                    else:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30.0)
        except (ClientError, BotoCoreError) as exc:
            return self._textract_failure(exc)

        text, pages, confidence = _parse_textract_blocks(blocks)
        return ExtractionOutput(
            text=text,
            metadata={
                "extractor": "textract",
                "used_ocr": True,
                "textract_job_id": textract_job,
                "page_count": pages,
                "confidence": confidence,
            },
        )

    @staticmethod
    def _textract_failure(exc: Exception) -> ExtractionOutput:
        if isinstance(exc, ClientError):
            code = exc.response.get("Error", {}).get("Code", "")
            if code not in _TEXTRACT_RETRYABLE:
                logger.warning("Textract rejected document | code=%s", code)
                return _failed("textract", f"Textract rejected document: {code}")
        raise TransientIOError(f"Textract unavailable: {exc}") from exc
