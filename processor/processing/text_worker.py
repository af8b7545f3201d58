"""
Text Worker — text recovery from PDF, Word and plain-text originals.

Dispatch by MIME:
    application/pdf   → PyMuPDF, page by page (native text layer only)
    DOCX, msword      → python-docx (paragraphs, then table cells)
    other text types  → direct decode (UTF-8, latin-1 fallback)
    anything else     → PermanentProcessingError, never decoded

Outcomes:
    success=True,  text        non-empty text; cached as 'extracted-text'
    success=False, text=''     nothing recoverable (e.g. scanned PDF);
                               a valid terminal result, the caller falls
                               back to visual / OCR
    raises PermanentProcessingError   corrupt, encrypted or unsupported
    raises ResourceExhaustedError     MemoryError during parsing
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import zipfile
from dataclasses import dataclass, field
from typing import Any

from processor.core.errors import (
    NotFoundError,
    PermanentProcessingError,
    ResourceExhaustedError,
)
from processor.processing.classifier import (
    DOCX_MIME,
    MSWORD_MIME,
    PDF_MIME,
    ContentClass,
    classify,
    normalize_mime,
)
from processor.processing.presets import EXTRACTED_TEXT_ARTIFACT
from processor.storage.cache_store import ArtifactMeta, CacheStore
from processor.storage.content_store import ContentStore

logger = logging.getLogger(__name__)

_MANY_NEWLINES = re.compile(r"\n{4,}")
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)


@dataclass
class TextExtractionResult:
    success:  bool
    text:     str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


def sanitize_content(text: str) -> str:
    """Strip NULs, normalise line endings, cap blank runs, trim trailing whitespace."""
    if not text:
        return ""
    text = text.replace("\0", "").replace("\r\n", "\n")
    text = _MANY_NEWLINES.sub("\n\n\n", text)
    text = _TRAILING_WS.sub("", text)
    return text.strip()


def text_statistics(text: str) -> dict[str, int]:
    return {"wordCount": len(text.split()), "characterCount": len(text)}


class TextWorker:
    def __init__(self, content_store: ContentStore, cache_store: CacheStore) -> None:
        self._content = content_store
        self._cache = cache_store

    async def extract(self, content_hash: str, mime_type: str) -> TextExtractionResult:
        ensure_extractable(mime_type)
        if await self._cache.has(content_hash, EXTRACTED_TEXT_ARTIFACT):
            cached_text = (await self._cache.get(content_hash, EXTRACTED_TEXT_ARTIFACT)).decode("utf-8")
            meta = await self._cache.get_artifact_meta(content_hash, EXTRACTED_TEXT_ARTIFACT)
            logger.info("Extracted text cached, skipping | hash=%s", content_hash)
            return TextExtractionResult(
                success=bool(cached_text),
                text=cached_text,
                metadata=dict(meta.extra) if meta else text_statistics(cached_text),
            )

        try:
            data = await self._content.get(content_hash)
        except NotFoundError as exc:
            raise PermanentProcessingError(f"Original not found for {content_hash}") from exc

        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        raw_text, metadata = await loop.run_in_executor(None, extract_text, data, mime_type)
        text = sanitize_content(raw_text)

        metadata.update(text_statistics(text))
        metadata["processingTimeMs"] = round((time.monotonic() - t0) * 1000)

        logger.info(
            "Text extraction | hash=%s mime=%s method=%s chars=%d",
            content_hash, mime_type, metadata.get("method"), len(text),
        )
        if not text:
            return TextExtractionResult(success=False, text="", metadata=metadata)

        await self._cache.put(
            content_hash,
            EXTRACTED_TEXT_ARTIFACT,
            text.encode("utf-8"),
            ArtifactMeta(
                preset=EXTRACTED_TEXT_ARTIFACT,
                format="txt",
                mime_type="text/plain; charset=utf-8",
                extra=metadata,
            ),
        )
        return TextExtractionResult(success=True, text=text, metadata=metadata)


# ---------------------------------------------------------------------------
# Blocking extractors (run in thread executor)
# ---------------------------------------------------------------------------

def ensure_extractable(mime_type: str) -> None:
    if classify(mime_type) is not ContentClass.TEXT_EXTRACTABLE:
        raise PermanentProcessingError(
            f"Unsupported format for text extraction: {normalize_mime(mime_type) or 'unknown'}"
        )


def extract_text(data: bytes, mime_type: str) -> tuple[str, dict[str, Any]]:
    ensure_extractable(mime_type)
    mime = normalize_mime(mime_type)
    try:
        if mime == PDF_MIME:
            return _extract_pdf(data)
        if mime in (DOCX_MIME, MSWORD_MIME):
            return _extract_docx(data), {"method": "python-docx"}
        return _decode_text(data), {"method": "direct"}
    except MemoryError as exc:
        raise ResourceExhaustedError("Out of memory during text extraction") from exc


def _extract_pdf(data: bytes) -> tuple[str, dict[str, Any]]:
    import fitz  # PyMuPDF

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as exc:
        raise PermanentProcessingError(f"Corrupt PDF: {exc}") from exc

    with doc:
        if doc.needs_pass:
            raise PermanentProcessingError("PDF is password-protected")
        pages = [page.get_text("text") or "" for page in doc]

    logger.debug("PyMuPDF | pages=%d chars=%d", len(pages), sum(len(p) for p in pages))
    text = "\n\n".join(p for p in pages if p.strip())
    return text, {"method": "pymupdf", "pageCount": len(pages)}


def _extract_docx(data: bytes) -> str:
    import docx
    from docx.opc.exceptions import PackageNotFoundError

    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise PermanentProcessingError(f"Corrupt Word document: {exc}") from exc

    parts = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append("\t".join(cells))
    return "\n".join(parts)


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")
