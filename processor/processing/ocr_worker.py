"""
OCR Worker — Tesseract over images and rendered PDF pages.

Optional: the runtime only builds this worker when OCR is enabled, and
ocr-process jobs are never enqueued otherwise. One OCR job runs at a time
system-wide (enforced by the job ledger's per-type cap).

    image/*          → Pillow → pytesseract
    application/pdf  → PyMuPDF renders each page at ocr_pdf_dpi → pytesseract

Recognised text is sanitised and cached as 'ocr-text'.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import pytesseract
from PIL import Image, UnidentifiedImageError

from processor.core.errors import (
    NotFoundError,
    PermanentProcessingError,
    ResourceExhaustedError,
    TransientProcessingError,
)
from processor.processing.classifier import PDF_MIME, normalize_mime
from processor.processing.presets import OCR_TEXT_ARTIFACT
from processor.processing.text_worker import sanitize_content, text_statistics
from processor.storage.cache_store import ArtifactMeta, CacheStore
from processor.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class OcrResult:
    text:     str
    metadata: dict[str, Any] = field(default_factory=dict)


class OcrWorker:
    def __init__(
        self,
        content_store: ContentStore,
        cache_store:   CacheStore,
        *,
        language:        str = "eng",
        timeout_seconds: int = 120,
        pdf_dpi:         int = 200,
    ) -> None:
        self._content = content_store
        self._cache = cache_store
        self._language = language
        self._timeout = timeout_seconds
        self._pdf_dpi = pdf_dpi

    async def recognize(self, content_hash: str, mime_type: str) -> OcrResult:
        if await self._cache.has(content_hash, OCR_TEXT_ARTIFACT):
            text = (await self._cache.get(content_hash, OCR_TEXT_ARTIFACT)).decode("utf-8")
            meta = await self._cache.get_artifact_meta(content_hash, OCR_TEXT_ARTIFACT)
            logger.info("OCR text cached, skipping | hash=%s", content_hash)
            return OcrResult(text=text, metadata=dict(meta.extra) if meta else text_statistics(text))

        try:
            data = await self._content.get(content_hash)
        except NotFoundError as exc:
            raise PermanentProcessingError(f"Original not found for {content_hash}") from exc

        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        pages = await loop.run_in_executor(None, self._recognize_sync, data, mime_type)
        text = sanitize_content("\n\n".join(p for p in pages if p.strip()))

        metadata: dict[str, Any] = {
            "method":   "tesseract",
            "language": self._language,
            "pageCount": len(pages),
            **text_statistics(text),
            "processingTimeMs": round((time.monotonic() - t0) * 1000),
        }
        logger.info(
            "OCR | hash=%s pages=%d chars=%d elapsed_ms=%d",
            content_hash, len(pages), len(text), metadata["processingTimeMs"],
        )

        if text:
            await self._cache.put(
                content_hash,
                OCR_TEXT_ARTIFACT,
                text.encode("utf-8"),
                ArtifactMeta(
                    preset=OCR_TEXT_ARTIFACT,
                    format="txt",
                    mime_type="text/plain; charset=utf-8",
                    extra=metadata,
                ),
            )
        return OcrResult(text=text, metadata=metadata)

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------

    def _recognize_sync(self, data: bytes, mime_type: str) -> list[str]:
        try:
            if normalize_mime(mime_type) == PDF_MIME:
                return [self._tesseract(image) for image in self._render_pdf_pages(data)]
            try:
                with Image.open(io.BytesIO(data)) as image:
                    image.load()
                    return [self._tesseract(image)]
            except (UnidentifiedImageError, OSError, SyntaxError) as exc:
                raise PermanentProcessingError(f"Image cannot be decoded for OCR: {exc}") from exc
        except MemoryError as exc:
            raise ResourceExhaustedError("Out of memory during OCR") from exc

    def _render_pdf_pages(self, data: bytes):
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (fitz.FileDataError, RuntimeError, ValueError) as exc:
            raise PermanentProcessingError(f"Corrupt PDF: {exc}") from exc

        with doc:
            if doc.needs_pass:
                raise PermanentProcessingError("PDF is password-protected")
            for page in doc:
                pix = page.get_pixmap(dpi=self._pdf_dpi)
                yield Image.open(io.BytesIO(pix.tobytes("png")))

    def _tesseract(self, image: Image.Image) -> str:
        try:
            return pytesseract.image_to_string(image, lang=self._language, timeout=self._timeout)
        except pytesseract.TesseractNotFoundError as exc:
            raise PermanentProcessingError("Tesseract binary not installed") from exc
        except pytesseract.TesseractError as exc:
            raise PermanentProcessingError(f"Tesseract failed: {exc}") from exc
        except RuntimeError as exc:
            # pytesseract signals its timeout with a bare RuntimeError
            raise TransientProcessingError(f"OCR timed out: {exc}") from exc
