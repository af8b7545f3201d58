"""
MIME classification — which processing strategy a file gets.

classify() is pure: no I/O, no configuration. Its result is a closed enum,
and every dispatch site (Coordinator, upload fan-out) handles all three
members explicitly.

  VISUAL            image/*            → image presets (+ optional OCR)
  TEXT_EXTRACTABLE  PDF, Word, text/*, source code, JSON/XML → Text Worker
  UNKNOWN           everything else    → stored, never processed further
"""

from __future__ import annotations

from enum import Enum


class ContentClass(str, Enum):
    VISUAL           = "visual"
    TEXT_EXTRACTABLE = "text_extractable"
    UNKNOWN          = "unknown"


PDF_MIME    = "application/pdf"
DOCX_MIME   = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MSWORD_MIME = "application/msword"

TEXT_EXTRACTABLE_TYPES: frozenset[str] = frozenset(
    {
        PDF_MIME,
        DOCX_MIME,
        MSWORD_MIME,
        "text/plain",
        "text/markdown",
        "text/csv",
        "text/html",
        "text/css",
        "text/xml",
        "text/javascript",
        "text/x-python",
        "text/x-java",
        "text/x-c",
        "text/x-cpp",
        "text/x-csharp",
        "text/x-go",
        "text/x-rust",
        "text/x-ruby",
        "text/x-php",
        "text/x-swift",
        "text/x-kotlin",
        "text/x-scala",
        "text/x-yaml",
        "text/x-toml",
        "text/x-sql",
        "text/x-shell",
        "text/x-shellscript",
        "text/x-powershell",
        "application/json",
        "application/xml",
        "application/x-yaml",
        "application/javascript",
        "application/typescript",
    }
)

# Image types Pillow can decode and re-encode; other image/* (e.g. SVG) stay
# VISUAL but get no image-optimize jobs.
RASTER_IMAGE_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
    }
)


def normalize_mime(mime_type: str | None) -> str:
    """Lower-case and drop parameters: 'Text/Plain; charset=utf-8' → 'text/plain'."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def classify(mime_type: str | None) -> ContentClass:
    mime = normalize_mime(mime_type)
    if mime.startswith("image/"):
        return ContentClass.VISUAL
    if mime in TEXT_EXTRACTABLE_TYPES or mime.startswith("text/"):
        return ContentClass.TEXT_EXTRACTABLE
    return ContentClass.UNKNOWN


def is_raster_image(mime_type: str | None) -> bool:
    return normalize_mime(mime_type) in RASTER_IMAGE_TYPES
