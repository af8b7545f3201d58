"""
Image presets — fixed, named transforms.

Each preset bounds the output box (aspect ratio preserved, never upscaled),
then encodes at a fixed format and quality. Names double as Cache Store
artifact names, so they must satisfy the preset naming rule.
"""

from __future__ import annotations

from dataclasses import dataclass

from processor.core.errors import ConfigurationError

# Artifact names used by the text and OCR paths
EXTRACTED_TEXT_ARTIFACT = "extracted-text"
OCR_TEXT_ARTIFACT = "ocr-text"


@dataclass(frozen=True)
class ImagePreset:
    name:       str
    max_width:  int
    max_height: int
    format:     str      # Pillow format name
    quality:    int
    mime_type:  str

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "JPEG" else self.format.lower()


IMAGE_PRESETS: dict[str, ImagePreset] = {
    "thumbnail": ImagePreset(
        name="thumbnail", max_width=200, max_height=200,
        format="WEBP", quality=80, mime_type="image/webp",
    ),
    "preview": ImagePreset(
        name="preview", max_width=800, max_height=800,
        format="WEBP", quality=85, mime_type="image/webp",
    ),
    "ai-chat": ImagePreset(
        name="ai-chat", max_width=1920, max_height=1920,
        format="JPEG", quality=85, mime_type="image/jpeg",
    ),
}


def get_preset(name: str) -> ImagePreset:
    try:
        return IMAGE_PRESETS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown image preset '{name}'") from None


def resolve_presets(names: list[str]) -> list[ImagePreset]:
    """Validate configured preset names at startup; order is preserved."""
    return [get_preset(name) for name in names]
