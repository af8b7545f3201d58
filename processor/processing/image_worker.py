"""
Image Worker — preset renditions of raster originals (Pillow).

optimize(contentHash, preset):
  1. Skip when the artifact is already cached (replays are no-ops)
  2. Load the original from the Content Store
  3. Decode, apply EXIF orientation, bound to the preset box, re-encode
  4. Publish through CacheStore.put (atomic)

Failure classification:
  undecodable / truncated / decompression bomb  → PermanentProcessingError
  MemoryError while decoding or resizing         → ResourceExhaustedError
                                                   (retried exclusively)
"""

from __future__ import annotations

import asyncio
import io
import logging
import time

from PIL import Image, ImageOps, UnidentifiedImageError

from processor.core.errors import (
    NotFoundError,
    PermanentProcessingError,
    ResourceExhaustedError,
)
from processor.processing.presets import ImagePreset, get_preset
from processor.storage.cache_store import ArtifactMeta, CacheStore
from processor.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


class ImageWorker:
    def __init__(self, content_store: ContentStore, cache_store: CacheStore) -> None:
        self._content = content_store
        self._cache = cache_store

    async def optimize(self, content_hash: str, preset_name: str) -> ArtifactMeta:
        preset = get_preset(preset_name)

        if await self._cache.has(content_hash, preset.name):
            cached = await self._cache.get_artifact_meta(content_hash, preset.name)
            if cached is not None:
                logger.info("Preset cached, skipping | hash=%s preset=%s", content_hash, preset.name)
                return cached

        try:
            original = await self._content.get(content_hash)
        except NotFoundError as exc:
            raise PermanentProcessingError(f"Original not found for {content_hash}") from exc

        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        encoded, width, height = await loop.run_in_executor(None, render_preset, original, preset)
        elapsed_ms = (time.monotonic() - t0) * 1000

        meta = await self._cache.put(
            content_hash,
            preset.name,
            encoded,
            ArtifactMeta(
                preset=preset.name,
                format=preset.extension,
                mime_type=preset.mime_type,
                width=width,
                height=height,
                extra={"quality": preset.quality, "processingTimeMs": round(elapsed_ms)},
            ),
        )
        logger.info(
            "Preset rendered | hash=%s preset=%s size=%dx%d bytes=%d elapsed_ms=%.0f",
            content_hash, preset.name, width, height, meta.byte_size, elapsed_ms,
        )
        return meta


def render_preset(data: bytes, preset: ImagePreset) -> tuple[bytes, int, int]:
    """Blocking decode/resize/encode — runs in the thread executor."""
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            image = ImageOps.exif_transpose(source)
            image = _convert_mode(image, preset.format)
            # thumbnail() keeps aspect ratio and never upscales
            image.thumbnail((preset.max_width, preset.max_height), Image.Resampling.LANCZOS)

            out = io.BytesIO()
            save_kwargs: dict = {"quality": preset.quality}
            if preset.format == "JPEG":
                save_kwargs.update(optimize=True, progressive=True)
            elif preset.format == "WEBP":
                save_kwargs.update(method=4)
            image.save(out, format=preset.format, **save_kwargs)
            return out.getvalue(), image.width, image.height
    except MemoryError as exc:
        raise ResourceExhaustedError("Out of memory while rendering image") from exc
    except Image.DecompressionBombError as exc:
        raise PermanentProcessingError(f"Image too large to process: {exc}") from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise PermanentProcessingError(f"Corrupt or unsupported image: {exc}") from exc


def _convert_mode(image: Image.Image, target_format: str) -> Image.Image:
    has_alpha = image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info)
    if target_format == "JPEG":
        if has_alpha:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        return image.convert("RGB") if image.mode != "RGB" else image
    if has_alpha:
        return image.convert("RGBA") if image.mode != "RGBA" else image
    return image.convert("RGB") if image.mode != "RGB" else image
