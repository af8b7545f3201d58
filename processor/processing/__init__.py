"""
Processing Package
══════════════════

Turns a stored original into owner-entity content and cached artifacts:

  Classifier → Text Worker | Image Worker (per preset) | OCR Worker

Modules
───────
  classifier.py    MIME type → VISUAL / TEXT_EXTRACTABLE / UNKNOWN (pure)
  presets.py       Named image transforms (thumbnail, preview, ai-chat)
  image_worker.py  Pillow resize + re-encode into the Cache Store
  text_worker.py   PyMuPDF / python-docx / plain-text extraction
  ocr_worker.py    Tesseract over images and rendered PDF pages

Workers never touch the job ledger or the owner entity; the Coordinator
decides what their results mean.
"""

from processor.processing.classifier import ContentClass, classify, is_raster_image
from processor.processing.image_worker import ImageWorker
from processor.processing.ocr_worker import OcrResult, OcrWorker
from processor.processing.presets import IMAGE_PRESETS, ImagePreset, get_preset
from processor.processing.text_worker import TextExtractionResult, TextWorker

__all__ = [
    "ContentClass",
    "classify",
    "is_raster_image",
    "ImageWorker",
    "OcrResult",
    "OcrWorker",
    "IMAGE_PRESETS",
    "ImagePreset",
    "get_preset",
    "TextExtractionResult",
    "TextWorker",
]
