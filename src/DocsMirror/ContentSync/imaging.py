# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.imaging",
#   "purpose": "Pillow-based resize and re-encode of downloaded image assets with fail-open semantics",
#   "sections": [
#     {
#       "id": "processingmetrics",
#       "name": "ProcessingMetrics",
#       "anchor": "class-processingmetrics",
#       "kind": "class"
#     },
#     {
#       "id": "processedasset",
#       "name": "ProcessedAsset",
#       "anchor": "class-processedasset",
#       "kind": "class"
#     },
#     {
#       "id": "imageprocessor",
#       "name": "ImageProcessor",
#       "anchor": "class-imageprocessor",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Image resize and compression.

Processing runs in stages, each of which may short-circuit:

1. Inputs below ``min_size_for_processing`` are stored as downloaded.
2. Inputs carrying optimizer markers, or PNGs with a bit depth of four or
   less, are stored as downloaded.
3. JPEG, PNG and WebP wider than ``max_width`` are downscaled preserving the
   aspect ratio. Other formats pass through untouched.
4. Resizable formats are re-encoded under a time budget. An error, a timeout
   or an output that is not smaller falls back to the stage-3 bytes.

Nothing in this module raises for a bad image: every failure degrades to the
best bytes available and is counted in :class:`ProcessingMetrics`.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .batch import with_timeout_fallback
from .formats import ImageFormat, is_resizable, skip_optimization_reason

__all__ = ["ImageProcessor", "ProcessedAsset", "ProcessingMetrics"]

LOGGER = logging.getLogger(__name__)

_PIL_FORMATS = {
    ImageFormat.JPEG: "JPEG",
    ImageFormat.PNG: "PNG",
    ImageFormat.WEBP: "WEBP",
}


@dataclass
class ProcessingMetrics:
    """Per-document counters for the processing short-circuits."""

    total_processed: int = 0
    skipped_small_size: int = 0
    skipped_already_optimized: int = 0
    skipped_resize: int = 0
    fully_processed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total_processed": self.total_processed,
                "skipped_small_size": self.skipped_small_size,
                "skipped_already_optimized": self.skipped_already_optimized,
                "skipped_resize": self.skipped_resize,
                "fully_processed": self.fully_processed,
            }


@dataclass(frozen=True)
class ProcessedAsset:
    data: bytes
    original_size: int
    saved_bytes: int
    used_fallback: bool
    resized: bool
    skip_reason: Optional[str] = None


class ImageProcessor:
    """Resize and re-encode images with Pillow.

    Args:
        max_width: Resize threshold in pixels.
        min_size_for_processing: Inputs smaller than this many bytes are kept.
        compress_timeout_s: Time budget for the re-encode stage.
        quality: JPEG/WebP quality.
    """

    def __init__(
        self,
        *,
        max_width: int = 1280,
        min_size_for_processing: int = 50 * 1024,
        compress_timeout_s: float = 45.0,
        quality: int = 82,
    ) -> None:
        self.max_width = max_width
        self.min_size_for_processing = min_size_for_processing
        self.compress_timeout_s = compress_timeout_s
        self.quality = quality

    def process(
        self,
        data: bytes,
        fmt: ImageFormat,
        *,
        metrics: Optional[ProcessingMetrics] = None,
        label: str = "asset",
    ) -> ProcessedAsset:
        """Run the processing stages over ``data``."""

        metrics = metrics if metrics is not None else ProcessingMetrics()
        metrics.incr("total_processed")
        original_size = len(data)

        if original_size < self.min_size_for_processing:
            metrics.incr("skipped_small_size")
            return ProcessedAsset(data, original_size, 0, False, False, "small input")

        reason = skip_optimization_reason(data, fmt)
        if reason:
            metrics.incr("skipped_already_optimized")
            return ProcessedAsset(data, original_size, 0, False, False, reason)

        if not is_resizable(fmt):
            LOGGER.debug("Skipping resize and compression for %s format (%s)", fmt.value, label)
            metrics.incr("fully_processed")
            return ProcessedAsset(data, original_size, 0, False, False, "format not resizable")

        resized_data, resized = self._resize(data, fmt, label)
        if not resized:
            metrics.incr("skipped_resize")

        candidate = with_timeout_fallback(
            lambda: self._encode(resized_data, fmt, label),
            self.compress_timeout_s,
            None,
            f"image compression ({label})",
        )
        metrics.incr("fully_processed")
        if candidate is None or len(candidate) >= len(resized_data):
            return ProcessedAsset(resized_data, original_size, 0, True, resized)
        return ProcessedAsset(
            candidate,
            original_size,
            max(0, original_size - len(candidate)),
            False,
            resized,
        )

    def read_width(self, data: bytes) -> Optional[int]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return img.width
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
            return None

    def _resize(self, data: bytes, fmt: ImageFormat, label: str) -> Tuple[bytes, bool]:
        width = self.read_width(data)
        if width is not None and width <= self.max_width:
            return data, False
        try:
            with Image.open(io.BytesIO(data)) as img:
                if img.width <= self.max_width:
                    return data, False
                height = max(1, round(img.height * self.max_width / img.width))
                resized = img.resize((self.max_width, height), Image.Resampling.LANCZOS)
                return self._save(resized, fmt), True
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            LOGGER.warning("Resize failed for %s, keeping original: %s", label, exc)
            return data, False

    def _encode(self, data: bytes, fmt: ImageFormat, label: str) -> Optional[bytes]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                return self._save(img, fmt)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            LOGGER.warning("Compression failed for %s, keeping input: %s", label, exc)
            return None

    def _save(self, img: Image.Image, fmt: ImageFormat) -> bytes:
        buffer = io.BytesIO()
        pil_format = _PIL_FORMATS[fmt]
        if fmt is ImageFormat.JPEG:
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.save(buffer, format=pil_format, quality=self.quality, optimize=True)
        elif fmt is ImageFormat.WEBP:
            img.save(buffer, format=pil_format, quality=self.quality)
        else:
            img.save(buffer, format=pil_format, optimize=True)
        return buffer.getvalue()
