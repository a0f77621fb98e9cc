"""Binary format sniffing and optimisation heuristics for downloaded assets."""

from __future__ import annotations

import enum
from typing import Optional
from urllib.parse import urlsplit

__all__ = [
    "ImageFormat",
    "OPTIMIZER_MARKERS",
    "choose_format",
    "detect_format_from_bytes",
    "detect_png_bit_depth",
    "extension_for",
    "format_from_content_type",
    "format_from_url",
    "has_optimizer_markers",
    "is_resizable",
    "skip_optimization_reason",
]


class ImageFormat(str, enum.Enum):
    PNG = "png"
    JPEG = "jpeg"
    GIF = "gif"
    WEBP = "webp"
    SVG = "svg"
    AVIF = "avif"
    HEIC = "heic"
    UNKNOWN = "unknown"


_EXTENSIONS = {
    ImageFormat.JPEG: ".jpg",
    ImageFormat.PNG: ".png",
    ImageFormat.WEBP: ".webp",
    ImageFormat.SVG: ".svg",
    ImageFormat.GIF: ".gif",
    ImageFormat.AVIF: ".avif",
    ImageFormat.HEIC: ".heic",
}

_EXTENSION_ALIASES = {
    ".jpg": ImageFormat.JPEG,
    ".jpeg": ImageFormat.JPEG,
    ".png": ImageFormat.PNG,
    ".webp": ImageFormat.WEBP,
    ".svg": ImageFormat.SVG,
    ".gif": ImageFormat.GIF,
    ".avif": ImageFormat.AVIF,
    ".heic": ImageFormat.HEIC,
    ".heif": ImageFormat.HEIC,
}

_AVIF_BRANDS = {"avif", "avis"}
_HEIC_BRANDS = {"heic", "heif", "mif1", "heix", "hevc", "hevx"}

OPTIMIZER_MARKERS = (
    "pngquant",
    "OptiPNG",
    "ImageOptim",
    "TinyPNG",
    "pngcrush",
    "mozjpeg",
    "jpegoptim",
    "libjpeg-turbo",
)

DEFAULT_EXTENSION = ".jpg"


def detect_format_from_bytes(data: bytes) -> ImageFormat:
    """Identify a format from its leading magic bytes."""

    if not data or len(data) < 12:
        return ImageFormat.UNKNOWN
    if data[:4] == b"\x89PNG":
        return ImageFormat.PNG
    if data[:3] == b"\xff\xd8\xff":
        return ImageFormat.JPEG
    if data[:4] == b"GIF8":
        return ImageFormat.GIF
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return ImageFormat.WEBP
    if data[4:8] == b"ftyp":
        brand = data[8:12].decode("ascii", errors="ignore").lower()
        if brand in _AVIF_BRANDS:
            return ImageFormat.AVIF
        if brand in _HEIC_BRANDS:
            return ImageFormat.HEIC
    if b"<svg" in data[:512].lower():
        return ImageFormat.SVG
    return ImageFormat.UNKNOWN


def format_from_content_type(content_type: Optional[str]) -> ImageFormat:
    if not content_type:
        return ImageFormat.UNKNOWN
    lower = content_type.lower()
    if "image/png" in lower:
        return ImageFormat.PNG
    if "image/jpeg" in lower or "image/jpg" in lower:
        return ImageFormat.JPEG
    if "image/webp" in lower:
        return ImageFormat.WEBP
    if "image/svg" in lower:
        return ImageFormat.SVG
    if "image/gif" in lower:
        return ImageFormat.GIF
    if "image/avif" in lower:
        return ImageFormat.AVIF
    if "image/heic" in lower or "image/heif" in lower:
        return ImageFormat.HEIC
    return ImageFormat.UNKNOWN


def format_from_url(url: str) -> ImageFormat:
    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    if dot == -1 or "/" in path[dot:]:
        return ImageFormat.UNKNOWN
    return _EXTENSION_ALIASES.get(path[dot:], ImageFormat.UNKNOWN)


def choose_format(data: bytes, content_type: Optional[str], url: str) -> ImageFormat:
    """Magic bytes first, declared content type second, URL extension last."""

    for candidate in (
        detect_format_from_bytes(data),
        format_from_content_type(content_type),
        format_from_url(url),
    ):
        if candidate is not ImageFormat.UNKNOWN:
            return candidate
    return ImageFormat.UNKNOWN


def extension_for(fmt: ImageFormat) -> str:
    """Canonical extension; unknown formats fall back to ``.jpg``."""

    return _EXTENSIONS.get(fmt, DEFAULT_EXTENSION)


def is_resizable(fmt: ImageFormat) -> bool:
    return fmt in (ImageFormat.JPEG, ImageFormat.PNG, ImageFormat.WEBP)


def has_optimizer_markers(data: bytes) -> bool:
    header = data[:4096].decode("latin-1")
    return any(marker in header for marker in OPTIMIZER_MARKERS)


def detect_png_bit_depth(data: bytes) -> Optional[int]:
    """Bit depth from the IHDR chunk, or ``None`` for non-PNG input."""

    if len(data) < 30 or data[:4] != b"\x89PNG":
        return None
    if data[12:16] != b"IHDR":
        return None
    return data[24]


def skip_optimization_reason(data: bytes, fmt: ImageFormat) -> Optional[str]:
    """Why compressing ``data`` is pointless, or ``None`` to go ahead."""

    if has_optimizer_markers(data):
        return "already optimized (contains optimizer markers)"
    if fmt is ImageFormat.PNG:
        depth = detect_png_bit_depth(data)
        if depth is not None and depth <= 4:
            return f"already optimized (low bit depth: {depth}-bit)"
    return None
