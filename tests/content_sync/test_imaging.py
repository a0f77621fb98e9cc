"""Tests for image processing short-circuits and fail-open behaviour."""

from __future__ import annotations

import threading
from typing import Optional

import pytest
from PIL import Image

from DocsMirror.ContentSync.formats import ImageFormat
from DocsMirror.ContentSync.imaging import ImageProcessor, ProcessingMetrics
from tests.content_sync.helpers import noisy_png_bytes, png_bytes


def test_small_inputs_are_stored_as_is() -> None:
    data = png_bytes()
    metrics = ProcessingMetrics()
    result = ImageProcessor().process(data, ImageFormat.PNG, metrics=metrics)
    assert result.data == data
    assert result.saved_bytes == 0
    assert result.skip_reason == "small input"
    assert metrics.as_dict()["skipped_small_size"] == 1


def test_wide_images_are_resized() -> None:
    data = noisy_png_bytes(200, 50)
    processor = ImageProcessor(max_width=100, min_size_for_processing=0)
    metrics = ProcessingMetrics()
    result = processor.process(data, ImageFormat.PNG, metrics=metrics)
    assert result.resized
    assert processor.read_width(result.data) == 100
    assert result.saved_bytes >= 0
    assert metrics.as_dict()["fully_processed"] == 1


def test_narrow_images_skip_resize() -> None:
    data = noisy_png_bytes(40, 40)
    metrics = ProcessingMetrics()
    result = ImageProcessor(max_width=100, min_size_for_processing=0).process(
        data, ImageFormat.PNG, metrics=metrics
    )
    assert not result.resized
    assert metrics.as_dict()["skipped_resize"] == 1


def test_non_resizable_formats_pass_through() -> None:
    data = b"GIF89a" + b"\x00" * 200
    result = ImageProcessor(min_size_for_processing=0).process(data, ImageFormat.GIF)
    assert result.data == data
    assert result.skip_reason == "format not resizable"
    assert not result.used_fallback


def test_undecodable_input_fails_open() -> None:
    data = b"\x89PNG" + b"garbage" * 50
    result = ImageProcessor(min_size_for_processing=0).process(data, ImageFormat.PNG)
    assert result.data == data
    assert result.used_fallback
    assert result.saved_bytes == 0


def test_compression_timeout_keeps_resized_bytes() -> None:
    release = threading.Event()

    class SlowProcessor(ImageProcessor):
        def _encode(self, data: bytes, fmt: ImageFormat, label: str) -> Optional[bytes]:
            release.wait(5)
            return b""

    data = noisy_png_bytes(30, 30)
    try:
        result = SlowProcessor(min_size_for_processing=0, compress_timeout_s=0.02).process(
            data, ImageFormat.PNG
        )
    finally:
        release.set()
    assert result.data == data
    assert result.used_fallback
    assert result.saved_bytes == 0


def test_optimizer_markers_short_circuit() -> None:
    data = noisy_png_bytes(30, 30)
    marked = data[:33] + b"\x00\x00\x00\x10tEXtSoftware\x00mozjpeg" + data[33:]
    metrics = ProcessingMetrics()
    result = ImageProcessor(min_size_for_processing=0).process(marked, ImageFormat.PNG, metrics=metrics)
    assert result.data == marked
    assert result.skip_reason.startswith("already optimized")
    assert metrics.as_dict()["skipped_already_optimized"] == 1


def test_oversized_pixel_count_passes_through(monkeypatch: pytest.MonkeyPatch) -> None:
    data = noisy_png_bytes(40, 40)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    processor = ImageProcessor(max_width=10, min_size_for_processing=0)

    result = processor.process(data, ImageFormat.PNG)

    assert result.data == data
    assert not result.resized
    assert result.used_fallback
    assert processor.read_width(data) is None
