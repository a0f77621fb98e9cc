"""Tests for environment-backed settings."""

from __future__ import annotations

import pytest

from DocsMirror.ContentSync.settings import load_settings


def test_retry_and_timeout_knobs_do_not_change_hash() -> None:
    base = load_settings().compute_hash()
    tuned = load_settings(
        assets={
            "download_timeout_s": 5.0,
            "download_attempts": 7,
            "backoff_base_s": 0.0,
            "backoff_max_s": 0.0,
            "user_agent": "custom/2.0",
        }
    ).compute_hash()
    assert tuned == base


@pytest.mark.parametrize(
    "override",
    [
        {"max_width": 640},
        {"jpeg_quality": 60},
        {"public_prefix": "/static"},
        {"min_size_for_processing": 0},
    ],
)
def test_output_shaping_settings_change_hash(override: dict) -> None:
    assert load_settings(assets=override).compute_hash() != load_settings().compute_hash()


def test_comma_separated_allow_lists_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTENTSYNC_ASSET_ALLOWED_HOSTS", "Files.example.com, cdn.example.com")
    settings = load_settings()
    assert settings.assets.allowed_hosts == ("files.example.com", "cdn.example.com")
