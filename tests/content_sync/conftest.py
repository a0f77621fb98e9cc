"""Shared fixtures for ContentSync tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from DocsMirror.ContentSync.asset_cache import AssetCache
from DocsMirror.ContentSync.settings import AssetCfg
from tests.content_sync.helpers import AssetServer, FakeClock, StubProvider


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def asset_server() -> AssetServer:
    return AssetServer()


@pytest.fixture
def asset_cfg(tmp_path: Path) -> AssetCfg:
    return AssetCfg(
        assets_dir=tmp_path / "static" / "images",
        public_prefix="/images",
        download_attempts=3,
        backoff_base_s=0.0,
        backoff_max_s=0.0,
    )


@pytest.fixture
def asset_cache(tmp_path: Path, asset_cfg: AssetCfg) -> AssetCache:
    return AssetCache(tmp_path / "cache" / "images", asset_cfg.assets_dir)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda _seconds: None
