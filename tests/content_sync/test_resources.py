"""Tests for adaptive concurrency decisions."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from DocsMirror.ContentSync.errors import FatalConfigError
from DocsMirror.ContentSync.resources import (
    DEFAULT_CONCURRENCY_CONFIGS,
    ConcurrencyConfig,
    ResourceManager,
    ResourceSnapshot,
    detect_optimal_concurrency,
    parse_concurrency_override,
)

from tests.content_sync.helpers import StubProvider


@given(
    cpu=st.integers(min_value=0, max_value=512),
    free=st.floats(min_value=0, max_value=4096, allow_nan=False),
    op_class=st.sampled_from(sorted(DEFAULT_CONCURRENCY_CONFIGS)),
)
def test_concurrency_always_within_bounds(cpu: int, free: float, op_class: str) -> None:
    config = DEFAULT_CONCURRENCY_CONFIGS[op_class]
    snapshot = ResourceSnapshot(cpu_cores=cpu, free_memory_gb=free, total_memory_gb=free)
    value = detect_optimal_concurrency(config, snapshot)
    assert config.min_concurrency <= value <= config.max_concurrency


def test_memory_bound_limits_images() -> None:
    manager = ResourceManager(StubProvider(cpu_cores=32, free_memory_gb=4.0), overrides={})
    # floor(4 * 0.7 / 0.5) = 5
    assert manager.get_concurrency("images") == 5


def test_cpu_bound_limits_pages() -> None:
    manager = ResourceManager(StubProvider(cpu_cores=8, free_memory_gb=64.0), overrides={})
    # floor(8 * 0.75) = 6
    assert manager.get_concurrency("pages") == 6


def test_starved_host_gets_minimum() -> None:
    manager = ResourceManager(StubProvider(cpu_cores=1, free_memory_gb=0.0), overrides={})
    assert manager.get_concurrency("blocks") == DEFAULT_CONCURRENCY_CONFIGS["blocks"].min_concurrency


def test_override_wins_over_detection() -> None:
    manager = ResourceManager(StubProvider(), overrides="images:2, pages:40")
    assert manager.get_concurrency("images") == 2
    assert manager.get_concurrency("pages") == 40


def test_override_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTENTSYNC_CONCURRENCY_OVERRIDE", "blocks:7")
    manager = ResourceManager(StubProvider())
    assert manager.get_concurrency("blocks") == 7


@pytest.mark.parametrize("raw", ["images", "images:x", "images:0", ":3"])
def test_malformed_override_is_fatal(raw: str) -> None:
    with pytest.raises(FatalConfigError):
        parse_concurrency_override(raw)


def test_empty_override_is_empty() -> None:
    assert parse_concurrency_override("") == {}
    assert parse_concurrency_override(None) == {}


def test_rate_limit_multiplier_scales_and_clamps() -> None:
    manager = ResourceManager(StubProvider(), overrides={"pages": 10})
    manager.set_rate_limit_multiplier(0.5)
    assert manager.get_concurrency("pages") == 5
    manager.set_rate_limit_multiplier(0.01)
    assert manager.rate_limit_multiplier == pytest.approx(0.1)
    assert manager.get_concurrency("pages") == 1
    manager.set_rate_limit_multiplier(3.0)
    assert manager.rate_limit_multiplier == 1.0
    manager.set_rate_limit_multiplier(0.2)
    manager.reset_rate_limit_multiplier()
    assert manager.get_concurrency("pages") == 10


def test_multiplier_never_drops_below_one() -> None:
    manager = ResourceManager(StubProvider(), overrides={"images": 3})
    manager.set_rate_limit_multiplier(0.1)
    assert manager.get_concurrency("images") == 1


def test_unknown_operation_class_is_fatal() -> None:
    manager = ResourceManager(StubProvider(), overrides={})
    with pytest.raises(FatalConfigError):
        manager.get_concurrency("videos")


def test_invalid_concurrency_config_rejected() -> None:
    with pytest.raises(FatalConfigError):
        ConcurrencyConfig(min_concurrency=5, max_concurrency=2, memory_per_operation_gb=0.1)


def test_summary_mentions_resources() -> None:
    manager = ResourceManager(StubProvider(cpu_cores=4, free_memory_gb=2.5, total_memory_gb=8.0), overrides={})
    assert manager.summary() == "4 CPU cores, 2.5/8.0 GB RAM free"
