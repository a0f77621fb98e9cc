"""Tests for windowed batch execution and timeout helpers."""

from __future__ import annotations

import threading
import time
from typing import List

import pytest

from DocsMirror.ContentSync.batch import (
    BatchExecutor,
    Settlement,
    with_timeout,
    with_timeout_fallback,
)
from DocsMirror.ContentSync.errors import FatalConfigError, TimeoutExpired
from DocsMirror.ContentSync.progress import ProgressState, ProgressTracker


def test_results_preserve_input_order() -> None:
    delays = [0.03, 0.0, 0.02, 0.01, 0.0]

    def work(index: int) -> int:
        time.sleep(delays[index])
        return index * 10

    settlements = BatchExecutor().process(list(range(5)), work, max_concurrent=3)
    assert [s.index for s in settlements] == [0, 1, 2, 3, 4]
    assert [s.value for s in settlements] == [0, 10, 20, 30, 40]
    assert all(s.ok for s in settlements)


def test_in_flight_never_exceeds_limit() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def work(_: int) -> None:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1

    BatchExecutor().process(list(range(12)), work, max_concurrent=3)
    assert 1 <= peak <= 3


def test_failure_is_isolated_to_its_item() -> None:
    def work(value: int) -> int:
        if value == 2:
            raise RuntimeError("boom")
        return value

    settlements = BatchExecutor().process([1, 2, 3], work, max_concurrent=2)
    assert [s.ok for s in settlements] == [True, False, True]
    assert isinstance(settlements[1].error, RuntimeError)
    assert not settlements[1].timed_out


def test_timed_out_item_is_settled_exactly_once() -> None:
    release = threading.Event()
    settled: List[Settlement] = []
    tracker = ProgressTracker(2)

    def work(value: str) -> str:
        if value == "slow":
            release.wait(5)
        return value

    try:
        settlements = BatchExecutor().process(
            ["slow", "fast"],
            work,
            max_concurrent=2,
            per_item_timeout=0.05,
            on_settled=settled.append,
            progress=tracker,
        )
    finally:
        release.set()
    time.sleep(0.05)

    assert settlements[0].timed_out
    assert isinstance(settlements[0].error, TimeoutExpired)
    assert settlements[1].ok and settlements[1].value == "fast"
    assert sorted(s.index for s in settled) == [0, 1]
    stats = tracker.stats()
    assert (stats.completed, stats.failed) == (1, 1)
    assert tracker.state is ProgressState.FINISHED


def test_abandoned_item_does_not_block_next_window() -> None:
    release = threading.Event()

    def work(value: str) -> str:
        if value == "stuck":
            release.wait(5)
        return value

    started = time.monotonic()
    try:
        settlements = BatchExecutor().process(
            ["stuck", "next"], work, max_concurrent=1, per_item_timeout=0.05
        )
    finally:
        release.set()
    assert time.monotonic() - started < 2
    assert settlements[0].timed_out
    assert settlements[1].ok


def test_zero_concurrency_is_fatal() -> None:
    with pytest.raises(FatalConfigError):
        BatchExecutor().process([1], lambda x: x, max_concurrent=0)


def test_empty_input_returns_nothing() -> None:
    assert BatchExecutor().process([], lambda x: x, max_concurrent=4) == []


def test_callback_errors_do_not_escape() -> None:
    def explode(_: Settlement) -> None:
        raise ValueError("callback broke")

    settlements = BatchExecutor().process([1, 2], lambda x: x, max_concurrent=2, on_settled=explode)
    assert [s.value for s in settlements] == [1, 2]


def test_with_timeout_returns_value() -> None:
    assert with_timeout(lambda: 42, 1.0, "answer") == 42


def test_with_timeout_raises_on_deadline() -> None:
    release = threading.Event()
    try:
        with pytest.raises(TimeoutExpired) as info:
            with_timeout(lambda: release.wait(5), 0.02, "compress")
    finally:
        release.set()
    assert info.value.operation == "compress"


def test_with_timeout_fallback_only_converts_timeouts() -> None:
    release = threading.Event()
    try:
        assert with_timeout_fallback(lambda: release.wait(5), 0.02, "fallback", "slow") == "fallback"
    finally:
        release.set()

    def broken() -> str:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        with_timeout_fallback(broken, 1.0, "fallback", "broken")
