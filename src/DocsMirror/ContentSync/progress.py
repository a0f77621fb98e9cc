"""Aggregate progress tracking for bounded batches.

:class:`ProgressTracker` is a small state machine over start/complete events::

    accumulating --(completed + failed == total | finish())--> finished
    accumulating --(fail())------------------------------------> failed

Both terminal states are sticky; later calls are no-ops. The tracker never
prints: state changes are pushed to zero or more :class:`ProgressSink`
objects, so the same tracker drives a tqdm bar in the CLI, log lines in CI
and a recording sink in tests.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol

from tqdm import tqdm

__all__ = [
    "LoggingProgressSink",
    "ProgressSink",
    "ProgressState",
    "ProgressStats",
    "ProgressTracker",
    "TqdmProgressSink",
    "format_duration",
]

logger = logging.getLogger(__name__)


class ProgressState(str, enum.Enum):
    ACCUMULATING = "accumulating"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressStats:
    """Immutable view of a tracker at one instant."""

    operation: str
    total: int
    completed: int
    in_progress: int
    failed: int
    elapsed_s: float
    eta_s: Optional[float]
    state: ProgressState

    @property
    def percentage(self) -> float:
        return (self.completed / self.total * 100.0) if self.total > 0 else 0.0

    @property
    def settled(self) -> int:
        return self.completed + self.failed


class ProgressSink(Protocol):
    """Receives tracker transitions."""

    def on_update(self, stats: ProgressStats) -> None: ...

    def on_finish(self, stats: ProgressStats) -> None: ...

    def on_fail(self, stats: ProgressStats, message: Optional[str]) -> None: ...


def format_duration(seconds: float) -> str:
    """Render ``seconds`` as ``850ms``, ``42s``, ``3m`` or ``3m 5s``."""

    ms = seconds * 1000.0
    if ms < 1000:
        return f"{round(ms)}ms"
    whole = round(seconds)
    if whole < 60:
        return f"{whole}s"
    minutes, rem = divmod(whole, 60)
    return f"{minutes}m" if rem == 0 else f"{minutes}m {rem}s"


class ProgressTracker:
    """Counts, ETA and terminal state for one batch of ``total`` items."""

    def __init__(
        self,
        total: int,
        operation: str = "items",
        *,
        sinks: Iterable[ProgressSink] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        self.total = total
        self.operation = operation
        self._sinks: List[ProgressSink] = list(sinks)
        self._clock = clock
        self._start = clock()
        self._completed = 0
        self._in_progress = 0
        self._failed = 0
        self._state = ProgressState.ACCUMULATING
        self._lock = threading.Lock()

    @property
    def state(self) -> ProgressState:
        return self._state

    @property
    def is_finished(self) -> bool:
        return self._state is not ProgressState.ACCUMULATING

    def add_sink(self, sink: ProgressSink) -> None:
        self._sinks.append(sink)

    def start_item(self) -> None:
        """Mark one item as in flight."""

        with self._lock:
            if self.is_finished:
                return
            self._in_progress += 1
            stats = self._stats_locked()
        self._emit_update(stats)

    def complete_item(self, success: bool) -> None:
        """Settle one in-flight item; auto-finishes once every item settled."""

        with self._lock:
            if self.is_finished:
                return
            self._in_progress = max(0, self._in_progress - 1)
            if success:
                self._completed += 1
            else:
                self._failed += 1
            stats = self._stats_locked()
            done = self._completed + self._failed >= self.total
        self._emit_update(stats)
        if done:
            self.finish()

    def finish(self) -> None:
        """Enter the ``finished`` state (idempotent)."""

        with self._lock:
            if self.is_finished:
                return
            self._state = ProgressState.FINISHED
            stats = self._stats_locked()
        for sink in self._sinks:
            sink.on_finish(stats)

    def fail(self, message: Optional[str] = None) -> None:
        """Force the ``failed`` state (idempotent)."""

        with self._lock:
            if self.is_finished:
                return
            self._state = ProgressState.FAILED
            stats = self._stats_locked()
        for sink in self._sinks:
            sink.on_fail(stats, message)

    def stats(self) -> ProgressStats:
        with self._lock:
            return self._stats_locked()

    def eta_seconds(self) -> Optional[float]:
        with self._lock:
            return self._eta_locked(self._clock() - self._start)

    def _eta_locked(self, elapsed: float) -> Optional[float]:
        if self._completed == 0:
            return None
        remaining = self.total - self._completed - self._in_progress
        if remaining <= 0:
            return None
        return (elapsed / self._completed) * remaining

    def _stats_locked(self) -> ProgressStats:
        elapsed = self._clock() - self._start
        return ProgressStats(
            operation=self.operation,
            total=self.total,
            completed=self._completed,
            in_progress=self._in_progress,
            failed=self._failed,
            elapsed_s=elapsed,
            eta_s=self._eta_locked(elapsed),
            state=self._state,
        )

    def _emit_update(self, stats: ProgressStats) -> None:
        for sink in self._sinks:
            sink.on_update(stats)


def describe(stats: ProgressStats) -> str:
    """One-line description used by the text sinks."""

    if stats.state is ProgressState.ACCUMULATING:
        text = (
            f"Processing {stats.operation}: {stats.completed}/{stats.total} "
            f"({round(stats.percentage)}%)"
        )
        if stats.in_progress:
            text += f" | {stats.in_progress} in progress"
        if stats.failed:
            text += f" | {stats.failed} failed"
        if stats.completed == 0:
            text += " | ETA: calculating..."
        elif stats.eta_s is not None:
            text += f" | ETA: {format_duration(stats.eta_s)}"
        return text
    duration = format_duration(stats.elapsed_s)
    if stats.failed:
        return (
            f"Processed {stats.operation}: {stats.completed} succeeded, "
            f"{stats.failed} failed ({duration})"
        )
    return f"Processed {stats.total} {stats.operation} successfully ({duration})"


class LoggingProgressSink:
    """Logs progress lines, throttled to every ``every`` settlements."""

    def __init__(self, log: Optional[logging.Logger] = None, *, every: int = 10) -> None:
        self.log = log or logger
        self.every = max(1, every)

    def on_update(self, stats: ProgressStats) -> None:
        if stats.settled and (stats.settled == 1 or stats.settled % self.every == 0):
            self.log.info(describe(stats))

    def on_finish(self, stats: ProgressStats) -> None:
        self.log.info(describe(stats))

    def on_fail(self, stats: ProgressStats, message: Optional[str]) -> None:
        self.log.warning(message or describe(stats))


class TqdmProgressSink:
    """Renders a tracker as a :mod:`tqdm` bar."""

    def __init__(self, *, disable: Optional[bool] = None, leave: bool = True) -> None:
        self._bar: Optional[tqdm] = None
        self._disable = disable
        self._leave = leave
        self._lock = threading.Lock()

    def _ensure_bar(self, stats: ProgressStats) -> tqdm:
        if self._bar is None:
            self._bar = tqdm(
                total=stats.total,
                desc=stats.operation,
                unit="item",
                disable=self._disable,
                leave=self._leave,
            )
        return self._bar

    def on_update(self, stats: ProgressStats) -> None:
        with self._lock:
            bar = self._ensure_bar(stats)
            bar.n = stats.settled
            bar.set_postfix(in_progress=stats.in_progress, failed=stats.failed, refresh=False)
            bar.refresh()

    def on_finish(self, stats: ProgressStats) -> None:
        with self._lock:
            bar = self._ensure_bar(stats)
            bar.n = stats.settled
            bar.set_description_str(describe(stats))
            bar.close()

    def on_fail(self, stats: ProgressStats, message: Optional[str]) -> None:
        with self._lock:
            bar = self._ensure_bar(stats)
            bar.set_description_str(message or describe(stats))
            bar.close()
