# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.batch",
#   "purpose": "Windowed bounded-concurrency batch execution with cooperative timeouts",
#   "sections": [
#     {
#       "id": "settlement",
#       "name": "Settlement",
#       "anchor": "class-settlement",
#       "kind": "class"
#     },
#     {
#       "id": "with-timeout",
#       "name": "with_timeout",
#       "anchor": "function-with-timeout",
#       "kind": "function"
#     },
#     {
#       "id": "with-timeout-fallback",
#       "name": "with_timeout_fallback",
#       "anchor": "function-with-timeout-fallback",
#       "kind": "function"
#     },
#     {
#       "id": "batchexecutor",
#       "name": "BatchExecutor",
#       "anchor": "class-batchexecutor",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Bounded-concurrency batch execution.

Responsibilities
----------------
- Run a callable over a list of items in windows of ``max_concurrent``. Each
  window is fully settled before the next one starts, and a failing item
  never stops its window-mates.
- Enforce an optional per-item timeout. A timed-out item counts as a failed
  settlement while the underlying call keeps running in the background;
  Python threads cannot be cancelled, so abandonment is cooperative.
- Report every item to the progress tracker and to ``on_settled`` exactly
  once, even if an abandoned call finishes later.

Design Notes
------------
- Every window gets its own executor from
  :func:`DocsMirror.concurrency.create_executor`. The executor is shut down
  with ``wait=False`` so an abandoned thread never delays the next window or
  occupies one of its slots.
- Results are returned in input order regardless of completion order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, Set, TypeVar

from DocsMirror.concurrency import create_executor

from .errors import FatalConfigError, TimeoutExpired
from .progress import ProgressTracker

__all__ = ["BatchExecutor", "Settlement", "with_timeout", "with_timeout_fallback"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Settlement(Generic[T, R]):
    """Outcome of one item in a batch."""

    index: int
    item: T
    ok: bool
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, TimeoutExpired)


def with_timeout(fn: Callable[[], R], timeout_s: float, operation: str) -> R:
    """Call ``fn`` and stop waiting after ``timeout_s`` seconds.

    The call runs on a dedicated worker thread. On timeout the worker is left
    to finish on its own and :class:`TimeoutExpired` is raised.

    Raises:
        TimeoutExpired: If ``fn`` does not return in time.
        Exception: Whatever ``fn`` raised, when it failed before the deadline.
    """

    executor, _ = create_executor("io", 1, name="contentsync-timeout")
    assert executor is not None
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except futures.TimeoutError as exc:
            raise TimeoutExpired(operation, timeout_s) from exc
    finally:
        executor.shutdown(wait=False)


def with_timeout_fallback(
    fn: Callable[[], R],
    timeout_s: float,
    fallback: R,
    operation: str,
) -> R:
    """Like :func:`with_timeout` but return ``fallback`` when time runs out.

    Only a timeout is converted; other exceptions propagate.
    """

    try:
        return with_timeout(fn, timeout_s, operation)
    except TimeoutExpired:
        LOGGER.warning("%s timed out after %gs, using fallback", operation, timeout_s)
        return fallback


class _SettleOnce:
    """First-writer-wins guard keyed by item index."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._settled: Set[int] = set()

    def claim(self, index: int) -> bool:
        with self._lock:
            if index in self._settled:
                return False
            self._settled.add(index)
            return True


class BatchExecutor:
    """Runs ``fn`` over items with at most ``max_concurrent`` in flight.

    Example:
        >>> executor = BatchExecutor()
        >>> [s.value for s in executor.process([1, 2, 3], lambda x: x * 2, max_concurrent=2)]
        [2, 4, 6]
    """

    def __init__(self, *, name: str = "contentsync-batch", clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock

    def process(
        self,
        items: Sequence[T],
        fn: Callable[[T], R],
        *,
        max_concurrent: int,
        per_item_timeout: Optional[float] = None,
        on_settled: Optional[Callable[[Settlement[T, R]], None]] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> List[Settlement[T, R]]:
        """Process ``items`` and return one :class:`Settlement` per item, in order.

        Args:
            items: Work items.
            fn: Callable applied to each item on a worker thread.
            max_concurrent: Window size; must be at least one.
            per_item_timeout: Seconds before an item is abandoned; ``None`` or
                a non-positive value disables the timeout.
            on_settled: Invoked once per item from the calling thread.
            progress: Tracker receiving ``start_item``/``complete_item``.

        Raises:
            FatalConfigError: If ``max_concurrent`` is below one.
        """

        if max_concurrent < 1:
            raise FatalConfigError(f"max_concurrent must be >= 1, got {max_concurrent}")
        timeout = per_item_timeout if per_item_timeout and per_item_timeout > 0 else None

        results: List[Optional[Settlement[T, R]]] = [None] * len(items)
        guard = _SettleOnce()

        def settle(settlement: Settlement[T, R]) -> None:
            if not guard.claim(settlement.index):
                return
            results[settlement.index] = settlement
            if progress is not None:
                progress.complete_item(settlement.ok)
            if on_settled is not None:
                try:
                    on_settled(settlement)
                except Exception:
                    LOGGER.exception("on_settled callback failed for item %d", settlement.index)

        for start in range(0, len(items), max_concurrent):
            window = list(enumerate(items[start : start + max_concurrent], start=start))
            self._run_window(window, fn, timeout, settle, progress)

        return [s for s in results if s is not None]

    def _run_window(
        self,
        window: List[tuple[int, T]],
        fn: Callable[[T], R],
        timeout: Optional[float],
        settle: Callable[[Settlement[T, R]], None],
        progress: Optional[ProgressTracker],
    ) -> None:
        executor, needs_shutdown = create_executor("io", len(window), name=self.name)
        assert executor is not None
        try:
            submitted: List[tuple[int, T, futures.Future]] = []
            for index, item in window:
                if progress is not None:
                    progress.start_item()
                submitted.append((index, item, executor.submit(fn, item)))

            deadline = self._clock() + timeout if timeout is not None else None
            for index, item, future in submitted:
                remaining = None if deadline is None else max(0.0, deadline - self._clock())
                try:
                    value = future.result(timeout=remaining)
                except futures.TimeoutError:
                    assert timeout is not None
                    LOGGER.warning(
                        "Item %d abandoned after %gs",
                        index,
                        timeout,
                        extra={"extra_fields": {"index": index, "timeout_s": timeout}},
                    )
                    settle(
                        Settlement(
                            index=index,
                            item=item,
                            ok=False,
                            error=TimeoutExpired(f"item {index}", timeout),
                        )
                    )
                except Exception as exc:
                    settle(Settlement(index=index, item=item, ok=False, error=exc))
                else:
                    settle(Settlement(index=index, item=item, ok=True, value=value))
        finally:
            if needs_shutdown:
                executor.shutdown(wait=False)
