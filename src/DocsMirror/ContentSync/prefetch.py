"""In-memory prefetch layer keyed by item id and modification stamp.

:class:`PrefetchCache` is a bounded LRU over already fetched raw values.
:class:`CachedLoader` sits in front of a fetch callable and answers, in order,
from the per-item map, the LRU, an in-flight fetch for the same key, or a new
fetch. Fetched values can be validated; an invalid value (for example one
that still embeds expiring links) is re-fetched with a linear delay and used
anyway after the last attempt.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Literal, Optional, Tuple, TypeVar

__all__ = [
    "CachedLoader",
    "DEFAULT_PREFETCH_SIZE",
    "LoadResult",
    "PrefetchCache",
    "build_cache_key",
    "clamp_prefetch_size",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PREFETCH_SIZE = 1000
MAX_PREFETCH_SIZE = 10000


def build_cache_key(item_id: str, last_modified: Optional[str] = None) -> str:
    """Return ``"<id>:<stamp>"`` with ``unknown`` standing in for a missing stamp.

    >>> build_cache_key("abc", "2024-01-01T00:00:00Z")
    'abc:2024-01-01T00:00:00Z'
    >>> build_cache_key("abc")
    'abc:unknown'
    """
    return f"{item_id}:{last_modified if last_modified is not None else 'unknown'}"


def clamp_prefetch_size(value: object) -> int:
    """Clamp a configured capacity to ``[1, 10000]``; junk yields the default."""
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        LOGGER.warning("Invalid prefetch size %r, using default %d", value, DEFAULT_PREFETCH_SIZE)
        return DEFAULT_PREFETCH_SIZE
    if parsed < 1:
        LOGGER.warning("Invalid prefetch size %r, using default %d", value, DEFAULT_PREFETCH_SIZE)
        return DEFAULT_PREFETCH_SIZE
    if parsed > MAX_PREFETCH_SIZE:
        LOGGER.warning("Prefetch size %d exceeds maximum, using %d", parsed, MAX_PREFETCH_SIZE)
        return MAX_PREFETCH_SIZE
    return parsed


class PrefetchCache(Generic[T]):
    """Least-recently-used mapping with a fixed capacity."""

    def __init__(self, max_size: int = DEFAULT_PREFETCH_SIZE) -> None:
        self.max_size = max(1, int(max_size))
        self._data: "OrderedDict[str, T]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: str, value: T) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            elif len(self._data) >= self.max_size:
                self._data.popitem(last=False)
            self._data[key] = value

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    data: T
    source: Literal["cache", "fetched"]


class CachedLoader(Generic[T]):
    """Fetch-through loader with in-flight request deduplication.

    Args:
        fetch: Callable returning the raw value for an item id.
        cache: Shared :class:`PrefetchCache`.
        validate: Optional predicate; ``False`` triggers a re-fetch.
        max_attempts: Fetches per key when validation keeps failing.
        retry_delay_s: Linear delay unit between validation retries.
        sleep: Injectable sleep, replaced in tests.
    """

    def __init__(
        self,
        fetch: Callable[[str], T],
        *,
        cache: Optional[PrefetchCache[T]] = None,
        validate: Optional[Callable[[T], bool]] = None,
        max_attempts: int = 3,
        retry_delay_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetch = fetch
        self.cache: PrefetchCache[T] = cache if cache is not None else PrefetchCache()
        self.validate = validate
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep
        self._by_item: Dict[str, Tuple[str, T]] = {}
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.cache_hits = 0
        self.fetch_count = 0

    def load(self, item_id: str, last_modified: Optional[str] = None) -> LoadResult[T]:
        """Return the value for ``item_id`` at ``last_modified``.

        Raises:
            Exception: Whatever ``fetch`` raised; the failed key is not cached.
        """

        key = build_cache_key(item_id, last_modified)
        with self._lock:
            existing = self._by_item.get(item_id)
            if existing is not None and existing[0] == key:
                self.cache_hits += 1
                return LoadResult(existing[1], "cache")
            if self.cache.has(key):
                cached = self.cache.get(key)
                if cached is not None:
                    self.cache_hits += 1
                    self._by_item[item_id] = (key, cached)
                    return LoadResult(cached, "cache")
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future
                self.fetch_count += 1

        assert future is not None
        if owner:
            try:
                value = self._fetch_validated(item_id, key)
            except BaseException as exc:
                self.cache.delete(key)
                future.set_exception(exc)
            else:
                future.set_result(value)
            finally:
                with self._lock:
                    self._in_flight.pop(key, None)

        value = future.result()
        with self._lock:
            self._by_item[item_id] = (key, value)
        return LoadResult(value, "fetched")

    def _fetch_validated(self, item_id: str, key: str) -> T:
        for attempt in range(1, self.max_attempts + 1):
            value = self.fetch(item_id)
            if self.validate is None or self.validate(value):
                break
            if attempt < self.max_attempts:
                delay = attempt * self.retry_delay_s
                LOGGER.warning(
                    "Content validation failed for %s (attempt %d/%d), retrying in %.1fs",
                    item_id,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                self._sleep(delay)
            else:
                LOGGER.warning(
                    "Content validation failed for %s after %d attempts, using result anyway",
                    item_id,
                    self.max_attempts,
                )
        self.cache.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._by_item.clear()
        self.cache.clear()
