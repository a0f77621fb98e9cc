# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.download",
#   "purpose": "Resolve remote asset references into locally stored, content-addressed files",
#   "sections": [
#     {
#       "id": "assetresult",
#       "name": "AssetResult",
#       "anchor": "class-assetresult",
#       "kind": "class"
#     },
#     {
#       "id": "build-http-client",
#       "name": "build_http_client",
#       "anchor": "function-build-http-client",
#       "kind": "function"
#     },
#     {
#       "id": "classify-response",
#       "name": "classify_response",
#       "anchor": "function-classify-response",
#       "kind": "function"
#     },
#     {
#       "id": "build-download-retrying",
#       "name": "build_download_retrying",
#       "anchor": "function-build-download-retrying",
#       "kind": "function"
#     },
#     {
#       "id": "assetresolver",
#       "name": "AssetResolver",
#       "anchor": "class-assetresolver",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Download and resolve pipeline for embedded assets.

Responsibilities
----------------
- Validate a reference before any network I/O; invalid references fail
  immediately without retries.
- Answer from :class:`~.asset_cache.AssetCache` when a fresh entry exists.
- Download misses with :mod:`httpx` under a :mod:`tenacity` retry policy:
  exponential backoff plus jitter, transient failures only. HTTP 4xx other
  than 408 and 429 is permanent and is not retried.
- Sniff the format, resize and compress through
  :class:`~.imaging.ImageProcessor`, write the bytes atomically under a
  content-hash filename and record the cache entry.
- Report failures as :class:`AssetResult` values, never as exceptions, and
  append them to the bounded failure log.

Design Notes
------------
- Concurrent ``resolve`` calls for the same URL share one in-flight download.
  The first caller owns a :class:`~concurrent.futures.Future` registered
  under the URL; later callers wait on it and report a cache hit. This
  closes the check-then-act window between a cache miss and the write.
- Identical bytes fetched through different URLs map to one stored file; the
  second download skips processing and writing entirely.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx
import tenacity
from tenacity import RetryCallState, retry_if_exception_type

from .asset_cache import AssetCache, asset_filename
from .errors import (
    ContentSyncError,
    FailureLog,
    PersistentContentError,
    TransientIOError,
    ValidationError,
    log_asset_failure,
)
from .formats import choose_format, extension_for
from .imaging import ImageProcessor, ProcessingMetrics
from .io_utils import atomic_write_bytes
from .settings import AssetCfg
from .urls import validate_asset_url

__all__ = [
    "AssetResolver",
    "AssetResult",
    "build_download_retrying",
    "build_http_client",
    "classify_response",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})
_JITTER_MAX_S = 0.25


@dataclass(frozen=True)
class AssetResult:
    """Outcome of resolving one reference."""

    url: str
    success: bool
    new_path: Optional[str] = None
    saved_bytes: int = 0
    from_cache: bool = False
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)


def build_http_client(cfg: AssetCfg, *, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Create the :class:`httpx.Client` used for asset downloads."""

    return httpx.Client(
        transport=transport,
        timeout=httpx.Timeout(cfg.download_timeout_s),
        headers={"User-Agent": cfg.user_agent, "Accept": "*/*"},
        follow_redirects=True,
    )


def classify_response(response: httpx.Response, url: str) -> None:
    """Raise the taxonomy error matching an unsuccessful ``response``.

    Raises:
        TransientIOError: For 408, 429 and 5xx.
        PersistentContentError: For every other status of 400 or above.
    """

    status = response.status_code
    if status < 400:
        return
    message = f"HTTP {status} for {url}"
    if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:
        raise TransientIOError(message, url=url, http_status=status)
    raise PersistentContentError(message, url=url, http_status=status)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    next_action = retry_state.next_action
    wait_ms = int(next_action.sleep * 1000) if next_action is not None else 0
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    LOGGER.warning(
        "retry attempt=%d wait_ms=%d elapsed_s=%.1f error=%s",
        retry_state.attempt_number,
        wait_ms,
        retry_state.seconds_since_start,
        exc,
    )


def build_download_retrying(
    cfg: AssetCfg,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> tenacity.Retrying:
    """Tenacity controller for asset downloads.

    Waits ``min(backoff_max_s, backoff_base_s * 2**(n-1))`` plus up to 250 ms
    of jitter between attempts and retries only :class:`TransientIOError`.
    """

    wait = tenacity.wait_exponential(
        multiplier=cfg.backoff_base_s, max=cfg.backoff_max_s
    ) + tenacity.wait_random(0, _JITTER_MAX_S)
    return tenacity.Retrying(
        retry=retry_if_exception_type(TransientIOError),
        stop=tenacity.stop_after_attempt(cfg.download_attempts),
        wait=wait,
        sleep=sleep,
        before_sleep=_log_before_sleep,
        reraise=True,
    )


class AssetResolver:
    """Turns remote asset URLs into stable local references.

    Args:
        cache: Durable asset cache.
        cfg: Asset settings; defaults are read from the environment.
        client: Optional preconfigured client. A client created here is closed
            by :meth:`close`.
        processor: Image processor; built from ``cfg`` when omitted.
        failure_log: Optional bounded failure log.
        sleep: Sleep used between retries, replaced in tests.

    Example:
        >>> resolver = AssetResolver(cache)  # doctest: +SKIP
        >>> resolver.resolve("https://example.com/a.png").new_path  # doctest: +SKIP
        '/images/3f9a0c1b2d4e5f60.png'
    """

    def __init__(
        self,
        cache: AssetCache,
        *,
        cfg: Optional[AssetCfg] = None,
        client: Optional[httpx.Client] = None,
        processor: Optional[ImageProcessor] = None,
        failure_log: Optional[FailureLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.cfg = cfg or AssetCfg()
        self._owns_client = client is None
        self.client = client or build_http_client(self.cfg)
        self.processor = processor or ImageProcessor(
            max_width=self.cfg.max_width,
            min_size_for_processing=self.cfg.min_size_for_processing,
            compress_timeout_s=self.cfg.compress_timeout_s,
            quality=self.cfg.jpeg_quality,
        )
        self.failure_log = failure_log
        self._sleep = sleep
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.download_count = 0

    def __enter__(self) -> "AssetResolver":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    @property
    def assets_dir(self) -> Path:
        return self.cache.assets_dir

    def local_reference(self, filename: str) -> str:
        return f"{self.cfg.public_prefix.rstrip('/')}/{filename}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve(
        self,
        url: str,
        *,
        item_id: Optional[str] = None,
        item_last_modified: Optional[str] = None,
        index: int = 0,
        metrics: Optional[ProcessingMetrics] = None,
    ) -> AssetResult:
        """Resolve ``url`` to a local reference. Never raises for asset failures."""

        validation = validate_asset_url(
            url,
            allowed_schemes=self.cfg.allowed_schemes,
            allowed_hosts=self.cfg.allowed_hosts,
        )
        if not validation.is_valid or validation.sanitized_url is None:
            error = ValidationError(validation.error or "invalid URL", url=str(url), item_id=item_id)
            return self._failure(str(url), error, item_id=item_id, index=index, reason_code="invalid_url")
        clean_url = validation.sanitized_url

        cached = self._from_cache(clean_url, item_last_modified)
        if cached is not None:
            return cached

        with self._lock:
            future = self._in_flight.get(clean_url)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[clean_url] = future
        assert future is not None

        if not owner:
            shared: AssetResult = future.result()
            if shared.success:
                return replace(shared, saved_bytes=0, from_cache=True)
            return shared

        try:
            result = self._from_cache(clean_url, item_last_modified) or self._fetch_and_store(
                clean_url,
                item_id=item_id,
                item_last_modified=item_last_modified,
                index=index,
                metrics=metrics,
            )
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
        finally:
            with self._lock:
                self._in_flight.pop(clean_url, None)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _from_cache(self, url: str, item_last_modified: Optional[str]) -> Optional[AssetResult]:
        entry = self.cache.get(url, item_last_modified)
        if entry is None:
            return None
        reference = self.local_reference(entry.filename)
        LOGGER.info("Using cached asset: %s", reference, extra={"extra_fields": {"url": url}})
        return AssetResult(url=url, success=True, new_path=reference, saved_bytes=0, from_cache=True)

    def _fetch_once(self, url: str) -> httpx.Response:
        try:
            response = self.client.get(url)
        except httpx.TimeoutException as exc:
            raise TransientIOError(f"Timeout downloading {url}: {exc}", url=url) from exc
        except httpx.TransportError as exc:
            raise TransientIOError(f"Connection error for {url}: {exc}", url=url) from exc
        classify_response(response, url)
        if not response.content:
            raise PersistentContentError(f"Empty response body for {url}", url=url)
        return response

    def download(self, url: str) -> httpx.Response:
        """Fetch ``url`` with retries.

        Raises:
            TransientIOError: When every attempt failed transiently.
            PersistentContentError: On a non-retryable response.
        """

        with self._lock:
            self.download_count += 1
        retrying = build_download_retrying(self.cfg, sleep=self._sleep)
        return retrying(self._fetch_once, url)

    def _fetch_and_store(
        self,
        url: str,
        *,
        item_id: Optional[str],
        item_last_modified: Optional[str],
        index: int,
        metrics: Optional[ProcessingMetrics],
    ) -> AssetResult:
        try:
            response = self.download(url)
            raw = response.content
            content_hash = hashlib.sha256(raw).hexdigest()
            fmt = choose_format(raw, response.headers.get("content-type"), url)

            filename = self.cache.find_by_hash(content_hash)
            saved_bytes = 0
            if filename is None:
                processed = self.processor.process(raw, fmt, metrics=metrics, label=f"{item_id or 'asset'}#{index}")
                filename = asset_filename(content_hash, extension_for(fmt))
                atomic_write_bytes(self.assets_dir / filename, processed.data)
                saved_bytes = processed.saved_bytes
            else:
                LOGGER.debug("Reusing stored asset %s for %s", filename, url)

            self.cache.set(
                url,
                filename,
                content_hash=content_hash,
                item_id=item_id,
                item_last_modified=item_last_modified,
            )
        except (ContentSyncError, OSError) as exc:
            return self._failure(url, exc, item_id=item_id, index=index)
        except Exception as exc:
            LOGGER.exception("Unexpected error while storing %s", url)
            return self._failure(url, exc, item_id=item_id, index=index, reason_code="unexpected")

        reference = self.local_reference(filename)
        LOGGER.info(
            "Stored asset %s",
            reference,
            extra={"extra_fields": {"url": url, "item_id": item_id, "saved_bytes": saved_bytes}},
        )
        return AssetResult(url=url, success=True, new_path=reference, saved_bytes=saved_bytes)

    def _failure(
        self,
        url: str,
        exc: BaseException,
        *,
        item_id: Optional[str],
        index: int,
        reason_code: Optional[str] = None,
    ) -> AssetResult:
        if reason_code is None:
            cause = exc.__cause__
            if isinstance(cause, httpx.TimeoutException):
                reason_code = "timeout"
            elif isinstance(cause, httpx.TransportError):
                reason_code = "connection_error"
        log_asset_failure(
            LOGGER,
            url=url,
            item_id=item_id,
            exception=exc,
            reason_code=reason_code,
            failure_log=self.failure_log,
            asset_index=index,
        )
        return AssetResult(url=url, success=False, error=str(exc), exception=exc)
