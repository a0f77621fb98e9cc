# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.errors",
#   "purpose": "Error taxonomy, actionable hints, and the bounded failure log for content sync.",
#   "sections": [
#     {
#       "id": "contentsyncerror",
#       "name": "ContentSyncError",
#       "anchor": "class-contentsyncerror",
#       "kind": "class"
#     },
#     {
#       "id": "validationerror",
#       "name": "ValidationError",
#       "anchor": "class-validationerror",
#       "kind": "class"
#     },
#     {
#       "id": "transientioerror",
#       "name": "TransientIOError",
#       "anchor": "class-transientioerror",
#       "kind": "class"
#     },
#     {
#       "id": "persistentcontenterror",
#       "name": "PersistentContentError",
#       "anchor": "class-persistentcontenterror",
#       "kind": "class"
#     },
#     {
#       "id": "fatalconfigerror",
#       "name": "FatalConfigError",
#       "anchor": "class-fatalconfigerror",
#       "kind": "class"
#     },
#     {
#       "id": "get-actionable-error-message",
#       "name": "get_actionable_error_message",
#       "anchor": "function-get-actionable-error-message",
#       "kind": "function"
#     },
#     {
#       "id": "failurelog",
#       "name": "FailureLog",
#       "anchor": "class-failurelog",
#       "kind": "class"
#     },
#     {
#       "id": "log-asset-failure",
#       "name": "log_asset_failure",
#       "anchor": "function-log-asset-failure",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Error taxonomy and failure logging helpers for content sync.

Responsibilities
----------------
- Define the exception hierarchy used across the sync engine. Each class maps
  to one propagation policy:

  * :class:`ValidationError`: malformed reference; never retried, the caller
    substitutes a placeholder immediately.
  * :class:`TransientIOError`: network hiccup or timeout; retried with backoff.
  * :class:`PersistentContentError`: the remote asset is permanently invalid;
    degrades to a placeholder plus a failure-log entry.
  * :class:`FatalConfigError`: misconfiguration or an unusable cache
    directory. A corrupt ledger file is *not* raised as this error; loaders
    discard it and start empty.

- Translate HTTP statuses and reason codes into remediation hints via
  :func:`get_actionable_error_message`.
- Keep an append-only, bounded JSON failure log (:class:`FailureLog`) for
  offline recovery. Writing to it is best-effort: failures are logged at
  debug level and swallowed.

Design Notes
------------
- Exceptions keep ``url``/``item_id``/``details`` so structured loggers can
  serialise them without knowing the concrete type.
- The failure log never grows beyond ``max_entries`` and truncates string
  fields to ``max_field_len`` characters.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .io_utils import atomic_write_text

__all__ = (
    "ContentSyncError",
    "ValidationError",
    "TransientIOError",
    "PersistentContentError",
    "FatalConfigError",
    "TimeoutExpired",
    "get_actionable_error_message",
    "FailureLog",
    "log_asset_failure",
)

LOGGER = logging.getLogger(__name__)


class ContentSyncError(Exception):
    """Base class for every error raised by the sync engine."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        item_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.item_id = item_id
        self.details = details or {}


class ValidationError(ContentSyncError):
    """Raised when an asset reference is malformed or not allowed."""


class TransientIOError(ContentSyncError):
    """Raised for retryable network or disk failures."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        item_id: str | None = None,
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, url=url, item_id=item_id, details=details)
        self.http_status = http_status


class TimeoutExpired(TransientIOError):
    """Raised when a caller stops waiting on an operation."""

    def __init__(self, operation: str, timeout_s: float) -> None:
        super().__init__(f'Operation "{operation}" timed out after {timeout_s:g}s')
        self.operation = operation
        self.timeout_s = timeout_s


class PersistentContentError(ContentSyncError):
    """Raised when a remote asset is permanently unavailable or unusable."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        item_id: str | None = None,
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, url=url, item_id=item_id, details=details)
        self.http_status = http_status


class FatalConfigError(ContentSyncError):
    """Raised when the run cannot proceed because of configuration or cache setup."""


def get_actionable_error_message(
    http_status: int | None,
    reason_code: str | None = None,
) -> tuple[str, str | None]:
    """Return a user-facing message and an optional remediation hint.

    Examples:
        >>> get_actionable_error_message(403)[0]
        'Access forbidden (HTTP 403)'
    """

    if http_status == 403:
        return (
            "Access forbidden (HTTP 403)",
            "The download link has probably expired. Re-fetch the document to get a fresh link.",
        )
    if http_status == 404:
        return (
            "Asset not found (HTTP 404)",
            "The asset was removed upstream. The document keeps a placeholder.",
        )
    if http_status == 429:
        return (
            "Rate limit exceeded (HTTP 429)",
            "Lower concurrency or set a rate-limit multiplier below 1.0.",
        )
    if http_status in (502, 503, 504):
        return (
            f"Upstream temporarily unavailable (HTTP {http_status})",
            "Retry later; transient upstream errors are retried automatically.",
        )
    if http_status and http_status >= 400:
        return (f"HTTP error {http_status}", None)

    if reason_code == "invalid_url":
        return ("Invalid asset reference", "Fix the reference in the source document.")
    if reason_code == "timeout":
        return (
            "Asset download timed out",
            "Increase download_timeout_s or check network latency.",
        )
    if reason_code == "connection_error":
        return ("Failed to establish connection", "Check DNS resolution and proxy settings.")

    return ("Asset processing failed", None)


def _truncate(value: Any, max_len: int) -> Any:
    if isinstance(value, str):
        return value[:max_len]
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return str(value)[:max_len]


class FailureLog:
    """Bounded JSON array of failure records kept for manual recovery.

    Each ``append`` rewrites the whole file through
    :func:`~.io_utils.atomic_write_text`. Oldest records are dropped once
    ``max_entries`` is exceeded. Any error while writing is swallowed.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        max_entries: int = 5000,
        max_field_len: int = 2000,
        enabled: bool = True,
    ) -> None:
        self.path = Path(path)
        self.max_entries = max(1, max_entries)
        self.max_field_len = max(1, max_field_len)
        self.enabled = enabled
        self._lock = threading.Lock()

    def _read(self) -> List[Dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        return data if isinstance(data, list) else []

    def entries(self) -> List[Dict[str, Any]]:
        """Return the records currently on disk."""

        with self._lock:
            return self._read()

    def append(self, entry: Dict[str, Any]) -> None:
        """Append ``entry``; never raises."""

        if not self.enabled:
            return
        try:
            safe = {str(k): _truncate(v, self.max_field_len) for k, v in (entry or {}).items()}
        except Exception:  # pragma: no cover - exotic mappings
            safe = {"message": "non-serializable log entry"}
        safe.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

        with self._lock:
            try:
                records = self._read()
                records.append(safe)
                if len(records) > self.max_entries:
                    records = records[-self.max_entries :]
                atomic_write_text(self.path, json.dumps(records, indent=2))
            except Exception as exc:
                LOGGER.debug("Failure log write skipped: %s", exc)


def log_asset_failure(
    logger: logging.Logger,
    *,
    url: str,
    item_id: str | None,
    exception: BaseException | None = None,
    reason_code: str | None = None,
    failure_log: Optional[FailureLog] = None,
    **extra: Any,
) -> None:
    """Emit a structured warning for a failed asset and record it for recovery."""

    http_status = getattr(exception, "http_status", None)
    error_msg, suggestion = get_actionable_error_message(http_status, reason_code)

    log_entry: Dict[str, Any] = {
        "url": url,
        "item_id": item_id,
        "http_status": http_status,
        "reason_code": reason_code,
        "error_message": error_msg,
        "fallback_used": True,
    }
    if exception is not None:
        log_entry["exception_type"] = type(exception).__name__
        log_entry["exception_message"] = str(exception)
    log_entry.update(extra)

    logger.warning("Asset failed: %s", error_msg, extra={"extra_fields": log_entry})
    if suggestion:
        logger.debug("Suggestion: %s", suggestion, extra={"extra_fields": {"url": url}})

    if failure_log is not None:
        failure_log.append(log_entry)
