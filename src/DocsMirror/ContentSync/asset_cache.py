# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.asset_cache",
#   "purpose": "Durable content-addressed cache mapping source asset URLs to local files",
#   "sections": [
#     {
#       "id": "parse-timestamp",
#       "name": "parse_timestamp",
#       "anchor": "function-parse-timestamp",
#       "kind": "function"
#     },
#     {
#       "id": "asset-filename",
#       "name": "asset_filename",
#       "anchor": "function-asset-filename",
#       "kind": "function"
#     },
#     {
#       "id": "assetcacheentry",
#       "name": "AssetCacheEntry",
#       "anchor": "class-assetcacheentry",
#       "kind": "class"
#     },
#     {
#       "id": "assetcachestats",
#       "name": "AssetCacheStats",
#       "anchor": "class-assetcachestats",
#       "kind": "class"
#     },
#     {
#       "id": "assetcache",
#       "name": "AssetCache",
#       "anchor": "class-assetcache",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Durable asset cache.

Responsibilities
----------------
- Map a source URL to the local file that holds its downloaded bytes. One
  JSON record per URL lives at ``<index_dir>/<md5(url)>.json``; the binaries
  live in ``assets_dir`` under content-hash filenames, so identical bytes
  reached through different URLs share one file.
- Treat an entry as valid only while its backing file exists. Validity is
  checked on every read; records whose file vanished are removed lazily on
  :meth:`AssetCache.get` or in bulk by :meth:`AssetCache.cleanup`.
- Expire entries: a record carrying the source item's modification stamp
  is stale once the caller presents a newer stamp; a record without one
  expires after ``ttl_days``.

Design Notes
------------
- Only the sanitized base filename is stored. Names that are empty or
  contain ``..`` or a path separator are rejected on write and resolve to
  nothing on read, so a tampered record cannot point outside ``assets_dir``.
- Records are written with :func:`~.io_utils.atomic_write_json`. Distinct
  URLs never share a record file; two writers racing on the same URL both
  write a complete record and the last one wins.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from .errors import FatalConfigError, ValidationError
from .io_utils import atomic_write_json, read_json

__all__ = [
    "AssetCache",
    "AssetCacheEntry",
    "AssetCacheStats",
    "asset_filename",
    "parse_timestamp",
]

LOGGER = logging.getLogger(__name__)

CONTENT_HASH_PREFIX_LEN = 16


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 stamp (``Z`` suffix allowed); ``None`` if unparseable."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def asset_filename(content_hash: str, extension: str) -> str:
    """Content-addressed filename, e.g. ``"3f9a0c1b2d4e5f60.png"``."""

    ext = extension if extension.startswith(".") else f".{extension}"
    return f"{content_hash[:CONTENT_HASH_PREFIX_LEN]}{ext.lower()}"


def _safe_basename(name: str) -> Optional[str]:
    base = os.path.basename(name or "")
    if not base or ".." in base or os.sep in base or "/" in base or "\\" in base:
        return None
    return base


@dataclass(frozen=True)
class AssetCacheEntry:
    """One cached source reference."""

    url: str
    filename: str
    content_hash: str
    created_at: str
    item_id: Optional[str] = None
    item_last_modified: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "AssetCacheEntry":
        return cls(
            url=str(payload["url"]),
            filename=str(payload["filename"]),
            content_hash=str(payload.get("content_hash", "")),
            created_at=str(payload.get("created_at", "")),
            item_id=payload.get("item_id"),
            item_last_modified=payload.get("item_last_modified"),
        )


@dataclass(frozen=True)
class AssetCacheStats:
    total_entries: int
    valid_entries: int


class AssetCache:
    """Content-addressed mapping of source URL to local asset file.

    Args:
        index_dir: Directory for the per-URL JSON records.
        assets_dir: Directory holding asset binaries.
        ttl_days: Lifetime of records that carry no source modification stamp.
        now: Clock returning an aware :class:`datetime`; injectable for tests.

    Raises:
        FatalConfigError: If either directory cannot be created.
    """

    def __init__(
        self,
        index_dir: Path | str,
        assets_dir: Path | str,
        *,
        ttl_days: int = 30,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.index_dir = Path(index_dir)
        self.assets_dir = Path(assets_dir)
        self.ttl = timedelta(days=ttl_days)
        self._now = now
        for directory in (self.index_dir, self.assets_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FatalConfigError(
                    f"Cannot create cache directory {directory}: {exc}",
                    details={"path": str(directory)},
                ) from exc

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def record_path(self, url: str) -> Path:
        digest = hashlib.md5(url.encode("utf-8")).hexdigest()
        return self.index_dir / f"{digest}.json"

    def asset_path(self, filename: str) -> Optional[Path]:
        """Absolute path for a stored filename, or ``None`` when unsafe."""

        base = _safe_basename(filename)
        return None if base is None else self.assets_dir / base

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _load_record(self, path: Path) -> Optional[AssetCacheEntry]:
        try:
            return AssetCacheEntry.from_json(read_json(path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.debug("Ignoring unreadable cache record %s: %s", path, exc)
            return None

    def _backing_file_exists(self, entry: AssetCacheEntry) -> bool:
        path = self.asset_path(entry.filename)
        return path is not None and path.is_file()

    def _is_stale(self, entry: AssetCacheEntry, item_last_modified: Optional[str]) -> bool:
        recorded = parse_timestamp(entry.item_last_modified)
        if recorded is not None:
            presented = parse_timestamp(item_last_modified)
            return presented is not None and presented > recorded
        created = parse_timestamp(entry.created_at)
        if created is None:
            return True
        return self._now() - created > self.ttl

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.debug("Could not remove cache record %s: %s", path, exc)

    def get(self, url: str, item_last_modified: Optional[str] = None) -> Optional[AssetCacheEntry]:
        """Return the entry for ``url`` if it is valid and fresh.

        An orphaned or stale record is removed before returning ``None``.
        """

        path = self.record_path(url)
        entry = self._load_record(path)
        if entry is None:
            return None
        if not self._backing_file_exists(entry):
            self._discard(path)
            return None
        if self._is_stale(entry, item_last_modified):
            LOGGER.debug("Cache entry for %s is stale", url)
            self._discard(path)
            return None
        return entry

    def has(self, url: str, item_last_modified: Optional[str] = None) -> bool:
        return self.get(url, item_last_modified) is not None

    def find_by_hash(self, content_hash: str) -> Optional[str]:
        """Filename of a stored asset with ``content_hash``, if one exists."""

        prefix = content_hash[:CONTENT_HASH_PREFIX_LEN]
        if not prefix:
            return None
        for candidate in sorted(self.assets_dir.glob(f"{prefix}.*")):
            if candidate.is_file():
                return candidate.name
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set(
        self,
        url: str,
        local_path: Path | str,
        *,
        content_hash: str,
        item_id: Optional[str] = None,
        item_last_modified: Optional[str] = None,
    ) -> AssetCacheEntry:
        """Record that ``url`` is stored at ``local_path``.

        Raises:
            ValidationError: If the base filename is empty or unsafe.
        """

        base = _safe_basename(str(local_path))
        if base is None:
            raise ValidationError(f"Unsafe asset filename: {str(local_path)!r}", url=url)
        entry = AssetCacheEntry(
            url=url,
            filename=base,
            content_hash=content_hash,
            created_at=self._now().isoformat(),
            item_id=item_id,
            item_last_modified=item_last_modified,
        )
        try:
            atomic_write_json(self.record_path(url), entry.to_json())
        except OSError as exc:
            LOGGER.warning(
                "Failed to save cache entry for %s: %s",
                url,
                exc,
                extra={"extra_fields": {"url": url, "item_id": item_id}},
            )
        return entry

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def _iter_records(self) -> Iterator[tuple[Path, Optional[AssetCacheEntry]]]:
        for path in sorted(self.index_dir.glob("*.json")):
            yield path, self._load_record(path)

    def cleanup(self) -> int:
        """Remove records whose backing file is missing; return how many."""

        removed = 0
        for path, entry in self._iter_records():
            if entry is None or not self._backing_file_exists(entry):
                self._discard(path)
                removed += 1
        if removed:
            LOGGER.info("Removed %d orphaned asset cache entries", removed)
        return removed

    def stats(self) -> AssetCacheStats:
        total = 0
        valid = 0
        for _path, entry in self._iter_records():
            total += 1
            if entry is not None and self._backing_file_exists(entry):
                valid += 1
        return AssetCacheStats(total_entries=total, valid_entries=valid)
