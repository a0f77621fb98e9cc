# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.sync_cache",
#   "purpose": "Incremental-sync ledger: change detection, deletion detection and pipeline fingerprinting",
#   "sections": [
#     {
#       "id": "itemrecord",
#       "name": "ItemRecord",
#       "anchor": "class-itemrecord",
#       "kind": "class"
#     },
#     {
#       "id": "syncledger",
#       "name": "SyncLedger",
#       "anchor": "class-syncledger",
#       "kind": "class"
#     },
#     {
#       "id": "syncitem",
#       "name": "SyncItem",
#       "anchor": "class-syncitem",
#       "kind": "class"
#     },
#     {
#       "id": "fingerprintresult",
#       "name": "FingerprintResult",
#       "anchor": "class-fingerprintresult",
#       "kind": "class"
#     },
#     {
#       "id": "compute-pipeline-fingerprint",
#       "name": "compute_pipeline_fingerprint",
#       "anchor": "function-compute-pipeline-fingerprint",
#       "kind": "function"
#     },
#     {
#       "id": "synccache",
#       "name": "SyncCache",
#       "anchor": "class-synccache",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Incremental synchronisation ledger.

The ledger remembers, per source item, the modification stamp it was last
processed at and the output files it produced. A run uses it to:

- decide between a full rebuild and an incremental sync
  (:meth:`SyncCache.determine_sync_mode`);
- skip items whose stamp has not advanced and whose outputs all still exist
  (:meth:`SyncCache.filter_changed_items`). A deleted output forces
  regeneration on the next run with the same stamp;
- detect items that disappeared upstream (:meth:`SyncCache.find_deleted_items`).
  An empty listing is treated as a fetch failure and never as "everything
  was deleted".

On disk the ledger is one JSON document::

    {"version": "1.0", "pipelineFingerprint": "...", "lastSync": "...",
     "pages": {"<id>": {"lastEdited": "...", "outputPaths": [...],
                        "processedAt": "...", "containsForbiddenRefs": false}}}

A missing, unreadable, malformed or version-mismatched file loads as
``None`` and triggers a full rebuild; it is never an error.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .asset_cache import parse_timestamp
from .io_utils import atomic_write_json, read_json

__all__ = [
    "LEDGER_VERSION",
    "DeletedItem",
    "FingerprintResult",
    "ItemRecord",
    "LedgerStats",
    "SyncCache",
    "SyncItem",
    "SyncLedger",
    "SyncModeResult",
    "compute_pipeline_fingerprint",
]

LOGGER = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"

ItemT = TypeVar("ItemT")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class ItemRecord(BaseModel):
    """Ledger entry for one processed item."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    last_modified: str = Field(alias="lastEdited")
    output_paths: List[str] = Field(default_factory=list, alias="outputPaths")
    processed_at: str = Field(alias="processedAt")
    contains_forbidden_refs: bool = Field(False, alias="containsForbiddenRefs")
    processing_failed: bool = Field(False, alias="processingFailed")


class SyncLedger(BaseModel):
    """Whole-run ledger persisted by :class:`SyncCache`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: str
    pipeline_fingerprint: str = Field(alias="pipelineFingerprint")
    last_sync: str = Field(alias="lastSync")
    items: Dict[str, ItemRecord] = Field(default_factory=dict, alias="pages")


@dataclass(frozen=True)
class SyncItem:
    """Minimal upstream item: an id plus an ISO-8601 modification stamp."""

    id: str
    last_modified: str


@dataclass(frozen=True)
class SyncModeResult:
    full_rebuild: bool
    reason: str
    ledger: Optional[SyncLedger]


@dataclass(frozen=True)
class DeletedItem:
    item_id: str
    output_paths: List[str]


@dataclass(frozen=True)
class LedgerStats:
    total_items: int
    last_sync: Optional[str]
    items_with_forbidden_refs: int
    items_failed: int = 0


@dataclass(frozen=True)
class FingerprintResult:
    hash: str
    files_hashed: int
    missing_files: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"Pipeline fingerprint: {self.hash[:12]}...",
            f"Files hashed: {self.files_hashed}/{self.files_hashed + len(self.missing_files)}",
        ]
        if self.missing_files:
            lines.append(f"Missing files: {', '.join(self.missing_files)}")
        return "\n".join(lines)


def compute_pipeline_fingerprint(
    paths: Iterable[Path | str],
    *,
    root: Optional[Path | str] = None,
    extra: Optional[Mapping[str, str]] = None,
) -> FingerprintResult:
    """SHA-256 over the sorted paths and contents of the files that shape output.

    Paths are hashed relative to ``root`` so that renames change the
    fingerprint while checkout location does not. Missing files are skipped
    and reported. ``extra`` entries (versions, settings hashes) are mixed in
    as ``key:value`` in key order.
    """

    base = Path(root).resolve() if root is not None else None
    entries = []
    for raw in paths:
        path = Path(raw)
        absolute = path if path.is_absolute() or base is None else base / path
        if base is not None:
            try:
                label = absolute.resolve().relative_to(base).as_posix()
            except ValueError:
                label = path.as_posix()
        else:
            label = path.as_posix()
        entries.append((label, absolute))
    entries.sort(key=lambda entry: entry[0])

    hasher = hashlib.sha256()
    hashed = 0
    missing: List[str] = []
    for label, absolute in entries:
        try:
            content = absolute.read_bytes()
        except OSError:
            missing.append(label)
            continue
        hasher.update(label.encode("utf-8"))
        hasher.update(content)
        hashed += 1
    for key in sorted(extra or {}):
        hasher.update(f"{key}:{(extra or {})[key]}".encode("utf-8"))
    return FingerprintResult(hash=hasher.hexdigest(), files_hashed=hashed, missing_files=missing)


def _item_fields(item: Any) -> tuple[str, Optional[str]]:
    if isinstance(item, Mapping):
        return str(item["id"]), item.get("last_modified")
    return str(item.id), getattr(item, "last_modified", None)


class SyncCache:
    """Loads, queries and persists the incremental-sync ledger.

    Args:
        ledger_path: Location of the JSON ledger.
        project_root: Base for resolving relative output paths.
        now: Clock returning an aware :class:`datetime`.
    """

    def __init__(
        self,
        ledger_path: Path | str,
        *,
        project_root: Path | str = ".",
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ledger_path = Path(ledger_path)
        self.project_root = Path(project_root).resolve()
        self._now = now
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def normalize_path(self, path: Path | str) -> str:
        """Absolute form of ``path``.

        Paths already under the project root are kept; anything else,
        including ``/docs/intro.md`` style paths, is resolved relative to it.
        """

        text = str(path)
        if not text:
            return ""
        candidate = Path(text)
        if candidate.is_absolute():
            resolved = candidate.resolve()
            if resolved == self.project_root or self.project_root in resolved.parents:
                return str(resolved)
        return str((self.project_root / text.lstrip("/\\")).resolve())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def create_empty_ledger(self, fingerprint: str) -> SyncLedger:
        return SyncLedger(
            version=LEDGER_VERSION,
            pipeline_fingerprint=fingerprint,
            last_sync=_iso(self._now()),
            items={},
        )

    def load(self) -> Optional[SyncLedger]:
        """Return the ledger on disk or ``None`` when absent or unusable."""

        try:
            payload = read_json(self.ledger_path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            LOGGER.warning("Discarding unreadable sync ledger %s: %s", self.ledger_path, exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("Discarding malformed sync ledger %s", self.ledger_path)
            return None
        if not payload.get("version") or not payload.get("pipelineFingerprint") or "pages" not in payload:
            LOGGER.warning("Discarding incomplete sync ledger %s", self.ledger_path)
            return None
        if payload.get("version") != LEDGER_VERSION:
            LOGGER.info(
                "Sync ledger version %s does not match %s", payload.get("version"), LEDGER_VERSION
            )
            return None
        try:
            return SyncLedger.model_validate(payload)
        except PydanticValidationError as exc:
            LOGGER.warning("Discarding invalid sync ledger %s: %s", self.ledger_path, exc)
            return None

    def save(self, ledger: SyncLedger) -> None:
        """Persist ``ledger`` atomically.

        Raises:
            OSError: If the file cannot be written.
        """

        with self._lock:
            ledger.last_sync = _iso(self._now())
            payload = ledger.model_dump(by_alias=True, mode="json")
        atomic_write_json(self.ledger_path, payload)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def determine_sync_mode(self, fingerprint: str, force: bool = False) -> SyncModeResult:
        if force:
            return SyncModeResult(True, "force flag specified", None)
        ledger = self.load()
        if ledger is None:
            return SyncModeResult(True, "No usable ledger found (first run or ledger cleared)", None)
        if ledger.pipeline_fingerprint != fingerprint:
            return SyncModeResult(True, "Pipeline files have changed since last sync", None)
        return SyncModeResult(False, "Ledger valid, using incremental sync", ledger)

    def has_missing_outputs(self, ledger: Optional[SyncLedger], item_id: str) -> bool:
        """True when a recorded output is gone, or none were recorded."""

        if ledger is None:
            return False
        record = ledger.items.get(item_id)
        if record is None:
            return False
        if not record.output_paths:
            return True
        return any(not path or not os.path.exists(self.normalize_path(path)) for path in record.output_paths)

    def filter_changed_items(
        self,
        items: Sequence[ItemT],
        ledger: Optional[SyncLedger],
        *,
        include_forbidden: bool = False,
    ) -> List[ItemT]:
        """Items that are new, lost an output, or carry a newer stamp.

        Items whose last run failed are always selected. With
        ``include_forbidden`` items whose last output still held forbidden
        references are selected as well.
        """

        if ledger is None:
            return list(items)
        selected: List[ItemT] = []
        for item in items:
            item_id, last_modified = _item_fields(item)
            record = ledger.items.get(item_id)
            if record is None or self.has_missing_outputs(ledger, item_id):
                selected.append(item)
                continue
            if record.processing_failed:
                selected.append(item)
                continue
            if include_forbidden and record.contains_forbidden_refs:
                selected.append(item)
                continue
            current = parse_timestamp(last_modified)
            recorded = parse_timestamp(record.last_modified)
            if current is None or recorded is None:
                if last_modified != record.last_modified:
                    selected.append(item)
                continue
            if current > recorded:
                selected.append(item)
        return selected

    def find_deleted_items(
        self, current_ids: Iterable[str], ledger: Optional[SyncLedger]
    ) -> List[DeletedItem]:
        """Ledger items absent from ``current_ids``; empty input means none."""

        if ledger is None:
            return []
        current = set(current_ids)
        if not current:
            return []
        return [
            DeletedItem(item_id=item_id, output_paths=list(record.output_paths))
            for item_id, record in ledger.items.items()
            if item_id not in current
        ]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def update_item(
        self,
        ledger: SyncLedger,
        item_id: str,
        last_modified: str,
        output_paths: Iterable[Path | str],
        contains_forbidden: bool = False,
        failed: bool = False,
    ) -> ItemRecord:
        """Merge a processed item into ``ledger``.

        Output paths are unioned with the recorded ones and the later of the
        two modification stamps is kept. ``failed`` marks an item whose
        pipeline raised so the next run selects it again.
        """

        with self._lock:
            existing = ledger.items.get(item_id)
            merged: List[str] = []
            if existing is not None:
                merged.extend(p for p in existing.output_paths if p)
            for path in output_paths:
                normalized = self.normalize_path(path)
                if normalized and normalized not in merged:
                    merged.append(normalized)

            latest = last_modified
            if existing is not None:
                recorded = parse_timestamp(existing.last_modified)
                incoming = parse_timestamp(last_modified)
                if recorded is not None and (incoming is None or recorded > incoming):
                    latest = existing.last_modified

            record = ItemRecord(
                last_modified=latest,
                output_paths=sorted(merged),
                processed_at=_iso(self._now()),
                contains_forbidden_refs=contains_forbidden,
                processing_failed=failed,
            )
            ledger.items[item_id] = record
            return record

    def remove_item(self, ledger: SyncLedger, item_id: str) -> bool:
        with self._lock:
            return ledger.items.pop(item_id, None) is not None

    def cache_stats(self, ledger: Optional[SyncLedger]) -> LedgerStats:
        if ledger is None:
            return LedgerStats(total_items=0, last_sync=None, items_with_forbidden_refs=0)
        return LedgerStats(
            total_items=len(ledger.items),
            last_sync=ledger.last_sync,
            items_with_forbidden_refs=sum(
                1 for record in ledger.items.values() if record.contains_forbidden_refs
            ),
            items_failed=sum(1 for record in ledger.items.values() if record.processing_failed),
        )
