"""Tests for the incremental-sync ledger."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from DocsMirror.ContentSync.sync_cache import (
    LEDGER_VERSION,
    SyncCache,
    SyncItem,
    compute_pipeline_fingerprint,
)

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sync_cache(tmp_path: Path) -> SyncCache:
    return SyncCache(tmp_path / ".cache" / "page-metadata.json", project_root=tmp_path, now=lambda: FIXED_NOW)


def _output(root: Path, name: str) -> Path:
    path = root / "docs" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("content")
    return path


def test_first_run_is_full_rebuild(sync_cache: SyncCache) -> None:
    mode = sync_cache.determine_sync_mode("fp-1")
    assert mode.full_rebuild
    assert mode.ledger is None


def test_force_wins(sync_cache: SyncCache) -> None:
    sync_cache.save(sync_cache.create_empty_ledger("fp-1"))
    mode = sync_cache.determine_sync_mode("fp-1", force=True)
    assert mode.full_rebuild
    assert "force" in mode.reason


def test_fingerprint_change_forces_rebuild(sync_cache: SyncCache) -> None:
    sync_cache.save(sync_cache.create_empty_ledger("fp-1"))
    assert not sync_cache.determine_sync_mode("fp-1").full_rebuild
    assert sync_cache.determine_sync_mode("fp-2").full_rebuild


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        json.dumps([1, 2]),
        json.dumps({"version": "0.9", "pipelineFingerprint": "fp-1", "lastSync": "x", "pages": {}}),
        json.dumps({"version": LEDGER_VERSION, "lastSync": "x", "pages": {}}),
        json.dumps({"version": LEDGER_VERSION, "pipelineFingerprint": "fp-1", "lastSync": "x", "pages": {"a": {}}}),
    ],
)
def test_unusable_ledgers_load_as_none(sync_cache: SyncCache, payload: str) -> None:
    sync_cache.ledger_path.parent.mkdir(parents=True, exist_ok=True)
    sync_cache.ledger_path.write_text(payload)
    assert sync_cache.load() is None
    assert sync_cache.determine_sync_mode("fp-1").full_rebuild


def test_on_disk_layout(sync_cache: SyncCache, tmp_path: Path) -> None:
    ledger = sync_cache.create_empty_ledger("fp-1")
    out = _output(tmp_path, "a.md")
    sync_cache.update_item(ledger, "a", "2024-01-01T00:00:00Z", [out])
    sync_cache.save(ledger)

    payload = json.loads(sync_cache.ledger_path.read_text())
    assert payload["version"] == LEDGER_VERSION
    assert payload["pipelineFingerprint"] == "fp-1"
    assert payload["lastSync"] == "2024-06-01T12:00:00Z"
    assert payload["pages"]["a"] == {
        "lastEdited": "2024-01-01T00:00:00Z",
        "outputPaths": [str(out.resolve())],
        "processedAt": "2024-06-01T12:00:00Z",
        "containsForbiddenRefs": False,
        "processingFailed": False,
    }
    reloaded = sync_cache.load()
    assert reloaded is not None
    assert reloaded.items["a"].output_paths == [str(out.resolve())]


def test_filter_changed_items(sync_cache: SyncCache, tmp_path: Path) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    sync_cache.update_item(ledger, "same", "2024-01-01T00:00:00Z", [_output(tmp_path, "same.md")])
    sync_cache.update_item(ledger, "newer", "2024-01-01T00:00:00Z", [_output(tmp_path, "newer.md")])
    sync_cache.update_item(ledger, "empty", "2024-01-01T00:00:00Z", [])
    sync_cache.update_item(
        ledger, "forbidden", "2024-01-01T00:00:00Z", [_output(tmp_path, "f.md")], contains_forbidden=True
    )
    items = [
        SyncItem("same", "2024-01-01T00:00:00Z"),
        SyncItem("newer", "2024-02-01T00:00:00Z"),
        SyncItem("empty", "2024-01-01T00:00:00Z"),
        SyncItem("forbidden", "2024-01-01T00:00:00Z"),
        SyncItem("brand-new", "2024-01-01T00:00:00Z"),
    ]

    changed = [item.id for item in sync_cache.filter_changed_items(items, ledger)]
    assert changed == ["newer", "empty", "brand-new"]
    with_forbidden = [
        item.id for item in sync_cache.filter_changed_items(items, ledger, include_forbidden=True)
    ]
    assert with_forbidden == ["newer", "empty", "forbidden", "brand-new"]
    assert sync_cache.filter_changed_items(items, None) == items


def test_filter_accepts_mappings(sync_cache: SyncCache) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    items = [{"id": "a", "last_modified": "2024-01-01T00:00:00Z"}]
    assert sync_cache.filter_changed_items(items, ledger) == items


def test_deleted_output_self_heals(sync_cache: SyncCache, tmp_path: Path) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    out = _output(tmp_path, "page.md")
    sync_cache.update_item(ledger, "page", "2024-01-01T00:00:00Z", [out])
    item = SyncItem("page", "2024-01-01T00:00:00Z")
    assert sync_cache.filter_changed_items([item], ledger) == []

    out.unlink()

    assert sync_cache.has_missing_outputs(ledger, "page")
    assert sync_cache.filter_changed_items([item], ledger) == [item]


def test_find_deleted_items(sync_cache: SyncCache) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    for item_id in ("a", "b", "c"):
        sync_cache.update_item(ledger, item_id, "2024-01-01T00:00:00Z", [f"docs/{item_id}.md"])

    deleted = sync_cache.find_deleted_items(["a"], ledger)
    assert sorted(entry.item_id for entry in deleted) == ["b", "c"]
    assert sync_cache.find_deleted_items([], ledger) == []
    assert sync_cache.find_deleted_items(["a"], None) == []


def test_update_item_merges_paths_and_keeps_latest_stamp(sync_cache: SyncCache, tmp_path: Path) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    sync_cache.update_item(ledger, "a", "2024-03-01T00:00:00Z", ["docs/en/a.md"])
    record = sync_cache.update_item(ledger, "a", "2024-01-01T00:00:00Z", ["docs/fr/a.md", "/docs/en/a.md"])
    assert record.last_modified == "2024-03-01T00:00:00Z"
    assert record.output_paths == [
        str((tmp_path / "docs/en/a.md").resolve()),
        str((tmp_path / "docs/fr/a.md").resolve()),
    ]


def test_remove_item_and_stats(sync_cache: SyncCache) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    sync_cache.update_item(ledger, "a", "2024-01-01T00:00:00Z", ["docs/a.md"], contains_forbidden=True)
    sync_cache.update_item(ledger, "b", "2024-01-01T00:00:00Z", ["docs/b.md"])
    stats = sync_cache.cache_stats(ledger)
    assert (stats.total_items, stats.items_with_forbidden_refs) == (2, 1)
    assert sync_cache.remove_item(ledger, "a")
    assert not sync_cache.remove_item(ledger, "a")
    assert sync_cache.cache_stats(None).total_items == 0


def test_failed_items_are_reselected_and_counted_apart(sync_cache: SyncCache, tmp_path: Path) -> None:
    ledger = sync_cache.create_empty_ledger("fp")
    sync_cache.update_item(ledger, "ok", "2024-01-01T00:00:00Z", [_output(tmp_path, "ok.md")])
    sync_cache.update_item(
        ledger, "broken", "2024-01-01T00:00:00Z", [_output(tmp_path, "broken.md")], failed=True
    )
    items = [SyncItem("ok", "2024-01-01T00:00:00Z"), SyncItem("broken", "2024-01-01T00:00:00Z")]

    assert [item.id for item in sync_cache.filter_changed_items(items, ledger)] == ["broken"]
    stats = sync_cache.cache_stats(ledger)
    assert (stats.items_failed, stats.items_with_forbidden_refs) == (1, 0)

    sync_cache.update_item(ledger, "broken", "2024-01-01T00:00:00Z", [_output(tmp_path, "broken.md")])
    assert sync_cache.filter_changed_items(items, ledger) == []


def test_normalize_path(sync_cache: SyncCache, tmp_path: Path) -> None:
    inside = tmp_path / "docs" / "x.md"
    assert sync_cache.normalize_path(inside) == str(inside.resolve())
    assert sync_cache.normalize_path("/docs/x.md") == str(inside.resolve())
    assert sync_cache.normalize_path("docs/x.md") == str(inside.resolve())
    assert sync_cache.normalize_path("") == ""


def test_fingerprint_tracks_content_and_names(tmp_path: Path) -> None:
    (tmp_path / "a.py").write_text("print(1)")
    (tmp_path / "b.py").write_text("print(2)")

    base = compute_pipeline_fingerprint(["b.py", "a.py", "missing.py"], root=tmp_path)
    assert base.files_hashed == 2
    assert base.missing_files == ["missing.py"]
    assert base.hash == compute_pipeline_fingerprint(["a.py", "b.py"], root=tmp_path).hash

    (tmp_path / "a.py").write_text("print(3)")
    assert compute_pipeline_fingerprint(["a.py", "b.py"], root=tmp_path).hash != base.hash

    with_extra = compute_pipeline_fingerprint(["a.py"], root=tmp_path, extra={"version": "2"})
    assert with_extra.hash != compute_pipeline_fingerprint(["a.py"], root=tmp_path).hash
    assert "Missing files: missing.py" in base.summary()
