"""Tests for the error taxonomy, failure log and atomic writes."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import DocsMirror.ContentSync.errors as errors_module
from DocsMirror.ContentSync.errors import (
    ContentSyncError,
    FailureLog,
    PersistentContentError,
    TimeoutExpired,
    TransientIOError,
    get_actionable_error_message,
    log_asset_failure,
)
from DocsMirror.ContentSync.io_utils import atomic_write_bytes, atomic_write_json, read_json


def test_taxonomy_hierarchy() -> None:
    assert issubclass(TimeoutExpired, TransientIOError)
    assert issubclass(PersistentContentError, ContentSyncError)
    error = PersistentContentError("gone", url="https://x/a.png", http_status=404)
    assert error.url == "https://x/a.png"
    assert error.http_status == 404
    assert error.details == {}


@pytest.mark.parametrize(
    ("status", "reason", "prefix"),
    [
        (403, None, "Access forbidden"),
        (404, None, "Asset not found"),
        (429, None, "Rate limit exceeded"),
        (503, None, "Upstream temporarily unavailable"),
        (418, None, "HTTP error 418"),
        (None, "timeout", "Asset download timed out"),
        (None, "invalid_url", "Invalid asset reference"),
        (None, None, "Asset processing failed"),
    ],
)
def test_actionable_messages(status, reason, prefix) -> None:
    message, _hint = get_actionable_error_message(status, reason)
    assert message.startswith(prefix)


def test_failure_log_is_bounded_and_truncated(tmp_path: Path) -> None:
    log = FailureLog(tmp_path / "failures.json", max_entries=3, max_field_len=10)
    for index in range(5):
        log.append({"url": f"https://example.com/{index}/" + "x" * 50, "index": index})
    entries = log.entries()
    assert [entry["index"] for entry in entries] == [2, 3, 4]
    assert all(len(entry["url"]) == 10 for entry in entries)
    assert all("timestamp" in entry for entry in entries)


def test_failure_log_disabled_writes_nothing(tmp_path: Path) -> None:
    log = FailureLog(tmp_path / "failures.json", enabled=False)
    log.append({"url": "https://example.com/a.png"})
    assert not (tmp_path / "failures.json").exists()


def test_failure_log_swallows_write_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    log = FailureLog(blocker / "failures.json")
    log.append({"url": "https://example.com/a.png"})
    assert log.entries() == []


def test_failure_log_recovers_from_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "failures.json"
    path.write_text("{not json")
    log = FailureLog(path)
    log.append({"url": "https://example.com/a.png"})
    assert len(log.entries()) == 1


def test_failure_log_writes_through_atomic_rename(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    written = []
    real_write = errors_module.atomic_write_text

    def recording_write(path, text, **kwargs):
        written.append(Path(path))
        return real_write(path, text, **kwargs)

    monkeypatch.setattr(errors_module, "atomic_write_text", recording_write)
    log = FailureLog(tmp_path / "logs" / "failures.json")
    log.append({"url": "https://example.com/a.png"})
    log.append({"url": "https://example.com/b.png"})

    assert written == [tmp_path / "logs" / "failures.json"] * 2
    assert [p.name for p in (tmp_path / "logs").iterdir()] == ["failures.json"]
    assert len(log.entries()) == 2


def test_log_asset_failure_records_status(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    log = FailureLog(tmp_path / "failures.json")
    logger = logging.getLogger("tests.failures")
    with caplog.at_level(logging.WARNING, logger="tests.failures"):
        log_asset_failure(
            logger,
            url="https://example.com/a.png",
            item_id="page-1",
            exception=PersistentContentError("gone", http_status=404),
            failure_log=log,
            asset_index=2,
        )
    [entry] = log.entries()
    assert entry["http_status"] == 404
    assert entry["exception_type"] == "PersistentContentError"
    assert entry["asset_index"] == 2
    assert "Asset not found" in caplog.text


def test_atomic_write_bytes_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "file.bin"
    assert atomic_write_bytes(target, b"abc") == 3
    assert target.read_bytes() == b"abc"
    assert [p.name for p in target.parent.iterdir()] == ["file.bin"]


def test_atomic_write_json_round_trip(tmp_path: Path) -> None:
    target = tmp_path / "data.json"
    atomic_write_json(target, {"b": 1, "a": [1, 2]})
    assert read_json(target) == {"b": 1, "a": [1, 2]}
    assert json.loads(target.read_text())["a"] == [1, 2]
