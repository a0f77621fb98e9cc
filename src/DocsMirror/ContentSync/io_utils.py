# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.io_utils",
#   "purpose": "Atomic file write helpers shared by the durable caches and asset writer",
#   "sections": [
#     {
#       "id": "atomic-write-bytes",
#       "name": "atomic_write_bytes",
#       "anchor": "function-atomic-write-bytes",
#       "kind": "function"
#     },
#     {
#       "id": "atomic-write-json",
#       "name": "atomic_write_json",
#       "anchor": "function-atomic-write-json",
#       "kind": "function"
#     },
#     {
#       "id": "read-json",
#       "name": "read_json",
#       "anchor": "function-read-json",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Atomic file write utilities.

**Purpose**
-----------
Every durable artefact the sync engine produces (asset binaries, per-asset
index records, the sync ledger, generated documents) goes through these
helpers. Work abandoned by a timeout keeps running in the background, so a
late writer must never leave a torn file behind: data is written to a
temporary file in the destination directory, flushed, fsynced and moved into
place with :func:`os.replace`.

**Safety**
----------
- Temporary files use the ``.part-`` prefix and ``.tmp`` suffix and are
  removed on any failure.
- The rename is atomic because the temporary file lives on the same
  filesystem as the destination.
- Concurrent writers of the same destination race benignly: the last
  ``os.replace`` wins and readers always see a complete file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

__all__ = ["atomic_write_bytes", "atomic_write_json", "atomic_write_text", "read_json"]

logger = logging.getLogger(__name__)


def atomic_write_bytes(dest_path: Path | str, data: bytes, *, fsync: bool = True) -> int:
    """Write ``data`` to ``dest_path`` atomically and return the byte count.

    Args:
        dest_path: Destination file. Parent directories are created.
        data: Payload to persist.
        fsync: Flush file contents to disk before the rename.

    Returns:
        Number of bytes written.

    Raises:
        OSError: If the temporary file cannot be written or renamed.
    """
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(dest.parent), prefix=".part-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())
        os.replace(tmp_path, dest)
        return len(data)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text(dest_path: Path | str, text: str, *, encoding: str = "utf-8") -> int:
    """Text counterpart of :func:`atomic_write_bytes`."""
    return atomic_write_bytes(dest_path, text.encode(encoding))


def atomic_write_json(dest_path: Path | str, payload: Any, *, indent: Optional[int] = 2) -> None:
    """Serialise ``payload`` as JSON and write it atomically."""
    atomic_write_text(dest_path, json.dumps(payload, indent=indent, default=str))


def read_json(path: Path | str) -> Any:
    """Load JSON from ``path``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not valid JSON.
    """
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)
