# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync",
#   "purpose": "Package initialization for DocsMirror.ContentSync",
#   "sections": [
#     {
#       "id": "getattr",
#       "name": "__getattr__",
#       "anchor": "function-getattr",
#       "kind": "function"
#     },
#     {
#       "id": "dir",
#       "name": "__dir__",
#       "anchor": "function-dir",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Public API for the DocsMirror content sync engine.

The engine mirrors externally authored documents and their embedded assets
into durable local copies: assets land in a content-addressed cache,
documents are rewritten until no expiring link remains, and an incremental
ledger skips unchanged items on the next run.

Submodules are imported lazily so that ``DocsMirror.ContentSync.settings``
can be used without pulling in Pillow or httpx.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Dict

_EXPORTS: Dict[str, str] = {
    "AssetCache": "asset_cache",
    "AssetCacheEntry": "asset_cache",
    "AssetResolver": "download",
    "AssetResult": "download",
    "BatchExecutor": "batch",
    "CachedLoader": "prefetch",
    "ContentSyncError": "errors",
    "FailureLog": "errors",
    "FatalConfigError": "errors",
    "ImageProcessor": "imaging",
    "PersistentContentError": "errors",
    "PrefetchCache": "prefetch",
    "ProgressTracker": "progress",
    "ReferencePass": "references",
    "ResourceManager": "resources",
    "RetryOrchestrator": "retry",
    "RetryReport": "retry",
    "RunSummary": "summary",
    "Settings": "settings",
    "SyncCache": "sync_cache",
    "SyncItem": "sync_cache",
    "SyncRunner": "runner",
    "TimeoutExpired": "errors",
    "TransientIOError": "errors",
    "ValidationError": "errors",
    "compute_pipeline_fingerprint": "sync_cache",
    "configure_logging": "logging",
    "load_settings": "settings",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import public names from their submodule."""

    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    value = getattr(import_module(f"{__name__}.{module_name}"), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
