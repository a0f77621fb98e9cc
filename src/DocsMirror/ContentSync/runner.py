# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.runner",
#   "purpose": "Run orchestration: ledger filtering, per-item pipeline, batch execution and summary",
#   "sections": [
#     {"id": "itemoutcome", "name": "ItemOutcome", "anchor": "class-itemoutcome", "kind": "class"},
#     {"id": "syncrunner", "name": "SyncRunner", "anchor": "class-syncrunner", "kind": "class"}
#   ]
# }
# === /NAVMAP ===
"""Execution harness for content sync runs.

Responsibilities
----------------
- Decide between a full rebuild and an incremental sync from the ledger and
  the pipeline fingerprint.
- Run the per-item pipeline (fetch content, resolve asset references until
  no expiring reference remains, write outputs) on a bounded batch executor
  sized by :class:`~DocsMirror.ContentSync.resources.ResourceManager`.
- Merge every settled item into the ledger, drop items that disappeared
  upstream, persist the ledger and return a
  :class:`~DocsMirror.ContentSync.summary.RunSummary`.

Design Principles
-----------------
- Explicit dependency injection: collaborators are built once from
  :class:`~DocsMirror.ContentSync.settings.Settings` or passed in.
- Fetching content and writing outputs are external callables; the runner
  never inspects document structure beyond asset references.
- One item failing never fails the run. The summary exit code reports it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from .asset_cache import AssetCache
from .batch import BatchExecutor, Settlement
from .download import AssetResolver
from .errors import FailureLog
from .logging import get_logger
from .prefetch import CachedLoader, PrefetchCache
from .progress import LoggingProgressSink, ProgressSink, ProgressTracker
from .references import ReferencePass, count_expiring_refs, has_expiring_refs
from .resources import ResourceManager
from .retry import RetryMetrics, RetryOrchestrator, RetryReport
from .settings import Settings, load_settings
from .summary import RunSummary, build_summary_record
from .sync_cache import (
    LEDGER_VERSION,
    DeletedItem,
    SyncCache,
    SyncItem,
    SyncLedger,
    compute_pipeline_fingerprint,
)

__all__ = ["FetchContent", "ItemOutcome", "SyncRunner", "WriteOutput"]

LOGGER = logging.getLogger(__name__)

FetchContent = Callable[[SyncItem], str]
WriteOutput = Callable[[SyncItem, str], Iterable[Path | str]]


@dataclass
class ItemOutcome:
    """Result of the per-item pipeline."""

    item_id: str
    report: RetryReport
    output_paths: List[str] = field(default_factory=list)
    processing_metrics: Dict[str, int] = field(default_factory=dict)


class SyncRunner:
    """Context manager orchestrating one or more sync runs.

    Args:
        fetch_content: Returns the document text of an item.
        write_output: Persists the final text and returns the written paths.
        settings: Aggregated configuration; read from the environment when
            omitted.
        fingerprint_paths: Files whose contents shape generated output.
        resource_manager: Concurrency source; built from settings when omitted.
        client: Optional HTTP client handed to the asset resolver.
        progress_sinks: Sinks for the item-level progress tracker.
        delete_outputs: Remove output files of items deleted upstream.
        sleep: Sleep used between download retries.

    Usage:
        with SyncRunner(fetch, write) as runner:
            summary = runner.run(items)
    """

    def __init__(
        self,
        fetch_content: FetchContent,
        write_output: WriteOutput,
        *,
        settings: Optional[Settings] = None,
        fingerprint_paths: Sequence[Path | str] = (),
        resource_manager: Optional[ResourceManager] = None,
        client: Optional[httpx.Client] = None,
        progress_sinks: Sequence[ProgressSink] = (),
        delete_outputs: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or load_settings()
        self.fetch_content = fetch_content
        self.write_output = write_output
        self.fingerprint_paths = tuple(fingerprint_paths)
        self.delete_outputs = delete_outputs
        self.progress_sinks = tuple(progress_sinks)

        app, assets, runner_cfg = self.settings.app, self.settings.assets, self.settings.runner
        self.resource_manager = resource_manager or ResourceManager(
            overrides=runner_cfg.concurrency_override
        )
        self.failure_log = FailureLog(app.failure_log_path, enabled=app.failure_logging)
        self.asset_cache = AssetCache(
            app.asset_index_dir, assets.assets_dir, ttl_days=assets.cache_ttl_days
        )
        self.resolver = AssetResolver(
            self.asset_cache,
            cfg=assets,
            client=client,
            failure_log=self.failure_log,
            sleep=sleep,
        )
        self.reference_pass = ReferencePass(
            self.resolver,
            max_concurrent=runner_cfg.max_concurrent_images,
            failure_log=self.failure_log,
        )
        self.retry_metrics = RetryMetrics()
        self.orchestrator = RetryOrchestrator(
            max_attempts=runner_cfg.max_retry_attempts,
            enabled=runner_cfg.retry_enabled,
            count_forbidden=count_expiring_refs,
            metrics=self.retry_metrics,
        )
        self.sync_cache = SyncCache(app.ledger_path, project_root=app.project_root)
        self.executor = BatchExecutor(name="contentsync-items")
        self._items_by_id: Dict[str, SyncItem] = {}
        self.loader: CachedLoader[str] = CachedLoader(
            self._fetch_by_id,
            cache=PrefetchCache(runner_cfg.prefetch_max_size),
            sleep=sleep,
        )

    def __enter__(self) -> "SyncRunner":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.resolver.close()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def pipeline_fingerprint(self) -> str:
        """Fingerprint of pipeline files, output-shaping settings and ledger version."""

        result = compute_pipeline_fingerprint(
            self.fingerprint_paths,
            root=self.settings.app.project_root,
            extra={"settings": self.settings.compute_hash(), "ledger": LEDGER_VERSION},
        )
        if result.missing_files:
            LOGGER.warning("Fingerprint inputs missing: %s", ", ".join(result.missing_files))
        return result.hash

    def _fetch_by_id(self, item_id: str) -> str:
        return self.fetch_content(self._items_by_id[item_id])

    def process_item(self, item: SyncItem) -> ItemOutcome:
        """Fetch, rewrite until valid, and write one item."""

        loaded = self.loader.load(item.id, item.last_modified)
        transform = self.reference_pass.for_item(item.id, item.last_modified)
        report = self.orchestrator.run(
            loaded.data,
            transform,
            lambda text: not has_expiring_refs(text),
            label=item.id,
        )
        written = [str(path) for path in self.write_output(item, report.text) or ()]
        return ItemOutcome(
            item_id=item.id,
            report=report,
            output_paths=written,
            processing_metrics=transform.metrics.as_dict(),
        )

    def _remove_deleted(self, ledger: SyncLedger, deleted: Sequence[DeletedItem]) -> None:
        for entry in deleted:
            if self.delete_outputs:
                for raw in entry.output_paths:
                    path = Path(self.sync_cache.normalize_path(raw))
                    try:
                        path.unlink(missing_ok=True)
                    except OSError as exc:
                        LOGGER.warning("Could not delete output %s of %s: %s", path, entry.item_id, exc)
                        continue
                    LOGGER.info("Deleted output %s of removed item %s", path, entry.item_id)
            self.sync_cache.remove_item(ledger, entry.item_id)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run(self, items: Iterable[SyncItem], *, force: bool = False) -> RunSummary:
        """Synchronise ``items`` and return the run summary."""

        started = time.monotonic()
        run_id = uuid.uuid4().hex[:12]
        log = get_logger(__name__, base_fields={"run_id": run_id})
        all_items = list(items)
        self.retry_metrics = RetryMetrics()
        self.orchestrator.metrics = self.retry_metrics
        self._items_by_id.update({item.id: item for item in all_items})

        fingerprint = self.pipeline_fingerprint()
        mode = self.sync_cache.determine_sync_mode(fingerprint, force=force)
        ledger = mode.ledger or self.sync_cache.create_empty_ledger(fingerprint)
        log.info(
            "Sync mode: %s (%s)",
            "full rebuild" if mode.full_rebuild else "incremental",
            mode.reason,
        )

        if mode.full_rebuild:
            selected = all_items
        else:
            selected = self.sync_cache.filter_changed_items(all_items, ledger, include_forbidden=True)
        deleted = self.sync_cache.find_deleted_items((item.id for item in all_items), mode.ledger)
        log.info(
            "%d of %d items need processing, %d deleted upstream",
            len(selected),
            len(all_items),
            len(deleted),
        )
        self._remove_deleted(ledger, deleted)

        outcomes: Dict[str, ItemOutcome] = {}
        failed_items: List[str] = []
        timed_out = 0

        def merge(settlement: Settlement[SyncItem, ItemOutcome]) -> None:
            nonlocal timed_out
            item = settlement.item
            item_log = log.child(item_id=item.id)
            if settlement.ok and settlement.value is not None:
                outcome = settlement.value
                outcomes[item.id] = outcome
                self.sync_cache.update_item(
                    ledger,
                    item.id,
                    item.last_modified,
                    outcome.output_paths,
                    contains_forbidden=outcome.report.contains_forbidden_refs,
                )
                if outcome.report.contains_forbidden_refs:
                    item_log.warning(
                        "Item %s still holds expiring references after %d attempt(s)",
                        item.id,
                        outcome.report.attempts_used,
                    )
                return
            failed_items.append(item.id)
            if settlement.timed_out:
                timed_out += 1
            item_log.error(
                "Item %s failed: %s",
                item.id,
                settlement.error,
                extra={"extra_fields": {"timed_out": settlement.timed_out}},
            )
            self.sync_cache.update_item(ledger, item.id, item.last_modified, [], failed=True)

        if selected:
            self.resource_manager.log_concurrency_config()
            sinks = list(self.progress_sinks) or [LoggingProgressSink(LOGGER)]
            tracker = ProgressTracker(len(selected), "items", sinks=sinks)
            self.executor.process(
                selected,
                self.process_item,
                max_concurrent=self.resource_manager.get_concurrency("pages"),
                per_item_timeout=self.settings.runner.per_item_timeout_s,
                on_settled=merge,
                progress=tracker,
            )

        ledger_saved = True
        try:
            self.sync_cache.save(ledger)
        except OSError as exc:
            ledger_saved = False
            log.error("Failed to save sync ledger %s: %s", self.sync_cache.ledger_path, exc)

        processing: Dict[str, int] = {}
        for outcome in outcomes.values():
            for key, value in outcome.processing_metrics.items():
                processing[key] = processing.get(key, 0) + value
        forbidden_items = sorted(
            item_id for item_id, outcome in outcomes.items() if outcome.report.contains_forbidden_refs
        )

        summary = RunSummary(
            run_id=run_id,
            full_rebuild=mode.full_rebuild,
            reason=mode.reason,
            total_items=len(all_items),
            selected=len(selected),
            succeeded=len(outcomes) - len(forbidden_items),
            failed=len(failed_items),
            timed_out=timed_out,
            with_forbidden_refs=len(forbidden_items),
            deleted=len(deleted),
            saved_bytes=sum(outcome.report.saved_bytes for outcome in outcomes.values()),
            duration_s=time.monotonic() - started,
            retry_metrics=self.retry_metrics.as_dict(),
            processing_metrics=processing,
            failed_items=sorted(failed_items),
            forbidden_items=forbidden_items,
            ledger_saved=ledger_saved,
        )
        log.info("Sync run finished", extra={"extra_fields": build_summary_record(summary)})
        return summary
