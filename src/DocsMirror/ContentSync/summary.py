"""Run summary builders and console reporting helpers.

Responsibilities
----------------
- Provide the :class:`RunSummary` dataclass produced by
  :class:`DocsMirror.ContentSync.runner.SyncRunner` for downstream consumers
  (CLI, scripts, tests).
- Assemble a structured payload via :func:`build_summary_record`, ready to be
  logged as one JSON event or written next to the ledger.
- Expose :func:`emit_console_summary` to render the same numbers for humans.

Design Notes
------------
- Functions here accept plain primitives so the CLI can import them without
  building a runner.
- The console renderer mirrors the record layout so logs and structured
  output carry the same information.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

__all__ = [
    "RunSummary",
    "build_summary_record",
    "emit_console_summary",
]


@dataclass
class RunSummary:
    """Aggregated metrics captured at the end of a sync run."""

    run_id: str
    full_rebuild: bool
    reason: str
    total_items: int
    selected: int
    succeeded: int
    failed: int
    timed_out: int
    with_forbidden_refs: int
    deleted: int
    saved_bytes: int
    duration_s: float
    retry_metrics: Dict[str, Any] = field(default_factory=dict)
    processing_metrics: Dict[str, int] = field(default_factory=dict)
    failed_items: List[str] = field(default_factory=list)
    forbidden_items: List[str] = field(default_factory=list)
    ledger_saved: bool = True

    @property
    def skipped(self) -> int:
        return max(0, self.total_items - self.selected)

    @property
    def exit_code(self) -> int:
        """``0`` only when every item succeeded and none kept forbidden references."""

        return 1 if self.failed or self.with_forbidden_refs else 0


def build_summary_record(summary: RunSummary) -> Dict[str, Any]:
    """Assemble the structured run summary record."""

    return {
        "run_id": summary.run_id,
        "mode": "full" if summary.full_rebuild else "incremental",
        "reason": summary.reason,
        "total_items": summary.total_items,
        "selected": summary.selected,
        "skipped": summary.skipped,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "timed_out": summary.timed_out,
        "with_forbidden_refs": summary.with_forbidden_refs,
        "deleted": summary.deleted,
        "saved_bytes": summary.saved_bytes,
        "duration_s": round(summary.duration_s, 3),
        "ledger_saved": summary.ledger_saved,
        "retry": dict(summary.retry_metrics),
        "processing": dict(summary.processing_metrics),
        "failed_items": list(summary.failed_items),
        "forbidden_items": list(summary.forbidden_items),
        "exit_code": summary.exit_code,
    }


def emit_console_summary(summary: RunSummary, *, echo: Callable[[str], None] = print) -> None:
    """Pretty-print the run summary."""

    mode = "full rebuild" if summary.full_rebuild else "incremental sync"
    echo(f"\nDone ({mode}: {summary.reason}).")
    echo(
        f"Items: {summary.total_items} total, {summary.selected} processed, "
        f"{summary.skipped} unchanged, {summary.deleted} deleted."
    )
    echo(
        f"Results: {summary.succeeded} succeeded, {summary.failed} failed "
        f"({summary.timed_out} timed out)."
    )
    if summary.saved_bytes:
        echo(f"Asset optimisation saved {summary.saved_bytes / 1024:.1f} KB.")

    retry = summary.retry_metrics
    if retry.get("total_pages_with_retries"):
        echo("Retry summary:")
        echo(f"  documents retried: {retry.get('total_pages_with_retries', 0)}")
        echo(f"  retry attempts: {retry.get('total_retry_attempts', 0)}")
        echo(
            f"  resolved: {retry.get('successful_retries', 0)}, "
            f"unresolved: {retry.get('failed_retries', 0)}"
        )
        echo(f"  average attempts per document: {retry.get('average_attempts_per_page', 0.0):.1f}")

    processing = {key: value for key, value in summary.processing_metrics.items() if value}
    if processing:
        echo("Asset processing:")
        for key, value in sorted(processing.items()):
            echo(f"  {key}: {value}")

    if summary.failed_items:
        echo(f"Failed items: {', '.join(summary.failed_items)}")
    if summary.forbidden_items:
        echo(f"Items still holding expiring references: {', '.join(summary.forbidden_items)}")
    if not summary.ledger_saved:
        echo("Warning: the sync ledger could not be saved; the next run will rebuild.")
