"""Command line interface for content sync maintenance and local runs.

Provides 6 commands:
  - sync: Mirror documents listed in a JSON manifest
  - cache-stats: Show asset cache entry counts
  - cache-cleanup: Drop asset records whose backing file is gone
  - ledger-status: Summarise the incremental-sync ledger
  - fingerprint: Print the pipeline fingerprint for a set of files
  - concurrency: Show the adaptive concurrency chosen for this host
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import typer

from .asset_cache import AssetCache
from .errors import ContentSyncError
from .io_utils import atomic_write_text
from .logging import configure_logging
from .progress import LoggingProgressSink, TqdmProgressSink
from .resources import ResourceManager
from .runner import SyncRunner
from .settings import Settings, load_settings
from .summary import build_summary_record, emit_console_summary
from .sync_cache import SyncCache, SyncItem, compute_pipeline_fingerprint

app = typer.Typer(help="Content sync: asset mirroring and incremental ledger tools")


def _pipeline_sources() -> List[Path]:
    """Source files of this package; editing any of them invalidates the ledger."""
    package_dir = Path(__file__).resolve().parent
    return sorted(package_dir.rglob("*.py"))


def _settings(cache_dir: Optional[Path]) -> Settings:
    overrides: Dict[str, Dict[str, object]] = {}
    if cache_dir is not None:
        overrides["app"] = {"cache_dir": cache_dir}
    settings = load_settings(**overrides)
    configure_logging(settings.app)
    return settings


def _read_manifest(path: Path) -> List[Dict[str, str]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise typer.BadParameter("manifest must be a JSON array", param_hint="MANIFEST")
    for entry in payload:
        if not isinstance(entry, dict) or not {"id", "last_modified", "source"} <= set(entry):
            raise typer.BadParameter(
                "every manifest entry needs id, last_modified and source", param_hint="MANIFEST"
            )
    return payload


@app.command()
def sync(
    manifest: Path = typer.Argument(..., help="JSON array of {id, last_modified, source}"),
    out_dir: Path = typer.Option(Path("docs"), "--out-dir", "-o", help="Output directory"),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory"),
    force: bool = typer.Option(False, "--force", help="Ignore the ledger and rebuild everything"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show a progress bar"),
    json_output: bool = typer.Option(False, "--json", help="Print the summary record as JSON"),
    fingerprint_files: Optional[List[Path]] = typer.Option(
        None,
        "--fingerprint",
        help="Extra file that shapes output (templates, build scripts); repeatable",
    ),
) -> None:
    """Mirror manifest documents into OUT_DIR with local asset references.

    Exits non-zero when any document failed or still holds expiring links.
    The manifest itself is not fingerprinted: per-item stamps drive
    incremental selection.
    """
    settings = _settings(cache_dir)
    entries = _read_manifest(manifest)
    sources = {entry["id"]: manifest.parent / entry["source"] for entry in entries}
    items = [SyncItem(id=entry["id"], last_modified=entry["last_modified"]) for entry in entries]

    def fetch(item: SyncItem) -> str:
        return sources[item.id].read_text(encoding="utf-8")

    def write(item: SyncItem, text: str) -> List[Path]:
        target = out_dir / f"{item.id}.md"
        atomic_write_text(target, text)
        return [target]

    sinks = [TqdmProgressSink()] if progress else [LoggingProgressSink()]
    try:
        with SyncRunner(
            fetch,
            write,
            settings=settings,
            fingerprint_paths=[*_pipeline_sources(), *(fingerprint_files or [])],
            progress_sinks=sinks,
        ) as runner:
            summary = runner.run(items, force=force)
    except ContentSyncError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(2)

    if json_output:
        typer.echo(json.dumps(build_summary_record(summary), indent=2))
    else:
        emit_console_summary(summary, echo=typer.echo)
    raise typer.Exit(summary.exit_code)


@app.command("cache-stats")
def cache_stats(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory"),
) -> None:
    """Show how many asset records exist and how many are still valid."""
    settings = _settings(cache_dir)
    cache = AssetCache(settings.app.asset_index_dir, settings.assets.assets_dir)
    stats = cache.stats()
    typer.echo(f"Asset records: {stats.total_entries}")
    typer.echo(f"Valid records: {stats.valid_entries}")


@app.command("cache-cleanup")
def cache_cleanup(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory"),
) -> None:
    """Remove asset records whose file no longer exists."""
    settings = _settings(cache_dir)
    cache = AssetCache(settings.app.asset_index_dir, settings.assets.assets_dir)
    removed = cache.cleanup()
    typer.echo(f"✓ removed {removed} orphaned record(s)")


@app.command("ledger-status")
def ledger_status(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory"),
) -> None:
    """Summarise the incremental-sync ledger."""
    settings = _settings(cache_dir)
    cache = SyncCache(settings.app.ledger_path, project_root=settings.app.project_root)
    ledger = cache.load()
    if ledger is None:
        typer.echo(f"No usable ledger at {settings.app.ledger_path}; the next run rebuilds.")
        return
    stats = cache.cache_stats(ledger)
    typer.echo(f"Ledger: {settings.app.ledger_path}")
    typer.echo(f"  Fingerprint: {ledger.pipeline_fingerprint[:12]}...")
    typer.echo(f"  Last sync: {stats.last_sync}")
    typer.echo(f"  Items: {stats.total_items}")
    typer.echo(f"  Items with expiring references: {stats.items_with_forbidden_refs}")
    typer.echo(f"  Items that failed last run: {stats.items_failed}")


@app.command()
def fingerprint(
    paths: List[Path] = typer.Argument(..., help="Files that shape generated output"),
    root: Path = typer.Option(Path("."), "--root", help="Base for relative paths"),
) -> None:
    """Print the pipeline fingerprint of PATHS."""
    result = compute_pipeline_fingerprint(paths, root=root)
    typer.echo(result.hash)
    typer.echo(result.summary(), err=True)


@app.command()
def concurrency(
    override: Optional[str] = typer.Option(
        None, "--override", help='Per-class override, e.g. "images:5,pages:10"'
    ),
) -> None:
    """Show host resources and the concurrency chosen per operation class."""
    try:
        manager = ResourceManager(overrides=override)
        typer.echo(f"System: {manager.summary()}")
        for name in sorted(manager.configs):
            typer.echo(f"  {name}: {manager.get_concurrency(name)}")
    except ContentSyncError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)


if __name__ == "__main__":  # pragma: no cover
    app()
