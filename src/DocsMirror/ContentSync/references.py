# === NAVMAP v1 ===
# {
#   "module": "DocsMirror.ContentSync.references",
#   "purpose": "Find, resolve and rewrite embedded asset references in markdown documents",
#   "sections": [
#     {
#       "id": "referencematch",
#       "name": "ReferenceMatch",
#       "anchor": "class-referencematch",
#       "kind": "class"
#     },
#     {
#       "id": "extract-references",
#       "name": "extract_references",
#       "anchor": "function-extract-references",
#       "kind": "function"
#     },
#     {
#       "id": "sanitize-references",
#       "name": "sanitize_references",
#       "anchor": "function-sanitize-references",
#       "kind": "function"
#     },
#     {
#       "id": "referencediagnostics",
#       "name": "ReferenceDiagnostics",
#       "anchor": "class-referencediagnostics",
#       "kind": "class"
#     },
#     {
#       "id": "reference-diagnostics",
#       "name": "reference_diagnostics",
#       "anchor": "function-reference-diagnostics",
#       "kind": "function"
#     },
#     {
#       "id": "has-expiring-refs",
#       "name": "has_expiring_refs",
#       "anchor": "function-has-expiring-refs",
#       "kind": "function"
#     },
#     {
#       "id": "referencepass",
#       "name": "ReferencePass",
#       "anchor": "class-referencepass",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Markdown asset reference pass.

One pass over a document:

1. Extract ``[![alt](img)](link)`` and ``![alt](img)`` references in source
   order, at most :data:`SAFETY_LIMIT` per document.
2. Leave local references (no scheme, or ``data:``) untouched. Reject
   malformed ones immediately with an inert placeholder.
3. Resolve the remaining remote references through
   :class:`~.download.AssetResolver` on a :class:`~.batch.BatchExecutor`.
4. Apply replacements from the end of the document towards the start so the
   recorded offsets stay valid, then sanitize leftover broken references.

The pass is a valid transform for :class:`~.retry.RetryOrchestrator`: it
returns ``(text, PassStats)`` and never raises for asset failures.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .batch import BatchExecutor, Settlement
from .download import AssetResolver, AssetResult
from .errors import FailureLog, ValidationError, log_asset_failure
from .imaging import ProcessingMetrics
from .progress import LoggingProgressSink, ProgressSink, ProgressTracker
from .retry import PassStats
from .urls import create_placeholder, is_expiring_url, redact_presigned, validate_asset_url

__all__ = [
    "ReferenceDiagnostics",
    "ReferenceMatch",
    "ReferencePass",
    "SAFETY_LIMIT",
    "count_expiring_refs",
    "extract_references",
    "has_expiring_refs",
    "reference_diagnostics",
    "sanitize_references",
]

LOGGER = logging.getLogger(__name__)

SAFETY_LIMIT = 500
SANITIZE_MAX_LEN = 2_000_000

LINKED_IMAGE_PATTERN = re.compile(
    r"\[!\[([^\]]*)\]\(\s*((?:\\\)|[^)])+?)\s*\)\]\(\s*((?:\\\)|[^)])+?)\s*\)"
)
IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(\s*((?:\\\)|[^)])+?)\s*\)")
HTML_IMAGE_PATTERN = re.compile(r"<img\s[^>]*?src\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)

_EMPTY_REF = re.compile(r"!\[([^\]]*)\]\(\s*\)")
_LITERAL_REF = re.compile(r"!\[([^\]]*)\]\(\s*(?:undefined|null)\s*\)")
_WHITESPACE_REF = re.compile(r"!\[([^\]]*)\]\(\s*([^()\s][^()\r\n]*?(?:\s+)[^()\r\n]*?)\s*\)")


def _unescape(raw: str) -> str:
    return raw.replace("\\)", ")")


@dataclass(frozen=True)
class ReferenceMatch:
    """One asset reference located in a document."""

    full: str
    url: str
    alt: str
    index: int
    start: int
    end: int
    url_start: int
    url_end: int
    link_url: Optional[str] = None

    def with_url(self, new_url: str) -> str:
        """The reference text with its asset URL swapped for ``new_url``."""

        offset_start = self.url_start - self.start
        offset_end = self.url_end - self.start
        return self.full[:offset_start] + new_url + self.full[offset_end:]


def extract_references(text: str, *, limit: Optional[int] = SAFETY_LIMIT) -> List[ReferenceMatch]:
    """Return asset references in document order.

    Linked images are matched first; plain image matches starting inside a
    linked image are skipped. ``limit`` caps the number of regex matches
    examined, ``None`` disables the cap.
    """

    found: List[Tuple[int, int, str, str, str, int, int, Optional[str]]] = []
    examined = 0
    capped = False

    for match in LINKED_IMAGE_PATTERN.finditer(text):
        examined += 1
        if limit is not None and examined > limit:
            capped = True
            break
        found.append(
            (
                match.start(),
                match.end(),
                match.group(0),
                match.group(1),
                _unescape(match.group(2)),
                match.start(2),
                match.end(2),
                _unescape(match.group(3)),
            )
        )

    if not capped:
        linked_spans = [(item[0], item[1]) for item in found]
        for match in IMAGE_PATTERN.finditer(text):
            examined += 1
            if limit is not None and examined > limit:
                capped = True
                break
            start = match.start()
            if any(lo <= start < hi for lo, hi in linked_spans):
                continue
            found.append(
                (
                    start,
                    match.end(),
                    match.group(0),
                    match.group(1),
                    _unescape(match.group(2)),
                    match.start(2),
                    match.end(2),
                    None,
                )
            )

    if capped:
        LOGGER.warning("Reference match limit (%d) reached; skipping remaining", limit)

    found.sort(key=lambda item: item[0])
    return [
        ReferenceMatch(
            full=full,
            url=url,
            alt=alt,
            index=idx,
            start=start,
            end=end,
            url_start=url_start,
            url_end=url_end,
            link_url=link_url,
        )
        for idx, (start, end, full, alt, url, url_start, url_end, link_url) in enumerate(found)
    ]


def sanitize_references(text: str) -> str:
    """Replace empty, literal ``undefined``/``null`` and whitespace-broken references."""

    if not text:
        return text
    truncated = len(text) > SANITIZE_MAX_LEN
    body = text[:SANITIZE_MAX_LEN] if truncated else text
    if "![" in body:
        body = _EMPTY_REF.sub(r"**[Image: \1]** *(Image URL was empty)*", body)
        body = _LITERAL_REF.sub(r"**[Image: \1]** *(Image URL was invalid)*", body)
        body = _WHITESPACE_REF.sub(r"**[Image: \1]** *(Image URL contained whitespace)*", body)
    elif not truncated:
        return text
    if truncated:
        return body + "\n\n<!-- Content truncated for sanitation safety -->"
    return body


@dataclass(frozen=True)
class ReferenceDiagnostics:
    total_references: int
    markdown_references: int
    html_references: int
    expiring_references: int
    expiring_samples: Tuple[str, ...] = ()


def reference_diagnostics(text: str, *, max_samples: int = 5) -> ReferenceDiagnostics:
    """Count references and expiring links in ``text`` without a match cap."""

    markdown_urls = [ref.url for ref in extract_references(text, limit=None)]
    html_urls = [m.group(1) for m in HTML_IMAGE_PATTERN.finditer(text)]
    expiring = [url for url in markdown_urls + html_urls if is_expiring_url(url)]
    return ReferenceDiagnostics(
        total_references=len(markdown_urls) + len(html_urls),
        markdown_references=len(markdown_urls),
        html_references=len(html_urls),
        expiring_references=len(expiring),
        expiring_samples=tuple(redact_presigned(url) for url in expiring[:max_samples]),
    )


def count_expiring_refs(text: str) -> int:
    return reference_diagnostics(text, max_samples=0).expiring_references


def has_expiring_refs(text: str) -> bool:
    """True while any image reference in ``text`` points at an expiring link."""

    return count_expiring_refs(text) > 0


def _is_local(url: str) -> bool:
    stripped = url.strip()
    if stripped in ("", "undefined", "null"):
        return False
    try:
        scheme = urlsplit(stripped).scheme.lower()
    except ValueError:
        return False
    return scheme in ("", "data")


class ReferencePass:
    """Single-pass reference rewrite bound to one resolver.

    Args:
        resolver: Resolves remote URLs to local references.
        executor: Batch executor; a private one is created when omitted.
        max_concurrent: Concurrent resolutions per document.
        failure_log: Receives records for malformed references.
        progress_sinks: Sinks attached to the per-document progress tracker.
    """

    def __init__(
        self,
        resolver: AssetResolver,
        *,
        executor: Optional[BatchExecutor] = None,
        max_concurrent: int = 5,
        failure_log: Optional[FailureLog] = None,
        progress_sinks: Sequence[ProgressSink] = (),
    ) -> None:
        self.resolver = resolver
        self.executor = executor or BatchExecutor(name="contentsync-assets")
        self.max_concurrent = max_concurrent
        self.failure_log = failure_log
        self.progress_sinks = tuple(progress_sinks)

    def for_item(
        self, item_id: Optional[str], item_last_modified: Optional[str] = None
    ) -> "_BoundPass":
        """Transform callable carrying item context for caching and logs."""

        return _BoundPass(self, item_id, item_last_modified)

    def __call__(self, text: str) -> Tuple[str, PassStats]:
        return self.run(text)

    def run(
        self,
        text: str,
        *,
        item_id: Optional[str] = None,
        item_last_modified: Optional[str] = None,
        metrics: Optional[ProcessingMetrics] = None,
    ) -> Tuple[str, PassStats]:
        matches = extract_references(text)
        if not matches:
            return sanitize_references(text), PassStats()

        replacements: List[Tuple[int, int, str]] = []
        remote: List[Tuple[ReferenceMatch, str]] = []
        failures = 0

        for ref in matches:
            if _is_local(ref.url):
                LOGGER.debug("Skipping local reference: %s", ref.url)
                continue
            validation = validate_asset_url(
                ref.url,
                allowed_schemes=self.resolver.cfg.allowed_schemes,
                allowed_hosts=self.resolver.cfg.allowed_hosts,
            )
            if not validation.is_valid or validation.sanitized_url is None:
                failures += 1
                log_asset_failure(
                    LOGGER,
                    url=ref.url,
                    item_id=item_id,
                    exception=ValidationError(validation.error or "invalid URL", url=ref.url),
                    reason_code="invalid_url",
                    failure_log=self.failure_log,
                    asset_index=ref.index,
                    validation_failed=True,
                )
                replacements.append(
                    (ref.start, ref.end, create_placeholder(ref.full, redact_presigned(ref.url), ref.index))
                )
                continue
            remote.append((ref, validation.sanitized_url))

        successes = 0
        saved_bytes = 0
        if remote:
            metrics = metrics if metrics is not None else ProcessingMetrics()
            sinks: List[ProgressSink] = list(self.progress_sinks) or [LoggingProgressSink(LOGGER)]
            tracker = ProgressTracker(len(remote), "assets", sinks=sinks)

            def resolve(pair: Tuple[ReferenceMatch, str]) -> AssetResult:
                ref, url = pair
                return self.resolver.resolve(
                    url,
                    item_id=item_id,
                    item_last_modified=item_last_modified,
                    index=ref.index,
                    metrics=metrics,
                )

            settlements: List[Settlement] = self.executor.process(
                remote, resolve, max_concurrent=self.max_concurrent, progress=tracker
            )
            for settlement in settlements:
                ref, url = settlement.item
                result: Optional[AssetResult] = settlement.value if settlement.ok else None
                if result is not None and result.success and result.new_path:
                    replacements.append((ref.start, ref.end, ref.with_url(result.new_path)))
                    saved_bytes += result.saved_bytes
                    successes += 1
                else:
                    if settlement.error is not None:
                        LOGGER.error("Unexpected asset failure for %s: %s", url, settlement.error)
                    replacements.append(
                        (ref.start, ref.end, create_placeholder(ref.full, redact_presigned(url), ref.index))
                    )
                    failures += 1

        replacements.sort(key=lambda rep: rep[0], reverse=True)
        output = text
        for start, end, new_text in replacements:
            output = output[:start] + new_text + output[end:]
        output = sanitize_references(output)

        LOGGER.info(
            "Processed %d references: %d successful, %d failed",
            len(matches),
            successes,
            failures,
            extra={"extra_fields": {"item_id": item_id, "saved_bytes": saved_bytes}},
        )
        return output, PassStats(successes=successes, failures=failures, saved_bytes=saved_bytes)


class _BoundPass:
    def __init__(self, owner: ReferencePass, item_id: Optional[str], item_last_modified: Optional[str]) -> None:
        self.owner = owner
        self.item_id = item_id
        self.item_last_modified = item_last_modified
        self.metrics = ProcessingMetrics()

    def __call__(self, text: str) -> Tuple[str, PassStats]:
        return self.owner.run(
            text,
            item_id=self.item_id,
            item_last_modified=self.item_last_modified,
            metrics=self.metrics,
        )
